#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0
#
# tar-pipe - Optimized transfer of file system entries over TCP
# Copyright (C) 2025 tar-pipe contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import io
import socket
import struct

from contextlib import contextmanager

from tarpipe.Errors import TransportError
from tarpipe.Kernel import getLogger
from tarpipe.Layers import closingGuard

logger = getLogger(__name__)


def parseAddress(address):
    """
    Split 'host:port' into (host, port).

    An empty host is allowed (':6969'); IPv6 hosts are written in brackets ('[::1]:6969').
    """
    host, separator, port = address.rpartition(':')
    if not separator:
        raise TransportError(f"Invalid address '{address}': expected host:port")

    if host.startswith('[') and host.endswith(']'):
        host = host[1:-1]

    try:
        port = int(port)
    except ValueError:
        raise TransportError(f"Invalid port in address '{address}'") from None

    if not 0 <= port <= 65535:
        raise TransportError(f"Port out of range in address '{address}'")

    return host, port


def formatAddress(host, port):
    return f'[{host}]:{port}' if ':' in host else f'{host}:{port}'


class Connection(io.RawIOBase):
    """Byte stream over one connected TCP socket. Socket failures surface as TransportError."""

    def __init__(self, sock, peer):
        super().__init__()
        self.sock = sock
        self.peer = peer

    def readable(self):
        return True

    def writable(self):
        return True

    def fileno(self):
        return self.sock.fileno()

    def readinto(self, buffer):
        try:
            return self.sock.recv_into(buffer)
        except OSError as e:
            raise TransportError(f"Receive from {self.peer} failed: {e}") from e

    def write(self, data):
        try:
            self.sock.sendall(data)
        except OSError as e:
            raise TransportError(f"Send to {self.peer} failed: {e}") from e
        return len(data)

    def shutdownWrite(self):
        """Signal end of stream to the peer while keeping the socket open for reading."""
        try:
            self.sock.shutdown(socket.SHUT_WR)
        except OSError as e:
            raise TransportError(f"Shutdown of {self.peer} failed: {e}") from e

    def abort(self):
        """Reset the connection so the peer sees an error instead of a clean end of stream."""
        if self.closed:
            return

        try:
            self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack('ii', 1, 0))
        except OSError as e:
            logger.debug(f"Cannot reset {self.peer}: {e}")

        self.close()

    def close(self):
        if self.closed:
            return

        try:
            self.sock.close()
        except OSError as e:
            raise TransportError(f"Close of {self.peer} failed: {e}") from e
        finally:
            super().close()


@contextmanager
def dial(address):
    """Connect to address and yield the Connection; it is closed on exit."""
    host, port = parseAddress(address)
    host = host or 'localhost'

    try:
        sock = socket.create_connection((host, port))
    except OSError as e:
        raise TransportError(f"Cannot connect to {formatAddress(host, port)}: {e}") from e

    logger.debug(f"Connected to {formatAddress(host, port)}")

    with closingGuard(Connection(sock, formatAddress(host, port)), 'connection') as connection:
        yield connection


def _createServer(host, port):
    if not host and socket.has_dualstack_ipv6():
        return socket.create_server(('', port), family=socket.AF_INET6, dualstack_ipv6=True)

    family = socket.AF_INET6 if ':' in host else socket.AF_INET
    return socket.create_server((host, port), family=family)


@contextmanager
def listen(bind, onListening=None):
    """
    Bind, accept exactly one connection, close the listener, then yield the Connection.

    onListening, when given, is called with the bound (host, port) before blocking in accept.
    """
    host, port = parseAddress(bind)

    try:
        server = _createServer(host, port)
    except OSError as e:
        raise TransportError(f"Cannot listen on {bind}: {e}") from e

    with server:
        boundHost, boundPort = server.getsockname()[:2]
        logger.debug(f"Listening on {formatAddress(boundHost, boundPort)}")
        if onListening:
            onListening(boundHost, boundPort)

        try:
            sock, peerAddress = server.accept()
        except OSError as e:
            raise TransportError(f"Accept on {bind} failed: {e}") from e

    peer = formatAddress(*peerAddress[:2])
    logger.debug(f"Accepted connection from {peer}")

    with closingGuard(Connection(sock, peer), 'connection') as connection:
        yield connection
