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

"""
Chunked authenticated-encryption stream codec.

Each frame on the wire is an 8-byte big-endian length followed by a fresh
12-byte nonce and the AES-GCM ciphertext with its 16-byte tag. The length
covers nonce, ciphertext and tag. Zero bytes at a frame boundary mark the
clean end of the stream.
"""

import io
import struct

from enum import Enum

from tarpipe.Errors import LengthPrefixError, ShortReadError
from tarpipe.Kernel import getLogger
from tarpipe.Settings import DEFAULT_KEY_TAG, ENCRYPTION_CHUNK_SIZE, MAX_FRAME_PLAINTEXT
from tarpipe.crypto import CryptoInterface
from tarpipe.crypto.Cryptography import NONCE_SIZE, TAG_SIZE

logger = getLogger(__name__)

LENGTH_PREFIX = struct.Struct('!Q')

FRAME_OVERHEAD = NONCE_SIZE + TAG_SIZE


def deriveKey32(tag, passphrase):
    """
    Derive the 32-byte stream key from a domain tag and a passphrase.

    Equal inputs always give the same key; there is no salt and no stretching,
    so the passphrase must carry the entropy.
    """
    return CryptoInterface().deriveKey32(tag, passphrase)


def derivePassphraseKey(passphrase):
    return deriveKey32(DEFAULT_KEY_TAG, passphrase)


class StreamState(Enum):
    ACTIVE = 'active'
    FAILED = 'failed'
    CLOSED = 'closed'


class _StreamCodec(io.RawIOBase):
    """Shared state machine: every public call checks the state first, a failure is sticky."""

    state = StreamState.CLOSED
    error = None

    def __init__(self, key):
        super().__init__()
        self.crypto = CryptoInterface()
        self.aesgcm = self.crypto.createAESGCM(key)

        self.state = StreamState.ACTIVE

    @property
    def closed(self):
        return self.state is not StreamState.ACTIVE

    def _ensureActive(self):
        if self.state is StreamState.FAILED:
            raise self.error
        if self.state is StreamState.CLOSED:
            raise ValueError(f"I/O operation on closed {self.__class__.__name__}")

    def _fail(self, error):
        self.state = StreamState.FAILED
        self.error = error
        logger.debug(f"{self.__class__.__name__} failed: {error!r}")
        raise error

    def _release(self):
        self.aesgcm = None


class StreamEncryptor(_StreamCodec):
    """
    Buffers plaintext up to chunkSize bytes and seals each buffer flush as one frame.

    Closing the encryptor emits the pending buffer but leaves the underlying writer open.
    """

    def __init__(self, writer, key, chunkSize=ENCRYPTION_CHUNK_SIZE):
        if not 0 < chunkSize <= MAX_FRAME_PLAINTEXT:
            raise ValueError(f"Chunk size must be between 1 and {MAX_FRAME_PLAINTEXT}: {chunkSize}")

        self.writer = writer
        self.chunkSize = chunkSize
        self.buffer = bytearray()

        super().__init__(key)

    def writable(self):
        return True

    def write(self, data):
        self._ensureActive()

        view = memoryview(data).cast('B')
        size = len(view)
        try:
            if size <= self.chunkSize - len(self.buffer):
                self.buffer += view
                return size

            self._sealBuffer()

            if size <= self.chunkSize:
                self.buffer += view
            else:
                for offset in range(0, size, MAX_FRAME_PLAINTEXT):
                    self._emitFrame(view[offset:offset + MAX_FRAME_PLAINTEXT])
        except Exception as e:
            self._fail(e)

        return size

    def flush(self):
        if self.state is StreamState.CLOSED:
            return
        self._ensureActive()

        try:
            self._sealBuffer()
            if hasattr(self.writer, 'flush'):
                self.writer.flush()
        except Exception as e:
            self._fail(e)

    def close(self):
        if self.state is StreamState.CLOSED:
            return
        if self.state is StreamState.FAILED:
            self._release()
            raise self.error

        try:
            self.flush()
        finally:
            if self.state is StreamState.ACTIVE:
                self.state = StreamState.CLOSED
            self._release()

    def _release(self):
        super()._release()
        self.buffer = bytearray()

    def _sealBuffer(self):
        if not self.buffer:
            return
        self._emitFrame(self.buffer)
        self.buffer = bytearray()

    def _emitFrame(self, plaintext):
        nonce, sealed = self.crypto.encryptAESGCM(self.aesgcm, plaintext)
        frame = LENGTH_PREFIX.pack(len(nonce) + len(sealed)) + nonce + sealed
        self._writeAll(frame)

    def _writeAll(self, frame):
        view = memoryview(frame)
        while view:
            written = self.writer.write(view)
            if written is None:
                written = len(view)
            view = view[written:]


class StreamDecryptor(_StreamCodec):
    """
    Reads frames from the underlying reader and serves their plaintext.

    Tampered, truncated or oversized frames raise a CodecError and the decryptor
    stays failed. Closing does not close the underlying reader.
    """

    def __init__(self, reader, key):
        self.reader = reader
        self.plaintext = b''
        self.offset = 0
        self.eof = False

        super().__init__(key)

    def readable(self):
        return True

    def readinto(self, buffer):
        self._ensureActive()

        view = memoryview(buffer).cast('B')
        total = 0
        try:
            while total < len(view):
                if self.offset >= len(self.plaintext):
                    if self.eof or not self._nextFrame():
                        break
                    continue

                count = min(len(view) - total, len(self.plaintext) - self.offset)
                view[total:total + count] = self.plaintext[self.offset:self.offset + count]
                self.offset += count
                total += count
        except Exception as e:
            self._fail(e)

        return total

    def close(self):
        if self.state is StreamState.ACTIVE:
            self.state = StreamState.CLOSED
        self._release()

    def _release(self):
        super()._release()
        self.plaintext = b''
        self.offset = 0

    def _nextFrame(self):
        prefix = self._readExactly(LENGTH_PREFIX.size, 'length prefix', allowEof=True)
        if not prefix:
            self.eof = True
            return False

        length, = LENGTH_PREFIX.unpack(prefix)
        if length < FRAME_OVERHEAD or length > MAX_FRAME_PLAINTEXT + FRAME_OVERHEAD:
            raise LengthPrefixError(f"Invalid frame length: {length}")

        body = self._readExactly(length, 'frame')
        self.plaintext = self.crypto.decryptAESGCM(self.aesgcm, body[:NONCE_SIZE], body[NONCE_SIZE:])
        self.offset = 0
        return True

    def _readExactly(self, size, what, allowEof=False):
        data = bytearray()
        while len(data) < size:
            chunk = self.reader.read(size - len(data))
            if not chunk:
                break
            data += chunk

        if len(data) == 0 and allowEof:
            return b''
        if len(data) != size:
            raise ShortReadError(size, len(data), what)
        return bytes(data)
