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
The two operations of tar-pipe.

send:    walk -> archive records -> [encrypt] -> [compress] -> socket
receive: socket -> [decompress] -> [decrypt] -> archive records -> file system
"""

import gzip
import zlib

import tarfile

from tarpipe.Archive import openArchiveReader, openArchiveWriter, TransferStats, TreeSerializer
from tarpipe.Errors import ArchiveError
from tarpipe.Extractor import TreeExtractor
from tarpipe.Kernel import getLogger
from tarpipe.Layers import composeReader, composeWriter
from tarpipe.Transport import dial, listen
from tarpipe.Utils import formatSize

logger = getLogger(__name__)

# Compressed stream failures, raised by gzip and zlib while reading
DECOMPRESSION_ERRORS = (gzip.BadGzipFile, zlib.error, EOFError)


def send(address, paths, options, baseDir=None):
    """
    Send paths (relative to baseDir when given) to a receiver listening on address.

    Returns:
        TransferStats of the entries sent
    """
    paths = list(paths) or ['.']
    stats = TransferStats()

    logger.info(f"Sending {', '.join(paths)} to {address} ({options.describe()})")

    with dial(address) as connection:
        with composeWriter(connection, options) as stream:
            archive = openArchiveWriter(stream)

            serializer = TreeSerializer(archive, baseDir=baseDir, stats=stats)
            for path in paths:
                serializer.addPath(path)

            # Only closed on success, closing writes the end-of-archive marker
            archive.close()

        connection.shutdownWrite()

    logger.info(f"Sent {stats.entries} entries, {formatSize(stats.bytes)}, {stats.skipped} skipped")
    return stats


def receive(bind, options, root='.', onListening=None):
    """
    Accept one sender on bind and extract its archive below root.

    Args:
        bind: Address to listen on, 'host:port' or ':port' for all interfaces
        options: TransferOptions, must match the sender's layers
        root: Destination directory
        onListening: Called with (host, port) once the listening socket is bound

    Returns:
        TransferStats of the entries received
    """
    stats = TransferStats()

    logger.info(f"Receiving on {bind} into {root} ({options.describe()})")

    with listen(bind, onListening=onListening) as connection:
        with composeReader(connection, options) as stream:
            try:
                try:
                    archive = openArchiveReader(stream)
                except tarfile.TarError as e:
                    raise ArchiveError(f"Invalid archive stream: {e}") from e

                TreeExtractor(root, stats=stats, bufferSize=options.bufferSize).extract(archive)

                # Reading to the end authenticates the trailing frames and the gzip trailer
                while stream.read(options.bufferSize):
                    pass
            except DECOMPRESSION_ERRORS as e:
                raise ArchiveError(f"Corrupt compressed stream: {e}") from e

    logger.info(f"Received {stats.entries} entries, {formatSize(stats.bytes)}, {stats.skipped} skipped")
    return stats
