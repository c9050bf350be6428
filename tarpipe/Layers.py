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
Stacks the optional compression and encryption layers over a connection.

Send order is application -> encryption -> compression -> socket, receive
unwinds the same layers in reverse. Every layer is released exactly once on
the way out; when the body already failed, release errors are only logged.
"""

import io
import gzip

from contextlib import contextmanager, ExitStack

from tarpipe.Encryption import StreamDecryptor, StreamEncryptor
from tarpipe.Kernel import getLogger

logger = getLogger(__name__)


@contextmanager
def closingGuard(resource, name=None, release=None):
    """
    Yield resource and release it on exit, first error wins.

    Args:
        resource: Object to guard
        name: Label used in log messages
        release: Callable that releases the resource, defaults to resource.close
    """
    name = name or resource.__class__.__name__
    release = release or resource.close

    try:
        yield resource
    except BaseException:
        try:
            release()
        except Exception as e:
            logger.debug(f"Ignored error while releasing {name} after an earlier failure: {e!r}")
        raise
    else:
        release()


@contextmanager
def composeWriter(connection, options):
    """
    Yield the writable stream the archive should be written to.

    On a clean exit every pending byte has been pushed to the connection:
    the encryptor emits its last frame and gzip writes its trailer. The connection
    itself is left open, unless the body failed: then it is reset first.
    """
    with ExitStack() as stack:
        buffered = io.BufferedWriter(connection, options.bufferSize)
        stream = stack.enter_context(closingGuard(buffered, 'buffered writer', release=buffered.detach))

        if options.useCompression:
            stream = stack.enter_context(
                closingGuard(gzip.GzipFile(fileobj=stream, mode='wb', compresslevel=options.compressLevel), 'gzip writer')
            )

        if options.useEncryption:
            stream = stack.enter_context(
                closingGuard(StreamEncryptor(stream, options.key, options.chunkSize), 'encryptor')
            )

        def abortOnFailure(excType, excValue, traceback):
            # Runs before the layers unwind, so a failed run never ends in a well-formed stream.
            if excType is not None:
                logger.debug(f"Aborting connection after failure: {excValue!r}")
                connection.abort()

        stack.push(abortOnFailure)

        yield stream


@contextmanager
def composeReader(connection, options):
    """Yield the readable stream the archive should be read from. The connection is left open."""
    with ExitStack() as stack:
        buffered = io.BufferedReader(connection, options.bufferSize)
        stream = stack.enter_context(closingGuard(buffered, 'buffered reader', release=buffered.detach))

        if options.useCompression:
            stream = stack.enter_context(closingGuard(gzip.GzipFile(fileobj=stream, mode='rb'), 'gzip reader'))

        if options.useEncryption:
            stream = stack.enter_context(closingGuard(StreamDecryptor(stream, options.key), 'decryptor'))

        yield stream
