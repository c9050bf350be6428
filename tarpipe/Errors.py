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
Error taxonomy.

TransportError, CodecError, ArchiveError and FilesystemError abort a run.
UnsupportedNodeError is recovered where it is raised: the entry is skipped with a diagnostic.
"""


class TarPipeError(Exception):
    """Base class of every error tar-pipe raises on purpose"""
    pass


class TransportError(TarPipeError):
    """Dial, listen, accept or socket I/O failed"""
    pass


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


class CodecError(TarPipeError):
    """The encrypted stream cannot be produced or trusted any more. Always terminal."""
    pass


class CipherInitError(CodecError):
    pass


class NonceGenerationError(CodecError):
    pass


class AuthenticationError(CodecError):
    pass


class LengthPrefixError(CodecError):
    pass


class ShortReadError(CodecError):

    def __init__(self, expected, actual, what='frame'):
        super().__init__(f"cannot read {expected} byte {what}: got {actual} bytes")
        self.expected = expected
        self.actual = actual


# ---------------------------------------------------------------------------
# Archive and filesystem
# ---------------------------------------------------------------------------


class ArchiveError(TarPipeError):
    """The record stream is not a valid archive"""
    pass


class FilesystemError(TarPipeError):
    pass


class MisWriteError(FilesystemError):

    def __init__(self, name, written, expected):
        super().__init__(f"{name}: mis-write: {written} written, expected: {expected}")
        self.name = name
        self.written = written
        self.expected = expected


class UnsafePathError(FilesystemError):
    pass


class UnsupportedNodeError(TarPipeError):

    def __init__(self, name, reason):
        super().__init__(f"{name}: {reason}")
        self.name = name
        self.reason = reason
