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

import os
import platform as _platform

from dataclasses import dataclass
from typing import Optional

from tarpipe.Kernel import Singleton, getLogger
from tarpipe.Utils import getEnv

# Plaintext capacity of one encryption frame.
ENCRYPTION_CHUNK_SIZE = 1024

# Upper bound of one frame's plaintext; bigger writes are split. Part of the wire format.
MAX_FRAME_PLAINTEXT = 64 * 1024 * 1024

# Copy buffer for file payloads and socket buffering (64 KiB), as large sequential I/O.
COPY_BUFFER_SIZE = 64 * 1024

DEFAULT_COMPRESS_LEVEL = 6

# Domain tag mixed into key derivation; both ends must use the same one.
DEFAULT_KEY_TAG = 'tar-pipe'

PASSPHRASE_ENV = 'TARPIPE_PASSPHRASE'

KEY_SIZE = 32

# Suffix of the sibling file a regular-file payload is written to before it is renamed into place.
PARTIAL_SUFFIX = '.partial'

SUPPORT_URL = 'https://github.com/tar-pipe/tar-pipe/issues'

logger = getLogger(__name__)


@dataclass(frozen=True)
class TransferOptions:
    """Per-run layer configuration. Both ends must agree on useCompression and useEncryption."""
    useCompression: bool = False
    useEncryption: bool = False
    key: Optional[bytes] = None
    chunkSize: int = ENCRYPTION_CHUNK_SIZE
    compressLevel: int = DEFAULT_COMPRESS_LEVEL
    bufferSize: int = COPY_BUFFER_SIZE

    def __post_init__(self):
        if self.useEncryption and (self.key is None or len(self.key) != KEY_SIZE):
            raise ValueError(f"Encryption requires a {KEY_SIZE}-byte key")
        if not 0 < self.chunkSize <= MAX_FRAME_PLAINTEXT:
            raise ValueError(f"Chunk size must be between 1 and {MAX_FRAME_PLAINTEXT}: {self.chunkSize}")
        if not 0 <= self.compressLevel <= 9:
            raise ValueError(f"Compress level must be between 0 and 9: {self.compressLevel}")
        if self.bufferSize <= 0:
            raise ValueError(f"Buffer size must be positive: {self.bufferSize}")

    def describe(self):
        layers = []
        if self.useEncryption:
            layers.append('AES-GCM encryption')
        if self.useCompression:
            layers.append('GZIP compression')
        return ', '.join(layers) or 'plain'


# Singleton
class SettingsGetter(Singleton):

    def initialize(self, platform=None):
        self._platform = platform or _platform.system()

    @property
    def platform(self):
        return self._platform

    def isWindows(self):
        return self._platform == "Windows"

    def supportsFIFO(self):
        """Named pipes can be created on every platform exposing os.mkfifo (not Windows)."""
        return not self.isWindows() and hasattr(os, 'mkfifo')

    def getChunkSize(self):
        return getEnv('TARPIPE_CHUNK_SIZE', ENCRYPTION_CHUNK_SIZE)

    def getBufferSize(self):
        return getEnv('TARPIPE_BUFFER_SIZE', COPY_BUFFER_SIZE)

    def getSupportURL(self):
        return SUPPORT_URL
