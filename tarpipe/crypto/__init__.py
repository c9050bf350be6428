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

from abc import ABC, abstractmethod

from tarpipe.Kernel import classForName, getLogger

logger = getLogger(__name__)


class CryptoBackend(ABC):
    """Abstract base class for cryptographic backends"""

    @abstractmethod
    def getName(self):
        """Get backend name"""
        pass

    @abstractmethod
    def deriveKey32(self, tag, passphrase):
        """Derive a 32-byte key with HMAC-SHA-512/256 keyed by tag, returns bytes"""
        pass

    @abstractmethod
    def createAESGCM(self, key):
        """Create a reusable AES-GCM cipher object"""
        pass

    @abstractmethod
    def encryptAESGCM(self, keyOrCipher, plaintext, nonce=None, aad=None):
        """Encrypt with AES-GCM, returns (nonce, ciphertext+tag) tuple"""
        pass

    @abstractmethod
    def decryptAESGCM(self, keyOrCipher, nonce, ciphertextWithTag, aad=None):
        """Decrypt with AES-GCM, returns plaintext. Raises AuthenticationError on tag mismatch."""
        pass


class CryptoInterface:
    """Main crypto interface with automatic backend selection"""

    def __init__(self, preferredBackend=None):
        self.backend = self._initializeBackend(preferredBackend)

    def _initializeBackend(self, preferredBackend=None):
        backendList = ['cryptography']

        if preferredBackend is not None:
            if preferredBackend not in backendList:
                raise ValueError(f"Unknown crypto backend '{preferredBackend}'")
            backendList = [preferredBackend]

        for backendName in backendList:
            try:
                backendModule = f'{backendName[0].upper()}{backendName[1:]}'
                backendClass = classForName(f'tarpipe.crypto.{backendModule}.{backendModule}Backend')
                return backendClass()
            except ImportError as e:
                logger.debug(f"Failed to load crypto backend {backendName}: {e}")
                continue

        raise RuntimeError("No crypto backend available - please install 'cryptography'")

    def getBackendName(self):
        """Get current backend name"""
        return self.backend.getName()

    def __getattr__(self, name):
        # Delegate any undefined method to backend
        return getattr(self.backend, name)
