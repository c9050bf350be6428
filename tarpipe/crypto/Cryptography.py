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

from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag

from tarpipe.Errors import AuthenticationError, CipherInitError, NonceGenerationError
from tarpipe.Kernel import getLogger
from tarpipe.crypto import CryptoBackend

logger = getLogger(__name__)

NONCE_SIZE = 12 # 96-bit nonce for GCM
TAG_SIZE = 16


class CryptographyBackend(CryptoBackend):
    """Cryptography library backend implementation"""

    def __init__(self):
        self.hashes = hashes
        self.hmac = hmac
        self.AESGCM = AESGCM

    def getName(self):
        return "cryptography"

    def deriveKey32(self, tag, passphrase):
        """HMAC keyed with tag over passphrase, SHA-512/256, first 32 bytes"""
        if isinstance(tag, str):
            tag = tag.encode('utf-8')
        if isinstance(passphrase, str):
            passphrase = passphrase.encode('utf-8')

        mac = self.hmac.HMAC(tag, self.hashes.SHA512_256())
        mac.update(passphrase)
        return mac.finalize()[:32]

    def createAESGCM(self, key):
        """Create a reusable AES-GCM cipher object"""
        try:
            return self.AESGCM(key)
        except (TypeError, ValueError) as e:
            raise CipherInitError(f"Cannot initialize AES-GCM: {e}") from e

    def _getCipher(self, keyOrCipher):
        # Accept either a key (bytes) or pre-created cipher object (AESGCM instance)
        if isinstance(keyOrCipher, self.AESGCM):
            return keyOrCipher
        return self.createAESGCM(keyOrCipher)

    def encryptAESGCM(self, keyOrCipher, plaintext, nonce=None, aad=None):
        """Encrypt with AES-GCM, returns (nonce, ciphertext+tag) tuple"""
        if isinstance(plaintext, str):
            plaintext = plaintext.encode('utf-8')

        aesgcm = self._getCipher(keyOrCipher)

        if nonce is None:
            try:
                nonce = os.urandom(NONCE_SIZE)
            except (OSError, NotImplementedError) as e:
                raise NonceGenerationError(f"Cannot generate nonce: {e}") from e

        ciphertext = aesgcm.encrypt(nonce, bytes(plaintext), aad)
        return (nonce, ciphertext)

    def decryptAESGCM(self, keyOrCipher, nonce, ciphertextWithTag, aad=None):
        """Decrypt with AES-GCM, returns plaintext"""
        aesgcm = self._getCipher(keyOrCipher)

        try:
            return aesgcm.decrypt(nonce, bytes(ciphertextWithTag), aad)
        except InvalidTag as e:
            raise AuthenticationError("Message authentication failed") from e
