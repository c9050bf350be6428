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
import os
import json
import time
import socket
import shutil
import logging
import tempfile
import unittest

from unittest.mock import patch

from Core import EXIT_FAILURE, EXIT_SUCCESS, EXIT_USAGE, main
from tarpipe.CLI import (
    acquirePassphrase, applyGlobalDefaults, buildTransferOptions, configureCLIParser, configureLogging, loadEnvFile
)
from tarpipe.Encryption import derivePassphraseKey
from tarpipe.Errors import TarPipeError
from tarpipe.Kernel import SecretGetter
from tarpipe.Settings import PASSPHRASE_ENV

from tests.tarpipe.TreeTestBase import snapshotTree, startThread, TreeTestBase

TIMEOUT = 30


def findFreePort():
    with socket.socket() as probe:
        probe.bind(('127.0.0.1', 0))
        return probe.getsockname()[1]


class ParserTest(unittest.TestCase):

    def setUp(self):
        self.parser, _ = configureCLIParser()

    def parse(self, argv):
        return applyGlobalDefaults(self.parser.parse_args(argv))

    def testGlobalOptionsOnEitherSide(self):
        for argv in (['-s', '-z', 'send', 'host:6969', 'a', 'b'], ['send', 'host:6969', 'a', 'b', '-s', '-z']):
            with self.subTest(argv=argv):
                args = self.parse(argv)
                self.assertTrue(args.secure)
                self.assertTrue(args.gzip)
                self.assertEqual(args.command, 'send')
                self.assertEqual(args.destination, 'host:6969')
                self.assertEqual(args.paths, ['a', 'b'])
                self.assertIsNone(args.directory)

    def testReceiveDefaults(self):
        args = self.parse(['receive', ':6969'])

        self.assertEqual(args.bind, ':6969')
        self.assertEqual(args.directory, '.')
        self.assertFalse(args.secure)
        self.assertFalse(args.gzip)
        self.assertFalse(args.verbose)
        self.assertIsNone(args.chunkSize)

    def testChunkSize(self):
        self.assertEqual(self.parse(['--chunk-size', '4096', 'receive', ':1']).chunkSize, 4096)

        for value in ('0', 'many', str(64 * 1024 * 1024 + 1)):
            with self.subTest(value=value):
                with patch('sys.stderr', new_callable=io.StringIO):
                    with self.assertRaises(SystemExit):
                        self.parse(['receive', ':1', '--chunk-size', value])

    def testLogLevel(self):
        self.assertEqual(self.parse(['--log-level', 'debug']).logLevel, 'DEBUG')

        with patch('sys.stderr', new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                self.parse(['--log-level', 'chatty'])


class PassphraseTest(unittest.TestCase):

    def setUp(self):
        SecretGetter.getInstance().clear()

    def tearDown(self):
        SecretGetter.getInstance().clear()

    def testFromEnvironment(self):
        with patch.dict(os.environ, {PASSPHRASE_ENV: 'correct horse'}):
            self.assertEqual(acquirePassphrase(), 'correct horse')

    def testFromTerminal(self):
        with patch.dict(os.environ):
            os.environ.pop(PASSPHRASE_ENV, None)
            with patch.object(SecretGetter, 'get', return_value=None):
                with patch('getpass.getpass', return_value='typed\r\n') as getpass:
                    self.assertEqual(acquirePassphrase('Key: '), 'typed')

        getpass.assert_called_once_with('Key: ')

    def testEmptyRejected(self):
        with patch.object(SecretGetter, 'get', return_value=None):
            with patch('getpass.getpass', return_value='\n'):
                with self.assertRaises(TarPipeError):
                    acquirePassphrase()

    def testTransferOptionsKey(self):
        parser, _ = configureCLIParser()
        args = applyGlobalDefaults(parser.parse_args(['-s', '--chunk-size', '512', 'receive', ':1']))

        with patch.dict(os.environ, {PASSPHRASE_ENV: 'correct horse'}):
            options = buildTransferOptions(args)

        self.assertTrue(options.useEncryption)
        self.assertFalse(options.useCompression)
        self.assertEqual(options.chunkSize, 512)
        self.assertEqual(options.key, derivePassphraseKey('correct horse'))

    def testChunkSizeFromEnvironmentAboveBound(self):
        parser, _ = configureCLIParser()
        args = applyGlobalDefaults(parser.parse_args(['receive', ':1']))

        with patch.dict(os.environ, {'TARPIPE_CHUNK_SIZE': str(64 * 1024 * 1024 + 1)}):
            with self.assertRaises(TarPipeError):
                buildTransferOptions(args)


class ConfigurationTest(unittest.TestCase):

    def setUp(self):
        self.tempDir = tempfile.mkdtemp(prefix='tarpipe-config-')
        self.rootLevel = logging.getLogger().level

    def tearDown(self):
        logging.getLogger().setLevel(self.rootLevel)
        shutil.rmtree(self.tempDir, ignore_errors=True)

    def testLoadEnvFile(self):
        with open(os.path.join(self.tempDir, '.env'), 'w') as f:
            f.write('# comment\n\nTARPIPE_TEST_A="quoted value"\nTARPIPE_TEST_B=kept\nnot a pair\n')

        with patch.dict(os.environ, {'TARPIPE_STORAGE_LOCATION': self.tempDir, 'TARPIPE_TEST_B': 'preset'}):
            with patch('sys.stderr', new_callable=io.StringIO) as stderr:
                self.assertEqual(loadEnvFile(), 1)

            self.assertEqual(os.environ['TARPIPE_TEST_A'], 'quoted value')
            self.assertEqual(os.environ['TARPIPE_TEST_B'], 'preset')

        self.assertIn('missing =', stderr.getvalue())

    def testLogLevelName(self):
        self.assertEqual(configureLogging('DEBUG'), 'DEBUG')
        self.assertEqual(logging.getLogger().level, logging.DEBUG)

    def testLogLevelFromEnvironment(self):
        with patch.dict(os.environ, {'TARPIPE_LOGGING_LEVEL': 'ERROR'}):
            self.assertEqual(configureLogging(None), 'ERROR')
        self.assertEqual(logging.getLogger().level, logging.ERROR)

    def testLoggingConfigFile(self):
        configPath = os.path.join(self.tempDir, 'logging.json')
        with open(configPath, 'w') as f:
            json.dump(
                {
                    'version': 1,
                    'disable_existing_loggers': False,
                    'loggers': {
                        'tarpipe.ConfigurationTest': {
                            'level': 'ERROR'
                        }
                    },
                }, f
            )

        self.assertEqual(configureLogging(configPath), configPath)
        self.assertEqual(logging.getLogger('tarpipe.ConfigurationTest').level, logging.ERROR)


class CoreTest(TreeTestBase):
    """Runs the command line entry point in-process"""

    def setUp(self):
        super().setUp()
        SecretGetter.getInstance().clear()

    def tearDown(self):
        SecretGetter.getInstance().clear()
        super().tearDown()

    def testNoCommand(self):
        with patch('sys.stderr', new_callable=io.StringIO) as stderr:
            self.assertEqual(main([]), EXIT_USAGE)
        self.assertIn('usage: tar-pipe', stderr.getvalue())

    def testVersion(self):
        with patch('sys.stdout', new_callable=io.StringIO) as stdout:
            self.assertEqual(main(['--version']), EXIT_SUCCESS)
        self.assertIn('tar-pipe v', stdout.getvalue())
        self.assertIn('Crypto backend: cryptography', stdout.getvalue())

    def testUsageError(self):
        with patch('sys.stderr', new_callable=io.StringIO):
            with self.assertRaises(SystemExit) as context:
                main(['send'])
        self.assertEqual(context.exception.code, EXIT_USAGE)

    def testConnectionRefused(self):
        port = findFreePort()

        with patch('sys.stderr', new_callable=io.StringIO) as stderr:
            self.assertEqual(main(['send', f'127.0.0.1:{port}', '-C', self.src]), EXIT_FAILURE)

        self.assertIn('tar-pipe: Cannot connect', stderr.getvalue())

    def testSecureTransfer(self):
        self.buildMixedTree(self.src)
        port = findFreePort()

        with patch.dict(os.environ, {PASSPHRASE_ENV: 'shared secret'}):
            with patch('sys.stderr', new_callable=io.StringIO):
                thread, received = startThread(main, ['-s', '-z', 'receive', f'127.0.0.1:{port}', '-C', self.dst])

                # The receiver may not listen yet
                deadline = time.monotonic() + TIMEOUT
                while main(['-s', '-z', 'send', f'127.0.0.1:{port}', '.', '-C', self.src]) != EXIT_SUCCESS:
                    self.assertLess(time.monotonic(), deadline, "receiver never accepted")
                    time.sleep(0.1)

                thread.join(TIMEOUT)

        self.assertEqual(received.get('value'), EXIT_SUCCESS)
        self.assertEqual(snapshotTree(self.dst), snapshotTree(self.src))


if __name__ == '__main__':
    unittest.main()
