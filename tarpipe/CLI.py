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
import sys
import json
import getpass
import logging
import logging.config
import platform
import argparse

from tarpipe.Encryption import derivePassphraseKey
from tarpipe.Errors import TarPipeError
from tarpipe.Kernel import (
    configureGlobalLogLevel, getLogger, LOG_LEVEL_MAPPING, PUBLIC_VERSION, SecretGetter, StorageLocator, TarPipeEvent
)
from tarpipe.Pipe import receive, send
from tarpipe.Progress import Progress
from tarpipe.Settings import MAX_FRAME_PLAINTEXT, PASSPHRASE_ENV, SettingsGetter, TransferOptions
from tarpipe.Transport import formatAddress
from tarpipe.Utils import flushPrint, getEnv, warning
from tarpipe.crypto import CryptoInterface

logger = getLogger(__name__)

# Global options default to SUPPRESS so a subcommand parser never overwrites a value
# given before the subcommand; these are applied after parsing instead.
GLOBAL_DEFAULTS = {
    'secure': False,
    'gzip': False,
    'verbose': False,
    'progress': False,
    'logLevel': None,
    'chunkSize': None,
    'version': False,
}


def loadEnvFile():
    """
    Load environment variables from .env file using StorageLocator.
    Only sets variables that are not already defined in os.environ.
    """
    envFilePath = StorageLocator.getInstance().findConfig('.env')

    if not os.path.exists(envFilePath):
        return 0

    loadedCount = 0
    try:
        logger.info(f'Loading .env file from: {envFilePath}')

        with open(envFilePath, 'r', encoding='utf-8') as f:
            for lineNum, line in enumerate(f, 1):
                line = line.strip()

                # Skip empty lines and comments
                if not line or line.startswith('#'):
                    continue

                if '=' not in line:
                    warning(f'.env line {lineNum}: invalid format (missing =): {line}')
                    continue

                key, _, value = line.partition('=')
                key = key.strip()
                value = value.strip()

                if not key:
                    warning(f'.env line {lineNum}: empty key')
                    continue

                # Remove quotes if present (both single and double)
                if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                    value = value[1:-1]

                # Environment takes precedence
                if key not in os.environ:
                    os.environ[key] = value
                    loadedCount += 1
                else:
                    logger.debug(f'.env: Skipped {key} (already set in environment)')

        logger.info(f'Loaded {loadedCount} environment variables from .env')
    except OSError as e:
        warning(f'cannot load .env file {envFilePath}: {e}')
        logger.error(f'Unexpected error loading .env file: {e}', exc_info=True)

    return loadedCount


def configureLogging(logLevel):
    """Configure logging level for the application using Kernel's centralized configuration or config file

    Priority order:
    1. logLevel parameter (from --log-level CLI argument)
    2. TARPIPE_LOGGING_LEVEL environment variable
    3. Default to None (no configuration change)

    Both can be a logging level name (DEBUG, INFO, WARNING, ERROR) or a path to a
    logging configuration JSON file.
    """

    def suppressNoisyLogger():
        logging.getLogger('sentry_sdk').setLevel(logging.INFO)

    if logLevel is None:
        logLevel = getEnv('TARPIPE_LOGGING_LEVEL', None)

    if logLevel is None:
        suppressNoisyLogger()
        return None

    if os.path.isfile(logLevel):
        try:
            with open(logLevel, 'r') as configFile:
                configDict = json.load(configFile)

            logging.config.dictConfig(configDict)
            logger.info(f"Logging configured from file: {logLevel}")
            suppressNoisyLogger()
            return logLevel

        except (json.JSONDecodeError, OSError, ValueError, KeyError) as e:
            warning(f"failed to load logging config from {logLevel}: {e}")
            warning("falling back to default logging level configuration")

    if logLevel.upper() in LOG_LEVEL_MAPPING:
        configureGlobalLogLevel(LOG_LEVEL_MAPPING[logLevel.upper()])
        logger.info(f"Logging level set to {logLevel}")
    else:
        logger.warning(f"Invalid logging level '{logLevel}', using WARNING as default")
        configureGlobalLogLevel(logging.WARNING)

    suppressNoisyLogger()

    return logLevel


def showVersion():
    flushPrint(f"tar-pipe v{PUBLIC_VERSION}")
    flushPrint(f"Crypto backend: {CryptoInterface().getBackendName()}")

    uname = platform.uname()
    flushPrint(f"Architecture: {uname.system} {uname.release} {uname.machine}")
    flushPrint(f"Support: {SettingsGetter.getInstance().getSupportURL()}")


def configureCLIParser():
    """Configure the parser with a global parent shared by every subcommand

    Returns:
        tuple: (parser, globalsParent)
    """

    def validateLogLevel(logLevel):
        # Allow file paths (they'll be validated later)
        if os.path.exists(logLevel):
            return logLevel

        validLevels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if logLevel.upper() not in validLevels:
            raise argparse.ArgumentTypeError(
                f"Invalid log level '{logLevel}'. Valid levels are: {', '.join(validLevels)}"
            )
        return logLevel.upper()

    def validateChunkSize(valueStr):
        try:
            value = int(valueStr)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid chunk size value: {valueStr}")
        if not 0 < value <= MAX_FRAME_PLAINTEXT:
            raise argparse.ArgumentTypeError(f"Chunk size {value} must be between 1 and {MAX_FRAME_PLAINTEXT}")
        return value

    globalsParent = argparse.ArgumentParser(add_help=False, argument_default=argparse.SUPPRESS)
    globalsParent.add_argument(
        "-s", "--secure", action="store_true", help="Prompt for a passphrase and encrypt the stream (must match)"
    )
    globalsParent.add_argument("-z", "--gzip", action="store_true", help="Compress the stream with gzip (must match)")
    globalsParent.add_argument("-v", "--verbose", action="store_true", help="Print each entry name to stderr")
    globalsParent.add_argument("--progress", action="store_true", help="Show a progress bar on stderr")
    globalsParent.add_argument(
        "--log-level",
        type=validateLogLevel,
        help="Set logging level (DEBUG, INFO, WARNING, ERROR) or path to logging config JSON file (default: WARNING)",
        metavar="LEVEL_OR_FILE",
        dest="logLevel"
    )
    globalsParent.add_argument(
        "--chunk-size",
        type=validateChunkSize,
        help="Plaintext bytes per encrypted frame (default: 1024)",
        metavar="BYTES",
        dest="chunkSize"
    )
    globalsParent.add_argument("--version", action="store_true", help="Show version information")

    parser = argparse.ArgumentParser(
        prog="tar-pipe",
        description="tar-pipe copies a file tree to another host over a single TCP connection.",
        parents=[globalsParent],
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    receiveSubparser = subparsers.add_parser(
        'receive', help='Accept one sender and extract its files', parents=[globalsParent]
    )
    receiveSubparser.add_argument(
        "bind", metavar="BIND_ADDRESS", help="Address to listen on, e.g. ':6969' for every interface"
    )
    receiveSubparser.add_argument(
        "-C", "--directory", metavar="DIR", default='.', help="Extract below DIR (default: current directory)"
    )

    sendSubparser = subparsers.add_parser('send', help='Send files to a waiting receiver', parents=[globalsParent])
    sendSubparser.add_argument("destination", metavar="DESTINATION_ADDRESS", help="Receiver address, e.g. host:6969")
    sendSubparser.add_argument("paths", metavar="PATH", nargs='*', help="Files or directories to send (default: .)")
    sendSubparser.add_argument(
        "-C", "--directory", metavar="DIR", default=None, help="Resolve PATHs relative to DIR"
    )

    return parser, globalsParent


def applyGlobalDefaults(args):
    for key, value in GLOBAL_DEFAULTS.items():
        if not hasattr(args, key):
            setattr(args, key, value)
    return args


def acquirePassphrase(prompt='Passphrase: '):
    """Return TARPIPE_PASSPHRASE when configured, otherwise ask on the terminal."""
    passphrase = SecretGetter.getInstance().get(PASSPHRASE_ENV)
    if passphrase is None:
        passphrase = getpass.getpass(prompt)

    passphrase = passphrase.rstrip('\r\n')
    if not passphrase:
        raise TarPipeError("A passphrase is required with --secure")

    return passphrase


def buildTransferOptions(args):
    settingsGetter = SettingsGetter.getInstance()

    key = derivePassphraseKey(acquirePassphrase()) if args.secure else None

    try:
        return TransferOptions(
            useCompression=args.gzip,
            useEncryption=args.secure,
            key=key,
            chunkSize=args.chunkSize or settingsGetter.getChunkSize(),
            bufferSize=settingsGetter.getBufferSize(),
        )
    except ValueError as e:
        raise TarPipeError(str(e)) from e


def runCommand(args):
    """Run the send or receive command described by parsed arguments and return its TransferStats"""
    options = buildTransferOptions(args)

    if args.command == 'send':
        description, event = 'Sent', TarPipeEvent.entryArchived
    else:
        description, event = 'Received', TarPipeEvent.entryExtracted

    def onListening(host, port):
        if args.verbose:
            warning(f"listening on {formatAddress(host, port)}")

    with Progress(description, useBar=args.progress, verbose=args.verbose, file=sys.stderr).attach(event):
        if args.command == 'send':
            stats = send(args.destination, args.paths, options, baseDir=args.directory)
        else:
            stats = receive(args.bind, options, root=args.directory, onListening=onListening)

    if stats.skipped:
        warning(f"{stats.skipped} entries skipped")

    return stats
