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

import sys

from tarpipe.CLI import applyGlobalDefaults, configureCLIParser, configureLogging, loadEnvFile, runCommand, showVersion
from tarpipe.Errors import TarPipeError
from tarpipe.Kernel import getLogger
from tarpipe.Utils import flushPrint, sendException, warning

logger = getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def runCLIMain(argv=None):
    """Parse arguments and run one command, returning the process exit code"""
    loadEnvFile()

    parser, _ = configureCLIParser()

    # argparse exits with status 2 on usage errors
    args = applyGlobalDefaults(parser.parse_args(argv))

    configureLogging(args.logLevel)

    if args.version:
        showVersion()
        return EXIT_SUCCESS

    if args.command is None:
        parser.print_help(sys.stderr)
        return EXIT_USAGE

    runCommand(args)
    return EXIT_SUCCESS


def main(argv=None):
    """The main entry point, maps failures to exit codes"""
    try:
        return runCLIMain(argv)
    except KeyboardInterrupt:
        flushPrint('\nExiting on user request (Ctrl+C)...', file=sys.stderr)
        return EXIT_INTERRUPTED
    except TarPipeError as e:
        warning(str(e))
        logger.debug('Run failed', exc_info=True)
        return EXIT_FAILURE
    except Exception as e:
        sendException(logger, e)
        return EXIT_FAILURE


if __name__ == '__main__':
    sys.exit(main())
