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

import bitmath

from tarpipe.Kernel import getLogger

ONE_KB = int(bitmath.KiB(1).bytes)
ONE_MB = int(bitmath.MiB(1).bytes)
ONE_GB = int(bitmath.GiB(1).bytes)
ONE_TB = int(bitmath.TiB(1).bytes)

logger = getLogger(__name__)


# flush is required when stdout/stderr is a pipe, otherwise diagnostics arrive late.
def flushPrint(text, file=None):
    stream = file or sys.stdout
    try:
        print(text, file=stream, flush=True)
    except UnicodeEncodeError as e:
        logger.debug(f"UnicodeEncodeError during print, using fallback encoding: {e}")

        buf = getattr(stream, "buffer", None)
        if buf is not None:
            buf.write(text.encode("utf-8", errors="replace"))
            buf.write(b"\n")
            buf.flush()
            return

        encoding = stream.encoding or 'ascii'
        print(text.encode(encoding, errors='replace').decode(encoding), file=stream, flush=True)


def warning(text):
    """Print a diagnostic for the operator, prefixed with the program name."""
    flushPrint(f'tar-pipe: {text}', file=sys.stderr)


def formatSize(size, decimal=None, plural=None):
    if decimal is None:
        if size < ONE_GB:
            decimal = 0
        elif size < ONE_TB:
            decimal = 1
        else:
            decimal = 2

    if plural is None:
        plural = False if size > ONE_KB else True

    best = bitmath.Byte(size).best_prefix(system=bitmath.SI)
    value = f"{best.value:.{decimal}f}"

    # Below one kilobyte; unit names differ between bitmath releases, so spell them out
    if type(best) is bitmath.Byte:
        return f"{value} {'Bytes' if plural and best.value != 1 else 'Byte'}"

    return f"{value}{best.unit}".replace('B', '').upper()


def sendException(logger, e, errorPrefix="Oops, something went wrong"):
    if e and errorPrefix:
        flushPrint(f'{errorPrefix}: {e}', file=sys.stderr)
    elif e:
        flushPrint(f'{e}', file=sys.stderr)
    else:
        logger.error(f'Incorrect argument: {errorPrefix=} {e=}')

    # Imported here, Settings depends on this module.
    from tarpipe.Settings import SettingsGetter

    supportURL = SettingsGetter.getInstance().getSupportURL()
    flushPrint(f'\nIf you still get the same problem, please report it at {supportURL}.', file=sys.stderr)

    logger.exception(e)

    if os.getenv('RAISE_EXCEPTION', 'False') == 'True' and isinstance(e, BaseException):
        raise e


# Helper functions for environment variable configuration
def getEnv(envVar, default):
    """Safely get value from environment variable with automatic type detection based on default"""
    try:
        value = os.getenv(envVar)
        if value is not None:
            if default is None:
                return value

            if isinstance(default, bool):
                return value == "True"
            elif isinstance(default, int):
                return int(value)
            elif isinstance(default, float):
                return float(value)
            elif isinstance(default, str):
                return str(value)
            else:
                return type(default)(value)
        return default
    except (ValueError, TypeError):
        logger.warning(f"Ignoring invalid {envVar}={os.getenv(envVar)!r}, using {default!r}")
        return default
