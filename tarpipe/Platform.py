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

from tarpipe.Kernel import getLogger
from tarpipe.Settings import SettingsGetter

logger = getLogger(__name__)


def createFIFO(path, mode, mtime):
    """
    Create a named pipe at path with the given permission bits and modification time.

    Platforms without named pipes get an empty regular file instead.
    """
    settings = SettingsGetter.getInstance()

    if settings.supportsFIFO():
        os.mkfifo(path, mode)
    else:
        logger.warning(f"{path}: named pipes are not supported on {settings.platform}, creating an empty file")
        with open(path, 'wb'):
            pass

    # mkfifo and open are both subject to the umask
    os.chmod(path, mode)
    os.utime(path, (mtime, mtime))
