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
import time

from tqdm import tqdm

from tarpipe.Kernel import getLogger
from tarpipe.Utils import formatSize, warning

logger = getLogger(__name__)


class BitmathTqdm(tqdm):
    """Custom tqdm class with consistent size formatting."""

    def __init__(self, *args, sizeFormatter=None, unit='B', unitScale=False, **kwargs):
        self.sizeFormatter = sizeFormatter or formatSize

        if 'bar_format' not in kwargs:
            kwargs['bar_format'] = '{desc}: {n_fmt} [{elapsed}, {rate_fmt}]{postfix}'

        super().__init__(*args, unit=unit, unit_scale=unitScale, **kwargs)

    def _formatSpeed(self, rateBytesPerSec):
        if rateBytesPerSec <= 0:
            return "0/sec"
        return f"{self.sizeFormatter(int(rateBytesPerSec))}/sec"

    @property
    def format_dict(self):
        """Override format_dict to use consistent formatting."""
        d = super().format_dict

        d['rate_fmt'] = self._formatSpeed(d.get('rate', 0) or 0)
        d['n_fmt'] = self.sizeFormatter(d.get('n', 0))

        total = d.get('total')
        d['total_fmt'] = self.sizeFormatter(total) if total is not None else '?'

        return d

    def __bool__(self):
        # tqdm raises TypeError for bool() when total is None
        return hasattr(self, 'n')


class Progress:
    """
    Follows archive events of one run.

    With useBar a tqdm bar counts regular-file bytes, with verbose every entry
    name is printed to stderr. The size of a stream is unknown up front, so the
    bar shows the running total and the rate only.
    """

    def __init__(self, description, useBar=False, verbose=False, loggerCallback=warning, file=None):
        self.description = description
        self.useBar = useBar
        self.verbose = verbose
        self.loggerCallback = loggerCallback
        self.file = file or sys.stderr

        self.entries = 0
        self.transferred = 0
        self.startTime = time.monotonic()

        self.events = []

        self.pbar = None
        if self.useBar:
            self.pbar = BitmathTqdm(desc=self.description, leave=True, ncols=100, file=self.file)

    def attach(self, *events):
        for event in events:
            event.subscribe(self.onEntry)
            self.events.append(event)
        return self

    def detach(self):
        for event in self.events:
            event.unsubscribe(self.onEntry)
        self.events = []

    def onEntry(self, record, **kwargs):
        self.entries += 1

        if self.verbose:
            self.write(f'tar-pipe: {record.name}')

        if record.hasPayload:
            self.update(record.size)

    def update(self, increment):
        self.transferred += increment
        if self.pbar and increment > 0:
            self.pbar.update(increment)

    def write(self, text):
        """Write text without interfering with the progress bar."""
        if self.pbar:
            self.pbar.write(text, file=self.file)
        else:
            print(text, file=self.file, flush=True)

    def getElapsedTime(self):
        return time.monotonic() - self.startTime

    def getSummary(self):
        return (
            f"{self.description}: {self.entries} entries, {formatSize(self.transferred)} "
            f"in {self.getElapsedTime():.1f}s"
        )

    def finish(self):
        self.detach()

        if self.pbar:
            try:
                self.pbar.refresh()
                self.pbar.close()
            except (ValueError, AttributeError) as e:
                logger.debug(f"Exception during progress bar cleanup: {e}")
            finally:
                self.pbar = None
            self.loggerCallback(self.getSummary())

    def __enter__(self):
        return self

    def __exit__(self, excType, excVal, excTb):
        self.finish()
