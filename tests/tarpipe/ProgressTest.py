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
import unittest

from tarpipe.Archive import ArchiveRecord, NodeKind
from tarpipe.Kernel import TarPipeEvent
from tarpipe.Progress import Progress


class ProgressTest(unittest.TestCase):

    def setUp(self):
        self.output = io.StringIO()
        self.summaries = []

    def trigger(self, *records):
        for record in records:
            TarPipeEvent.entryArchived.trigger(record=record)

    def testCountsArchivedEntries(self):
        records = [
            ArchiveRecord('.', 0o755, NodeKind.DIRECTORY),
            ArchiveRecord('a.txt', 0o644, NodeKind.REGULAR, size=1500),
            ArchiveRecord('link', 0o777, NodeKind.SYMLINK, linkTarget='a.txt'),
        ]

        with Progress('Sent', verbose=True, file=self.output).attach(TarPipeEvent.entryArchived) as progress:
            self.trigger(*records)

        self.assertEqual(progress.entries, 3)
        self.assertEqual(progress.transferred, 1500)
        self.assertEqual(self.output.getvalue().splitlines(), ['tar-pipe: .', 'tar-pipe: a.txt', 'tar-pipe: link'])

    def testDetachedAfterExit(self):
        with Progress('Sent', file=self.output).attach(TarPipeEvent.entryArchived) as progress:
            pass

        self.trigger(ArchiveRecord('late.txt', 0o644, NodeKind.REGULAR, size=10))

        self.assertEqual(progress.entries, 0)
        self.assertEqual(self.output.getvalue(), '')

    def testBarSummary(self):
        progress = Progress('Received', useBar=True, file=self.output, loggerCallback=self.summaries.append)
        with progress.attach(TarPipeEvent.entryArchived):
            self.trigger(ArchiveRecord('a.bin', 0o644, NodeKind.REGULAR, size=2048))

        self.assertEqual(len(self.summaries), 1)
        self.assertTrue(self.summaries[0].startswith('Received: 1 entries, 2K in '))


if __name__ == '__main__':
    unittest.main()
