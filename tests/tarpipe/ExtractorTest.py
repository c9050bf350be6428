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
import stat
import tarfile
import unittest

from tarpipe.Archive import ARCHIVE_FORMAT, ArchiveRecord, NodeKind, openArchiveReader
from tarpipe.Errors import FilesystemError, MisWriteError, UnsafePathError
from tarpipe.Extractor import TreeExtractor
from tarpipe.Kernel import TarPipeEvent

from tests.tarpipe.TreeTestBase import (
    DIR_MTIME, FILE_MTIME, HAS_FIFO, SUB_MTIME, serializeToBytes, snapshotTree, TreeTestBase, writeFile
)


def buildArchive(*entries):
    """entries: (TarInfo, payload or None) pairs, returns the archive bytes"""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode='w', format=ARCHIVE_FORMAT) as archive:
        for tarinfo, payload in entries:
            archive.addfile(tarinfo, io.BytesIO(payload) if payload is not None else None)
    return buffer.getvalue()


def fileInfo(name, payload, mtime=FILE_MTIME):
    tarinfo = tarfile.TarInfo(name)
    tarinfo.size = len(payload)
    tarinfo.mtime = mtime
    tarinfo.mode = 0o644
    return tarinfo, payload


def linkInfo(name, target, linkType=tarfile.SYMTYPE):
    tarinfo = tarfile.TarInfo(name)
    tarinfo.type = linkType
    tarinfo.linkname = target
    return tarinfo, None


class TreeExtractorTest(TreeTestBase):

    def setUp(self):
        super().setUp()
        self.extracted = []
        TarPipeEvent.entryExtracted.subscribe(self.onExtracted)

    def tearDown(self):
        TarPipeEvent.entryExtracted.unsubscribe(self.onExtracted)
        super().tearDown()

    def onExtracted(self, record, **kwargs):
        self.extracted.append(record.name)

    def extractBytes(self, data, root=None):
        return TreeExtractor(root or self.dst).extract(openArchiveReader(io.BytesIO(data)))

    def testScenario(self):
        self.buildScenarioTree(self.src)

        data, _ = serializeToBytes('.', baseDir=self.src)
        stats = self.extractBytes(data)

        with open(os.path.join(self.dst, 'sub', 'a.txt'), 'rb') as f:
            self.assertEqual(f.read(), b'hello\n')
        self.assertEqual(os.readlink(os.path.join(self.dst, 'link')), 'sub/a.txt')
        self.assertEqual(int(os.stat(os.path.join(self.dst, 'sub', 'a.txt')).st_mtime), FILE_MTIME)
        self.assertEqual(int(os.stat(os.path.join(self.dst, 'sub')).st_mtime), SUB_MTIME)
        self.assertEqual(int(os.stat(self.dst).st_mtime), DIR_MTIME)

        self.assertEqual((stats.entries, stats.bytes, stats.skipped), (4, 6, 0))
        self.assertEqual(self.extracted, ['.', 'link', 'sub', 'sub/a.txt'])

    def testTreeFidelity(self):
        self.buildMixedTree(self.src)

        data, _ = serializeToBytes('src', baseDir=self.tempDir)
        self.extractBytes(data)

        expected = snapshotTree(self.src)
        actual = snapshotTree(os.path.join(self.dst, 'src'))
        self.assertEqual(sorted(actual), sorted(expected))
        for name in expected:
            with self.subTest(name=name):
                self.assertEqual(actual[name], expected[name])

    def testNoPartialFilesRemain(self):
        self.buildMixedTree(self.src)

        data, _ = serializeToBytes('.', baseDir=self.src)
        self.extractBytes(data)

        for dirPath, _, fileNames in os.walk(self.dst):
            for fileName in fileNames:
                self.assertFalse(fileName.endswith('.partial'), os.path.join(dirPath, fileName))

    def testTruncatedPayload(self):
        data = buildArchive(fileInfo('big.bin', b'b' * 5000))
        with tarfile.open(fileobj=io.BytesIO(data), mode='r:') as archive:
            dataOffset = archive.getmember('big.bin').offset_data

        with self.assertRaises(MisWriteError) as context:
            self.extractBytes(data[:dataOffset + 100])

        self.assertEqual(context.exception.expected, 5000)
        self.assertLess(context.exception.written, 5000)
        self.assertEqual(os.listdir(self.dst), [])

    def testReplacesExistingFile(self):
        writeFile(os.path.join(self.dst, 'a.txt'), b'old content that is longer')

        self.extractBytes(buildArchive(fileInfo('a.txt', b'new')))

        with open(os.path.join(self.dst, 'a.txt'), 'rb') as f:
            self.assertEqual(f.read(), b'new')

    def testSymlinkReplacesExistingFile(self):
        writeFile(os.path.join(self.dst, 'link'), b'in the way')

        self.extractBytes(buildArchive(linkInfo('link', 'target')))

        self.assertEqual(os.readlink(os.path.join(self.dst, 'link')), 'target')

    def testDirectoryBlockedByFile(self):
        writeFile(os.path.join(self.dst, 'dir'), b'not a directory')
        tarinfo = tarfile.TarInfo('dir')
        tarinfo.type = tarfile.DIRTYPE

        with self.assertRaises(FilesystemError):
            self.extractBytes(buildArchive((tarinfo, None)))

    def testExistingDirectoryGetsRecordedMode(self):
        os.makedirs(os.path.join(self.dst, 'dir'), mode=0o700)
        tarinfo = tarfile.TarInfo('dir')
        tarinfo.type = tarfile.DIRTYPE
        tarinfo.mode = 0o751
        tarinfo.mtime = DIR_MTIME

        self.extractBytes(buildArchive((tarinfo, None)))

        st = os.stat(os.path.join(self.dst, 'dir'))
        self.assertEqual(st.st_mode & 0o777, 0o751)
        self.assertEqual(int(st.st_mtime), DIR_MTIME)

    def testMissingParentsAreCreated(self):
        self.extractBytes(buildArchive(fileInfo('a/b/c.txt', b'nested')))

        self.assertTrue(os.path.isfile(os.path.join(self.dst, 'a', 'b', 'c.txt')))

    def testUnsafeNames(self):
        for name in ('/etc/passwd-copy', '../escape.txt', 'sub/../../escape.txt'):
            with self.subTest(name=name):
                with self.assertRaises(UnsafePathError):
                    self.extractBytes(buildArchive(fileInfo(name, b'x')))

        self.assertFalse(os.path.exists(os.path.join(self.tempDir, 'escape.txt')))

    def testSymlinkEscape(self):
        outside = os.path.join(self.tempDir, 'outside')
        os.makedirs(outside)

        data = buildArchive(linkInfo('out', outside), fileInfo('out/planted.txt', b'x'))
        with self.assertRaises(UnsafePathError):
            self.extractBytes(data)

        self.assertEqual(os.listdir(outside), [])

    def testHardLinkRecord(self):
        data = buildArchive(fileInfo('a.txt', b'shared'), linkInfo('b.txt', 'a.txt', tarfile.LNKTYPE))
        stats = self.extractBytes(data)

        first = os.stat(os.path.join(self.dst, 'a.txt'))
        second = os.stat(os.path.join(self.dst, 'b.txt'))
        self.assertEqual(first.st_ino, second.st_ino)
        self.assertEqual(stats.entries, 2)

    def testDeviceRecordIsSkipped(self):
        device = tarfile.TarInfo('dev/zero')
        device.type = tarfile.CHRTYPE

        stats = self.extractBytes(buildArchive((device, None), fileInfo('after.txt', b'still here')))

        self.assertEqual(stats.skipped, 1)
        self.assertFalse(os.path.exists(os.path.join(self.dst, 'dev', 'zero')))
        self.assertTrue(os.path.exists(os.path.join(self.dst, 'after.txt')))

    @unittest.skipUnless(HAS_FIFO, "named pipes not supported")
    def testFifoRecord(self):
        record = ArchiveRecord('pipe', 0o620, NodeKind.FIFO, mtime=FILE_MTIME)
        self.extractBytes(buildArchive((record.toTarInfo(), None)))

        st = os.lstat(os.path.join(self.dst, 'pipe'))
        self.assertTrue(stat.S_ISFIFO(st.st_mode))
        self.assertEqual(st.st_mode & 0o777, 0o620)
        self.assertEqual(int(st.st_mtime), FILE_MTIME)

    def testDeferredTimesAppliedDeepestFirst(self):
        extractor = TreeExtractor(self.dst)
        for name, mtime in (('.', DIR_MTIME), ('a', SUB_MTIME), ('a/b', SUB_MTIME + 5)):
            extractor.extractRecord(ArchiveRecord(name, 0o755, NodeKind.DIRECTORY, mtime=mtime))
        # Creating an entry inside a/b moves its modification time
        extractor.extractRecord(ArchiveRecord('a/b/link', 0o777, NodeKind.SYMLINK, linkTarget='target'))

        extractor.applyDeferred()

        self.assertEqual(int(os.stat(self.dst).st_mtime), DIR_MTIME)
        self.assertEqual(int(os.stat(os.path.join(self.dst, 'a')).st_mtime), SUB_MTIME)
        self.assertEqual(int(os.stat(os.path.join(self.dst, 'a', 'b')).st_mtime), SUB_MTIME + 5)
        self.assertEqual(extractor.deferred, [])

    def testReadOnlyDirectoryWithChildren(self):
        readOnly = os.path.join(self.dst, 'ro')
        record = ArchiveRecord('ro', 0o555, NodeKind.DIRECTORY, mtime=SUB_MTIME)
        data = buildArchive((record.toTarInfo(), None), fileInfo('ro/a.txt', b'inside'))

        stats = self.extractBytes(data)

        self.assertEqual(stats.entries, 2)
        with open(os.path.join(readOnly, 'a.txt'), 'rb') as f:
            self.assertEqual(f.read(), b'inside')
        st = os.stat(readOnly)
        # Writable again so the scratch directory can be removed
        os.chmod(readOnly, 0o755)

        self.assertEqual(st.st_mode & 0o777, 0o555)
        self.assertEqual(int(st.st_mtime), SUB_MTIME)


if __name__ == '__main__':
    unittest.main()
