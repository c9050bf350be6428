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

"""
Receive-side extraction of archive records into a root directory.

Records are applied strictly in arrival order. Directory modes and modification
times are recorded and only applied after the last record, deepest and most
recent first, because creating entries inside a directory changes its mtime
and a read-only directory would refuse them.
"""

import os
import stat
import tarfile

from tarpipe.Archive import ArchiveRecord, NodeKind, TransferStats
from tarpipe.Errors import ArchiveError, FilesystemError, MisWriteError, UnsafePathError, UnsupportedNodeError
from tarpipe.Kernel import getLogger, TarPipeEvent
from tarpipe.Platform import createFIFO
from tarpipe.Settings import COPY_BUFFER_SIZE, PARTIAL_SUFFIX

logger = getLogger(__name__)


class TreeExtractor:

    def __init__(self, root='.', stats=None, bufferSize=COPY_BUFFER_SIZE):
        self.root = os.path.abspath(root)
        self.stats = stats or TransferStats()
        self.bufferSize = bufferSize
        self.deferred = []

    def extract(self, archive):
        """Materialize every record of archive, then apply the deferred directory modes and times."""
        while True:
            try:
                member = archive.next()
            except tarfile.TarError as e:
                raise ArchiveError(f"Invalid archive stream: {e}") from e

            if member is None:
                break

            try:
                record = ArchiveRecord.fromTarInfo(member)
            except UnsupportedNodeError as e:
                self._skip(e)
            else:
                self.extractRecord(record, archive, member)

            # Stream mode keeps every member otherwise
            archive.members.clear()

        self.applyDeferred()
        return self.stats

    def resolve(self, name):
        """Map an archive name to a path below root. Names that could escape root are rejected."""
        drive, _ = os.path.splitdrive(name)
        if drive or name.startswith('/') or os.path.isabs(name):
            raise UnsafePathError(f"{name}: absolute path in archive")
        if '..' in name.replace('\\', '/').split('/'):
            raise UnsafePathError(f"{name}: path escapes the destination")

        path = os.path.normpath(os.path.join(self.root, name))

        realRoot = os.path.realpath(self.root)
        realParent = os.path.realpath(os.path.dirname(path))
        if path != self.root and os.path.commonpath([realRoot, realParent]) != realRoot:
            raise UnsafePathError(f"{name}: path escapes the destination through a symbolic link")

        return path

    def extractRecord(self, record, archive=None, member=None):
        path = self.resolve(record.name)

        try:
            if path != self.root:
                os.makedirs(os.path.dirname(path), exist_ok=True)

            if record.kind is NodeKind.DIRECTORY:
                self._extractDirectory(path, record)
            elif record.kind is NodeKind.REGULAR:
                self._extractRegular(path, record, archive.extractfile(member))
            elif record.kind is NodeKind.SYMLINK:
                self._removeExisting(path, record)
                os.symlink(record.linkTarget, path)
            elif record.kind is NodeKind.FIFO:
                self._removeExisting(path, record)
                createFIFO(path, record.mode, record.mtime)
            elif record.kind is NodeKind.HARDLINK:
                target = self.resolve(record.linkTarget)
                self._removeExisting(path, record)
                os.link(target, path)
                os.utime(path, (record.mtime, record.mtime))
        except OSError as e:
            raise FilesystemError(f"{record.name}: {e.strerror or e}") from e

        self.stats.count(record)
        TarPipeEvent.entryExtracted.trigger(record=record)

    def applyDeferred(self):
        for path, mode, mtime in reversed(self.deferred):
            try:
                os.chmod(path, mode)
                os.utime(path, (mtime, mtime))
            except OSError as e:
                raise FilesystemError(f"{path}: cannot restore mode and modification time: {e.strerror}") from e
        self.deferred.clear()

    def _extractDirectory(self, path, record):
        if os.path.islink(path) or (os.path.lexists(path) and not os.path.isdir(path)):
            raise FilesystemError(f"{record.name}: exists and is not a directory")

        # Owner access stays open until the deferred pass so entries can still be created inside
        workingMode = record.mode | stat.S_IRWXU
        if os.path.isdir(path):
            os.chmod(path, workingMode)
        else:
            os.mkdir(path, workingMode)
            os.chmod(path, workingMode)

        self.deferred.append((path, record.mode, record.mtime))

    def _removeExisting(self, path, record):
        if not os.path.lexists(path):
            return
        if os.path.isdir(path) and not os.path.islink(path):
            raise FilesystemError(f"{record.name}: cannot replace existing directory")
        os.unlink(path)

    def _extractRegular(self, path, record, source):
        partialPath = path + PARTIAL_SUFFIX
        written = 0

        try:
            with open(partialPath, 'wb') as target:
                while True:
                    try:
                        chunk = source.read(self.bufferSize)
                    except tarfile.ReadError as e:
                        raise MisWriteError(record.name, written, record.size) from e
                    except (OSError, EOFError) as e:
                        raise ArchiveError(f"{record.name}: cannot read payload: {e}") from e
                    if not chunk:
                        break
                    target.write(chunk)
                    written += len(chunk)

            os.chmod(partialPath, record.mode)

            if written != record.size:
                raise MisWriteError(record.name, written, record.size)

            os.replace(partialPath, path)
        except BaseException:
            self._discard(partialPath)
            raise

        os.utime(path, (record.mtime, record.mtime))

    def _discard(self, partialPath):
        try:
            os.unlink(partialPath)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.debug(f"Cannot remove {partialPath}: {e}")

    def _skip(self, error):
        logger.warning(str(error))
        self.stats.skipped += 1
        TarPipeEvent.entrySkipped.trigger(name=error.name, reason=error.reason)
