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
Archive records and the send-side tree serializer.

Records travel as POSIX pax tar members so modification times keep their
sub-second precision. The tar stream is written in stream mode ('w|'), it never
seeks and never buffers a whole member.
"""

import os
import stat
import tarfile

from dataclasses import dataclass
from enum import Enum

from tarpipe.Errors import FilesystemError, UnsupportedNodeError
from tarpipe.Kernel import getLogger, TarPipeEvent

logger = getLogger(__name__)

ARCHIVE_FORMAT = tarfile.PAX_FORMAT


class NodeKind(Enum):
    DIRECTORY = 'directory'
    REGULAR = 'regular'
    SYMLINK = 'symlink'
    FIFO = 'fifo'
    HARDLINK = 'hardlink' # Receive only, written by other tar implementations

    @classmethod
    def fromMode(cls, mode, name=''):
        """Classify an lstat() mode. Sockets, devices and anything unknown are unsupported."""
        if stat.S_ISDIR(mode):
            return cls.DIRECTORY
        if stat.S_ISREG(mode):
            return cls.REGULAR
        if stat.S_ISLNK(mode):
            return cls.SYMLINK
        if stat.S_ISFIFO(mode):
            return cls.FIFO
        if stat.S_ISSOCK(mode):
            raise UnsupportedNodeError(name, 'socket ignored')
        if stat.S_ISCHR(mode) or stat.S_ISBLK(mode):
            raise UnsupportedNodeError(name, 'device ignored')
        raise UnsupportedNodeError(name, f'unknown file type {stat.S_IFMT(mode):#o} ignored')


_TAR_TYPES = {
    NodeKind.DIRECTORY: tarfile.DIRTYPE,
    NodeKind.REGULAR: tarfile.REGTYPE,
    NodeKind.SYMLINK: tarfile.SYMTYPE,
    NodeKind.FIFO: tarfile.FIFOTYPE,
    NodeKind.HARDLINK: tarfile.LNKTYPE,
}


@dataclass
class ArchiveRecord:
    """One file-system entry as it travels in the archive. Only REGULAR records carry a payload."""
    name: str
    mode: int
    kind: NodeKind
    size: int = 0
    mtime: float = 0.0
    linkTarget: str = ''

    @property
    def hasPayload(self):
        return self.kind is NodeKind.REGULAR

    def toTarInfo(self):
        tarinfo = tarfile.TarInfo(self.name)
        tarinfo.type = _TAR_TYPES[self.kind]
        tarinfo.mode = self.mode
        tarinfo.size = self.size if self.hasPayload else 0
        tarinfo.mtime = self.mtime
        tarinfo.linkname = self.linkTarget
        return tarinfo

    @classmethod
    def fromTarInfo(cls, tarinfo):
        if tarinfo.isdir():
            kind = NodeKind.DIRECTORY
        elif tarinfo.isreg():
            kind = NodeKind.REGULAR
        elif tarinfo.issym():
            kind = NodeKind.SYMLINK
        elif tarinfo.isfifo():
            kind = NodeKind.FIFO
        elif tarinfo.islnk():
            kind = NodeKind.HARDLINK
        elif tarinfo.isdev():
            raise UnsupportedNodeError(tarinfo.name, 'device ignored')
        else:
            raise UnsupportedNodeError(tarinfo.name, f"unknown record type {tarinfo.type!r} ignored")

        return cls(
            name=tarinfo.name,
            mode=stat.S_IMODE(tarinfo.mode),
            kind=kind,
            size=tarinfo.size if kind is NodeKind.REGULAR else 0,
            mtime=float(tarinfo.mtime),
            linkTarget=tarinfo.linkname,
        )


@dataclass
class TransferStats:
    """Counters of one send or receive run"""
    entries: int = 0
    bytes: int = 0
    skipped: int = 0

    def count(self, record):
        self.entries += 1
        if record.hasPayload:
            self.bytes += record.size


def openArchiveWriter(stream):
    return tarfile.open(fileobj=stream, mode='w|', format=ARCHIVE_FORMAT)


def openArchiveReader(stream):
    return tarfile.open(fileobj=stream, mode='r|')


class TreeSerializer:
    """
    Walks operands and writes one archive record per visited entry.

    Unsupported entries (sockets, devices) are skipped with a warning, every
    other failure aborts the run.
    """

    def __init__(self, archive, baseDir=None, stats=None):
        self.archive = archive
        self.baseDir = baseDir
        self.stats = stats or TransferStats()
        self._warnedLeading = set()

    def addPath(self, operand):
        path = os.path.join(self.baseDir, operand) if self.baseDir else operand
        name = self.archiveName(operand)

        try:
            st = os.lstat(path)
        except OSError as e:
            raise FilesystemError(f"{operand}: cannot stat: {e.strerror}") from e

        if stat.S_ISDIR(st.st_mode):
            self._addTree(path, name)
        else:
            self._addNode(path, name, st)

    def archiveName(self, operand):
        """
        Normalise an operand into a relative archive name using '/' separators.

        Leading '/' (or a drive) and leading '..' components are removed so the
        receiver always extracts below its root; each kind of removal is reported once.
        """
        drive, name = os.path.splitdrive(os.path.normpath(operand))
        name = name.replace(os.sep, '/')

        stripped = name.lstrip('/')
        if drive or stripped != name:
            self._warnLeading('/')
        name = stripped

        parts = name.split('/')
        while parts and parts[0] == '..':
            parts.pop(0)
            self._warnLeading('../')
        name = '/'.join(parts)

        return name or '.'

    def _warnLeading(self, prefix):
        if prefix not in self._warnedLeading:
            self._warnedLeading.add(prefix)
            logger.warning(f"Removing leading '{prefix}' from member names")

    def _joinName(self, parent, child):
        child = child.replace(os.sep, '/')
        return child if parent == '.' else f'{parent}/{child}'

    def _onWalkError(self, error):
        logger.warning(f"{error.filename}: cannot read directory: {error.strerror}; subtree not sent")
        self.stats.skipped += 1

    def _addTree(self, root, rootName):
        for dirPath, dirNames, fileNames in os.walk(root, onerror=self._onWalkError):
            relative = os.path.relpath(dirPath, root)
            dirName = rootName if relative == os.curdir else self._joinName(rootName, relative)

            self._addNode(dirPath, dirName)

            # Directories are emitted when the walk reaches them, links to directories right here.
            dirNames.sort()
            for entry in list(dirNames):
                entryPath = os.path.join(dirPath, entry)
                if os.path.islink(entryPath):
                    dirNames.remove(entry)
                    self._addNode(entryPath, self._joinName(dirName, entry))

            for entry in sorted(fileNames):
                self._addNode(os.path.join(dirPath, entry), self._joinName(dirName, entry))

    def _addNode(self, path, name, st=None):
        try:
            if st is None:
                st = os.lstat(path)
        except FileNotFoundError:
            logger.warning(f"{name}: file removed before it could be read")
            self.stats.skipped += 1
            return
        except OSError as e:
            raise FilesystemError(f"{name}: cannot stat: {e.strerror}") from e

        try:
            kind = NodeKind.fromMode(st.st_mode, name)
        except UnsupportedNodeError as e:
            self._skip(e)
            return

        try:
            record = ArchiveRecord(
                name=name,
                mode=stat.S_IMODE(st.st_mode),
                kind=kind,
                size=st.st_size if kind is NodeKind.REGULAR else 0,
                mtime=st.st_mtime,
                linkTarget=os.readlink(path) if kind is NodeKind.SYMLINK else '',
            )

            if record.hasPayload:
                with open(path, 'rb') as f:
                    self.archive.addfile(record.toTarInfo(), f)
            else:
                self.archive.addfile(record.toTarInfo())
        except OSError as e:
            raise FilesystemError(f"{name}: {e.strerror or e}") from e

        self.stats.count(record)
        TarPipeEvent.entryArchived.trigger(record=record)

    def _skip(self, error):
        logger.warning(str(error))
        self.stats.skipped += 1
        TarPipeEvent.entrySkipped.trigger(name=error.name, reason=error.reason)
