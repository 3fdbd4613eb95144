"""
File status probe.

The validator asks exactly one question of the filesystem: what kind of
thing is at this path, following symlinks. Keeping that behind a small
interface lets the decision logic run against an in-memory fake.
"""

from __future__ import annotations

import os
import stat
from abc import ABC, abstractmethod

from hostvol.models import PathKind


def kind_from_mode(st_mode: int) -> PathKind:
    if stat.S_ISDIR(st_mode):
        return PathKind.DIRECTORY
    if stat.S_ISREG(st_mode):
        return PathKind.FILE
    if stat.S_ISSOCK(st_mode):
        return PathKind.SOCKET
    if stat.S_ISCHR(st_mode):
        return PathKind.CHAR_DEVICE
    if stat.S_ISBLK(st_mode):
        return PathKind.BLOCK_DEVICE
    return PathKind.OTHER


class FileStatusProbe(ABC):
    @abstractmethod
    def kind_of(self, path: str) -> PathKind:
        """
        Return the kind of the object at path, following symlinks.

        Raises:
            FileNotFoundError: path (or a dangling link's target) is absent
            PermissionError: the query itself was refused
        """


class OsFileStatus(FileStatusProbe):
    def kind_of(self, path: str) -> PathKind:
        # os.stat follows links, so a dangling symlink raises FileNotFoundError
        return kind_from_mode(os.stat(path).st_mode)
