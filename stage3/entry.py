from __future__ import annotations

import os
import stat
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional


class EntryKind(IntEnum):
    FILE = 0
    DIR = 1
    SYMLINK = 2
    OTHER = 3  # device, fifo or socket; recorded without content


_KIND_TYPE_BITS = {
    EntryKind.FILE: stat.S_IFREG,
    EntryKind.DIR: stat.S_IFDIR,
    EntryKind.SYMLINK: stat.S_IFLNK,
}


def kind_from_mode(st_mode: int) -> EntryKind:
    if stat.S_ISREG(st_mode):
        return EntryKind.FILE
    if stat.S_ISDIR(st_mode):
        return EntryKind.DIR
    if stat.S_ISLNK(st_mode):
        return EntryKind.SYMLINK
    return EntryKind.OTHER


@dataclass
class Entry:
    """One filesystem object as captured in a stage3 archive."""

    path: str
    kind: EntryKind
    mode: int = 0
    owner_uid: int = 0
    owner_gid: int = 0
    size: int = 0
    link_target: Optional[str] = None
    content_offset: Optional[int] = None
    checksum: Optional[bytes] = None
    mtime_ns: Optional[int] = None
    # OTHER entries only: S_IFMT bits and device number
    file_type: int = 0
    rdev: int = 0

    @classmethod
    def from_stat(cls, path: str, st: os.stat_result, link_target: Optional[str] = None) -> "Entry":
        """Build an entry from ``os.lstat`` output."""
        kind = kind_from_mode(st.st_mode)
        e = cls(
            path=path,
            kind=kind,
            mode=stat.S_IMODE(st.st_mode),
            owner_uid=st.st_uid,
            owner_gid=st.st_gid,
            size=st.st_size if kind == EntryKind.FILE else 0,
            mtime_ns=st.st_mtime_ns,
        )
        if kind == EntryKind.SYMLINK:
            e.link_target = link_target
        elif kind == EntryKind.OTHER:
            e.file_type = stat.S_IFMT(st.st_mode)
            if stat.S_ISCHR(st.st_mode) or stat.S_ISBLK(st.st_mode):
                e.rdev = st.st_rdev
        return e

    @property
    def type_bits(self) -> int:
        return _KIND_TYPE_BITS.get(self.kind, self.file_type)

    def same_metadata(self, other: "Entry") -> bool:
        """Structural equality: everything an extraction must reproduce except content."""
        if (
            self.path != other.path
            or self.kind != other.kind
            or self.mode != other.mode
            or self.owner_uid != other.owner_uid
            or self.owner_gid != other.owner_gid
            or self.size != other.size
            or self.link_target != other.link_target
        ):
            return False
        if self.kind == EntryKind.OTHER:
            return self.file_type == other.file_type and self.rdev == other.rdev
        return True

    def summary(self) -> str:
        """``ls -l`` style one-line rendering used by ``stage3 list``."""
        line = f"{stat.filemode(self.type_bits | self.mode)} {self.owner_uid}/{self.owner_gid} {self.size:>10} {self.path}"
        if self.kind == EntryKind.SYMLINK:
            line += f" -> {self.link_target}"
        return line
