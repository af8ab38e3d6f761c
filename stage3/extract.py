from __future__ import annotations

import os
import stat
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Tuple

from .constants import ROOT_PATH
from .entry import Entry, EntryKind
from .errors import FormatError, IoError, VerificationFailed, map_os_error
from .hashutil import content_hasher
from .pathutil import PathTracker
from .reader import ArchiveReader


_CREATE_FLAGS = os.O_WRONLY | os.O_CREAT | os.O_EXCL | getattr(os, "O_NOFOLLOW", 0)


@dataclass
class ExtractSummary:
    dest: str
    entry_count: int = 0
    file_count: int = 0
    dir_count: int = 0
    symlink_count: int = 0
    other_count: int = 0
    content_bytes: int = 0
    # (path, reason) for entries that could not be recreated
    skipped: List[Tuple[str, str]] = field(default_factory=list)


def _running_as_root() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


def _set_times(target: str, e: Entry, *, follow: bool = True):
    if e.mtime_ns is None:
        return
    if not follow and os.utime not in os.supports_follow_symlinks:
        return
    os.utime(target, ns=(e.mtime_ns, e.mtime_ns), follow_symlinks=follow)


def _write_file(target: str, e: Entry, chunks: Iterator[bytes]) -> bool:
    hasher = content_hasher()
    with os.fdopen(os.open(target, _CREATE_FLAGS, 0o600), "wb") as out:
        for buf in chunks:
            hasher.update(buf)
            out.write(buf)
    return hasher.digest() == e.checksum


def _make_dir(target: str):
    try:
        os.mkdir(target, 0o700)
    except FileExistsError:
        # Pre-existing directories (mount points on the install target) are reused
        if os.path.islink(target) or not os.path.isdir(target):
            raise


def _make_special(target: str, e: Entry) -> Optional[str]:
    """Create a fifo or device node; returns a reason when it was not created."""
    if stat.S_ISFIFO(e.file_type):
        os.mkfifo(target, 0o600)
        return None
    if stat.S_ISCHR(e.file_type) or stat.S_ISBLK(e.file_type):
        try:
            os.mknod(target, e.file_type | 0o600, e.rdev)
        except PermissionError:
            return "device nodes require root"
        return None
    return "special file type not recreated"


def extract_archive(
    archive: str,
    dest: str,
    *,
    same_owner: Optional[bool] = None,
    progress: Optional[Callable[[Entry], None]] = None,
) -> ExtractSummary:
    """Materialize ``archive`` below ``dest``.

    Every entry must sit inside a directory entry of the same archive, so a
    symlink in the archive can never redirect a write. Ownership is restored
    when ``same_owner`` (default: running as root). Directory modes and
    timestamps are applied last, deepest first.

    Raises:
        VerificationFailed: one or more files did not match their checksum
            (all other entries are still extracted).
    """
    if same_owner is None:
        same_owner = _running_as_root()
    dest = os.fspath(dest)
    try:
        os.makedirs(dest, exist_ok=True)
    except OSError as exc:
        raise map_os_error(exc, dest, what="destination") from exc
    summary = ExtractSummary(dest=dest)
    tracker = PathTracker()
    deferred_dirs: List[Tuple[Entry, str]] = []
    corrupt: List[str] = []

    with ArchiveReader(archive) as r:
        for e, chunks in r.entries_with_content():
            violation = tracker.add(e.path, e.kind)
            if violation:
                raise FormatError(f"refusing to extract {violation} entry: {e.path}", path=e.path)
            target = dest if e.path == ROOT_PATH else os.path.join(dest, *e.path.split("/"))
            try:
                if e.kind == EntryKind.DIR:
                    if e.path != ROOT_PATH:
                        _make_dir(target)
                    deferred_dirs.append((e, target))
                    summary.dir_count += 1
                elif e.kind == EntryKind.FILE:
                    if not _write_file(target, e, chunks):
                        corrupt.append(e.path)
                    if same_owner:
                        os.lchown(target, e.owner_uid, e.owner_gid)
                    os.chmod(target, e.mode)
                    _set_times(target, e)
                    summary.file_count += 1
                    summary.content_bytes += e.size
                elif e.kind == EntryKind.SYMLINK:
                    os.symlink(e.link_target, target)
                    if same_owner:
                        os.lchown(target, e.owner_uid, e.owner_gid)
                    _set_times(target, e, follow=False)
                    summary.symlink_count += 1
                else:
                    reason = _make_special(target, e)
                    if reason:
                        summary.skipped.append((e.path, reason))
                        continue
                    if same_owner:
                        os.lchown(target, e.owner_uid, e.owner_gid)
                    os.chmod(target, e.mode)
                    _set_times(target, e)
                    summary.other_count += 1
            except OSError as exc:
                raise IoError(f"cannot extract {e.path}: {exc.strerror or exc}", path=e.path) from exc
            summary.entry_count += 1
            if progress is not None:
                progress(e)

    for e, target in reversed(deferred_dirs):
        try:
            if same_owner:
                os.lchown(target, e.owner_uid, e.owner_gid)
            os.chmod(target, e.mode)
            _set_times(target, e)
        except OSError as exc:
            raise IoError(f"cannot finish directory {e.path}: {exc.strerror or exc}", path=e.path) from exc

    if corrupt:
        raise VerificationFailed(f"{len(corrupt)} file(s) failed checksum during extraction", paths=corrupt)
    return summary
