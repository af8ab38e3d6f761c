from __future__ import annotations

import os
import stat
from dataclasses import dataclass
from typing import AbstractSet, Iterator, Optional, Tuple, Union

from .constants import ROOT_PATH
from .entry import Entry
from .errors import InputError, map_os_error


_OPEN_FLAGS = os.O_RDONLY | getattr(os, "O_NOFOLLOW", 0) | getattr(os, "O_NONBLOCK", 0)


@dataclass
class EntryError:
    """A filesystem object the walker could not capture."""

    path: str
    cause: OSError

    def describe(self) -> str:
        reason = self.cause.strerror or str(self.cause)
        return f"{self.path}: {reason}"


WalkItem = Union[Entry, EntryError]


def _check_readable(fs_path: str) -> None:
    fd = os.open(fs_path, _OPEN_FLAGS)
    os.close(fd)


def _sorted_names(fs_dir: str):
    with os.scandir(fs_dir) as it:
        names = [d.name for d in it]
    # Byte order of the on-disk names, independent of locale
    names.sort(key=os.fsencode)
    return names


def walk_tree(root, *, exclude: Optional[AbstractSet[Tuple[int, int]]] = None) -> Iterator[WalkItem]:
    """Walk ``root`` in pre-order, yielding an Entry or EntryError per object.

    The root itself comes first as the "." directory. Symlinks are recorded and
    never followed, so nothing outside ``root`` is visited. Objects whose
    (st_dev, st_ino) is in ``exclude`` are left out.

    Raises:
        InputError: ``root`` does not exist or is not a directory.
    """
    root_path = os.fspath(root)
    try:
        st = os.stat(root_path)
    except OSError as exc:
        raise map_os_error(exc, root_path, what="source root") from exc
    if not stat.S_ISDIR(st.st_mode):
        raise InputError(f"source root is not a directory: {root_path}", path=root_path)
    return _walk(root_path, st, frozenset() if exclude is None else exclude)


def _walk(root_path: str, root_st: os.stat_result, exclude) -> Iterator[WalkItem]:
    yield Entry.from_stat(ROOT_PATH, root_st)
    yield from _walk_dir(root_path, "", exclude)


def _walk_dir(fs_dir: str, arc_dir: str, exclude) -> Iterator[WalkItem]:
    try:
        names = _sorted_names(fs_dir)
    except OSError as exc:
        yield EntryError(arc_dir or ROOT_PATH, exc)
        return
    for name in names:
        fs_path = os.path.join(fs_dir, name)
        arc = f"{arc_dir}/{name}" if arc_dir else name
        try:
            st = os.lstat(fs_path)
        except OSError as exc:
            yield EntryError(arc, exc)
            continue
        if (st.st_dev, st.st_ino) in exclude:
            continue
        mode = st.st_mode
        if stat.S_ISLNK(mode):
            try:
                target = os.readlink(fs_path)
            except OSError as exc:
                yield EntryError(arc, exc)
                continue
            yield Entry.from_stat(arc, st, link_target=target)
        elif stat.S_ISDIR(mode):
            yield Entry.from_stat(arc, st)
            yield from _walk_dir(fs_path, arc, exclude)
        elif stat.S_ISREG(mode):
            try:
                _check_readable(fs_path)
            except OSError as exc:
                yield EntryError(arc, exc)
                continue
            yield Entry.from_stat(arc, st)
        else:
            yield Entry.from_stat(arc, st)
