from __future__ import annotations

from typing import Dict, Optional

from .constants import ROOT_PATH
from .entry import EntryKind


MAX_PATH_BYTES = 4096


def path_problem(path: str) -> Optional[str]:
    """Return why ``path`` is not a valid archive path, or None when it is."""
    if path == ROOT_PATH:
        return None
    if not path:
        return "empty path"
    if "\x00" in path:
        return "path contains NUL"
    if path.startswith("/"):
        return "absolute path"
    try:
        raw = path.encode("utf-8")
    except UnicodeEncodeError:
        return "path is not valid UTF-8"
    if len(raw) > MAX_PATH_BYTES:
        return f"path exceeds {MAX_PATH_BYTES} bytes"
    for seg in path.split("/"):
        if seg == "":
            return "empty path segment"
        if seg in (".", ".."):
            return f"'{seg}' path segment"
    return None


def parent_path(path: str) -> Optional[str]:
    if path == ROOT_PATH:
        return None
    head, sep, _ = path.rpartition("/")
    return head if sep else ROOT_PATH


class PathTracker:
    """Checks the structural path invariants of an entry sequence.

    Entries must arrive in archive order: the root directory first, every other
    entry after the directory that contains it, and no path twice.
    """

    DUPLICATE = "duplicate"
    ORPHAN = "orphan"

    def __init__(self) -> None:
        self._kinds: Dict[str, EntryKind] = {}

    def add(self, path: str, kind: EntryKind) -> Optional[str]:
        """Record ``path`` and return the violated invariant, if any."""
        if path in self._kinds:
            return self.DUPLICATE
        self._kinds[path] = kind
        parent = parent_path(path)
        if parent is None:
            return None if kind == EntryKind.DIR else self.ORPHAN
        if self._kinds.get(parent) != EntryKind.DIR:
            return self.ORPHAN
        return None
