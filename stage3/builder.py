from __future__ import annotations

import io
import os
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import closing
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Iterator, List, Optional, Tuple

from .constants import DEFAULT_CODEC_ID, DEFAULT_PREFETCH_MAX_BYTES
from .entry import Entry, EntryKind
from .errors import IoError
from .walker import EntryError, WalkItem, walk_tree
from .writer import ArchiveWriter, ContentReader


_OPEN_FLAGS = os.O_RDONLY | getattr(os, "O_NOFOLLOW", 0)


class ErrorPolicy(Enum):
    ABORT = "abort"
    SKIP_AND_RECORD = "skip"


@dataclass
class BuildOptions:
    on_entry_error: ErrorPolicy = ErrorPolicy.ABORT
    codec_id: int = DEFAULT_CODEC_ID
    level: Optional[int] = None
    deterministic: bool = False
    # >0 prefetches small files on a thread pool; output order is unchanged
    read_workers: int = 0
    prefetch_max_bytes: int = DEFAULT_PREFETCH_MAX_BYTES


@dataclass
class BuildSummary:
    output_path: str
    entry_count: int = 0
    file_count: int = 0
    dir_count: int = 0
    symlink_count: int = 0
    other_count: int = 0
    content_bytes: int = 0
    archive_bytes: int = 0
    elapsed: float = 0.0
    skipped: List[EntryError] = field(default_factory=list)

    def _count(self, e: Entry):
        self.entry_count += 1
        if e.kind == EntryKind.FILE:
            self.file_count += 1
        elif e.kind == EntryKind.DIR:
            self.dir_count += 1
        elif e.kind == EntryKind.SYMLINK:
            self.symlink_count += 1
        else:
            self.other_count += 1


def open_source_file(root: str) -> ContentReader:
    """Content reader opening entries below ``root`` without following symlinks."""

    def _open(entry: Entry):
        fs_path = os.path.join(root, *entry.path.split("/"))
        return os.fdopen(os.open(fs_path, _OPEN_FLAGS), "rb")

    return _open


def _read_all(reader: ContentReader, entry: Entry) -> bytes:
    with reader(entry) as f:
        return f.read()


def _from_future(fut: Future) -> ContentReader:
    # Worker OSErrors resurface here, inside the writer's error mapping
    return lambda _entry: io.BytesIO(fut.result())


def _pipeline(items: Iterable[WalkItem], reader: ContentReader, opts: BuildOptions) -> Iterator[Tuple[WalkItem, ContentReader]]:
    if opts.read_workers <= 0:
        for item in items:
            yield item, reader
        return
    window: deque = deque()
    limit = opts.read_workers * 4
    with ThreadPoolExecutor(max_workers=opts.read_workers) as pool:
        for item in items:
            fut = None
            if isinstance(item, Entry) and item.kind == EntryKind.FILE and item.size <= opts.prefetch_max_bytes:
                fut = pool.submit(_read_all, reader, item)
            window.append((item, fut))
            if len(window) >= limit:
                head, head_fut = window.popleft()
                yield head, (reader if head_fut is None else _from_future(head_fut))
        while window:
            head, head_fut = window.popleft()
            yield head, (reader if head_fut is None else _from_future(head_fut))


def build(
    source_dir,
    output_path,
    options: Optional[BuildOptions] = None,
    *,
    progress: Optional[Callable[[Entry], None]] = None,
) -> BuildSummary:
    """Snapshot ``source_dir`` into a stage3 archive at ``output_path``.

    Per-entry walk failures abort the build or are recorded in
    ``BuildSummary.skipped`` according to ``options.on_entry_error``. On any
    other error the partially written output is left in place.

    Raises:
        InputError: bad source root or output location.
        IoError: read/write failure, or an entry failure under ErrorPolicy.ABORT.
        EncodingError: a path or link target that cannot be stored.
    """
    opts = options or BuildOptions()
    root = os.fspath(source_dir)
    out = os.fspath(output_path)
    excluded = set()
    items = walk_tree(root, exclude=excluded)
    summary = BuildSummary(output_path=out)
    t0 = time.monotonic()
    with ArchiveWriter(out, opts.codec_id, opts.level, deterministic=opts.deterministic) as w:
        # Keep the archive out of its own snapshot when written inside the tree
        ost = os.stat(out)
        excluded.add((ost.st_dev, ost.st_ino))
        with closing(_pipeline(items, open_source_file(root), opts)) as pipeline:
            for item, content_reader in pipeline:
                if isinstance(item, EntryError):
                    if opts.on_entry_error == ErrorPolicy.ABORT:
                        raise IoError(f"cannot archive {item.describe()}", path=item.path) from item.cause
                    summary.skipped.append(item)
                    continue
                written = w.add(item, content_reader)
                summary._count(written)
                if progress is not None:
                    progress(written)
        stats = w.finalize()
    summary.content_bytes = stats.content_bytes
    summary.archive_bytes = stats.archive_bytes
    summary.elapsed = time.monotonic() - t0
    return summary
