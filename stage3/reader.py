from __future__ import annotations

import os
import stat
from typing import BinaryIO, Dict, Iterator, List, Optional, Tuple

from . import tlv
from .codec import Codec, DECODE_ERRORS
from .constants import DEFAULT_CHUNK_SIZE, RTYPE_ENTRY, RTYPE_END
from .entry import Entry, EntryKind
from .errors import FormatError, InputError, IoError, map_os_error
from .pathutil import path_problem
from .records import read_record
from .superblock import Superblock, read_superblock


class _CountingReader:
    """Decompressed stream wrapper tracking the offset and mapping decoder errors."""

    def __init__(self, stream: BinaryIO):
        self.stream = stream
        self.pos = 0

    def read(self, n: int) -> bytes:
        try:
            b = self.stream.read(n)
        except DECODE_ERRORS as exc:
            raise FormatError(f"corrupt compressed stream: {exc}") from exc
        except OSError as exc:
            raise IoError(f"read failed: {exc.strerror or exc}") from exc
        self.pos += len(b)
        return b


class ArchiveReader:
    """Forward-only reader over a stage3 archive.

    One pass per open: iterate ``entries()`` (metadata only) or
    ``entries_with_content()``, then reopen to read again.
    """

    def __init__(self, path: str, *, check_paths: bool = True, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.path = os.fspath(path)
        self.check_paths = check_paths
        self.chunk_size = chunk_size
        self.f: Optional[BinaryIO] = None
        self.superblock: Optional[Superblock] = None
        self.end_record: Optional[Dict[str, int]] = None
        self._src: Optional[_CountingReader] = None
        self._started = False
        self._remaining = 0
        self._serial = 0

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def open(self):
        if self.f is not None:
            return
        try:
            st = os.stat(self.path)
        except OSError as exc:
            raise map_os_error(exc, self.path, what="archive") from exc
        if not stat.S_ISREG(st.st_mode):
            raise InputError(f"archive is not a regular file: {self.path}", path=self.path)
        try:
            self.f = open(self.path, "rb")
        except OSError as exc:
            raise map_os_error(exc, self.path, what="archive") from exc
        try:
            self.superblock = read_superblock(self.f)
            codec = Codec(self.superblock.codec_id)
        except ValueError as exc:
            self.close()
            raise FormatError(f"{self.path}: {exc}") from exc
        self._src = _CountingReader(codec.reader(self.f))

    def close(self):
        if self.f is not None:
            self.f.close()
            self.f = None
            self._src = None

    def entries(self) -> Iterator[Entry]:
        """Yield entry metadata in archive order, skipping content."""
        for e, _content in self._records():
            yield e

    def entries_with_content(self) -> Iterator[Tuple[Entry, Iterator[bytes]]]:
        """Yield (entry, content chunks); content left unread is skipped automatically."""
        return self._records()

    # internals
    def _records(self) -> Iterator[Tuple[Entry, Iterator[bytes]]]:
        if self._src is None:
            raise RuntimeError("Archive not open")
        if self._started:
            raise RuntimeError("Archive stream already consumed; reopen to read again")
        self._started = True
        count = files = content_bytes = 0
        while True:
            self._drain()
            rec = self._read_record()
            if rec is None:
                raise FormatError("archive ends without an end record (truncated)")
            rtype, meta = rec
            if rtype == RTYPE_END:
                self._finish(meta, count, files, content_bytes)
                return
            if rtype != RTYPE_ENTRY:
                raise FormatError(f"unknown record type {rtype}")
            entry = self._decode_entry(meta)
            count += 1
            self._serial += 1
            if entry.kind == EntryKind.FILE:
                entry.content_offset = self._src.pos
                files += 1
                content_bytes += entry.size
                self._remaining = entry.size
            yield entry, self._content(self._serial)

    def _read_record(self) -> Optional[Tuple[int, bytes]]:
        offset = self._src.pos
        try:
            rec = read_record(self._src)
        except EOFError as exc:
            raise FormatError(f"truncated record header at stream offset {offset}") from exc
        except ValueError as exc:
            raise FormatError(f"{exc} at stream offset {offset}") from exc
        if rec is None:
            return None
        rtype, _rflags, meta, _consumed = rec
        return rtype, meta

    def _decode_entry(self, meta: bytes) -> Entry:
        try:
            e = tlv.loads_entry(meta)
        except ValueError as exc:
            raise FormatError(f"malformed entry header: {exc}") from exc
        if self.check_paths:
            problem = path_problem(e.path)
            if problem:
                raise FormatError(f"invalid archive path ({problem}): {e.path!r}", path=e.path)
        return e

    def _content(self, serial: int) -> Iterator[bytes]:
        while self._remaining > 0:
            if serial != self._serial:
                raise RuntimeError("content iterator used after advancing to the next entry")
            buf = self._read_content(min(self.chunk_size, self._remaining))
            yield buf

    def _read_content(self, n: int) -> bytes:
        buf = self._src.read(n)
        if not buf:
            raise FormatError("archive truncated: declared content size overruns the stream")
        self._remaining -= len(buf)
        return buf

    def _drain(self):
        while self._remaining > 0:
            self._read_content(min(self.chunk_size, self._remaining))

    def _finish(self, meta: bytes, count: int, files: int, content_bytes: int):
        try:
            end = tlv.loads_end(meta)
        except ValueError as exc:
            raise FormatError(f"malformed end record: {exc}") from exc
        if (end["entry_count"], end["file_count"], end["content_bytes"]) != (count, files, content_bytes):
            raise FormatError(
                f"end record totals disagree with stream: {end['entry_count']} entries/"
                f"{end['content_bytes']} bytes declared, {count}/{content_bytes} found"
            )
        if self._src.read(1):
            raise FormatError("unexpected data after end record")
        self.end_record = end


def list_archive(path: str) -> List[Entry]:
    """Return every entry of the archive at ``path`` without materializing content."""
    with ArchiveReader(path) as r:
        return list(r.entries())
