from __future__ import annotations

import os
import shutil
import tempfile
from dataclasses import dataclass, replace
from typing import BinaryIO, Callable, Iterable, Optional, Tuple

from . import tlv
from .codec import Codec
from .constants import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CODEC_ID,
    FLAG_DETERMINISTIC,
    RTYPE_ENTRY,
    RTYPE_END,
    new_uuid_bytes,
)
from .entry import Entry, EntryKind
from .errors import EncodingError, InputError, IoError, map_os_error
from .hashutil import content_hasher
from .pathutil import PathTracker, path_problem
from .records import write_record
from .superblock import pack_superblock


# Opens the content of a regular-file entry. Seekable streams are read twice
# in place; anything else is first spooled to a temporary file.
ContentReader = Callable[[Entry], BinaryIO]


@dataclass
class WriteStats:
    entry_count: int = 0
    file_count: int = 0
    content_bytes: int = 0
    archive_bytes: int = 0


class _CountingSink:
    """Tracks the offset within the uncompressed record stream."""

    def __init__(self, stream):
        self.stream = stream
        self.pos = 0

    def write(self, data: bytes) -> int:
        self.stream.write(data)
        self.pos += len(data)
        return len(data)


class ArchiveWriter:
    """Streaming writer producing a compressed stage3 record stream.

    Entries must be added in archive order: the "." root directory first and
    every directory before anything it contains.
    """

    def __init__(
        self,
        out_path: str,
        codec_id: int = DEFAULT_CODEC_ID,
        level: Optional[int] = None,
        *,
        deterministic: bool = False,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.out_path = os.fspath(out_path)
        try:
            self.codec = Codec(codec_id, level, threads=0 if deterministic else -1)
        except ValueError as exc:
            raise InputError(str(exc)) from exc
        self.deterministic = deterministic
        self.chunk_size = chunk_size
        self.archive_uuid = b"\x00" * 16 if deterministic else new_uuid_bytes()
        self.stats = WriteStats()
        self.f: Optional[BinaryIO] = None
        self._stream = None
        self._sink: Optional[_CountingSink] = None
        self._paths = PathTracker()
        self._finalized = False

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def open(self):
        if self.f is not None:
            return
        try:
            self.f = open(self.out_path, "wb")
        except OSError as exc:
            raise map_os_error(exc, self.out_path, what="output path") from exc
        flags = FLAG_DETERMINISTIC if self.deterministic else 0
        try:
            self.f.write(pack_superblock(flags, self.codec.codec_id, self.codec.level, self.archive_uuid))
        except OSError as exc:
            self.close()
            raise IoError(f"{self.out_path}: {exc.strerror or exc}", path=self.out_path) from exc
        self._stream = self.codec.writer(self.f)
        self._sink = _CountingSink(self._stream)

    def close(self):
        # A partially written archive is left in place for the caller to discard
        if self.f is not None:
            self.f.close()
            self.f = None
            self._stream = None
            self._sink = None

    def add(self, entry: Entry, content_reader: Optional[ContentReader] = None) -> Entry:
        """Append one entry; regular files stream their content from ``content_reader``.

        Returns the entry as written, with ``checksum`` and ``content_offset`` set.
        """
        if self._sink is None:
            raise RuntimeError("Archive not open")
        if self._finalized:
            raise RuntimeError("Archive already finalized")
        self._check_entry(entry)
        try:
            if entry.kind == EntryKind.FILE:
                written = self._add_file(entry, content_reader)
            else:
                written = replace(entry, size=0, checksum=None, content_offset=None)
                self._emit_header(written)
        except OSError as exc:
            raise IoError(f"{entry.path}: {exc.strerror or exc}", path=entry.path) from exc
        self.stats.entry_count += 1
        return written

    def write_entries(self, entries: Iterable[Entry], content_reader: Optional[ContentReader] = None) -> WriteStats:
        for e in entries:
            self.add(e, content_reader)
        return self.stats

    def finalize(self) -> WriteStats:
        """Write the end record and flush the compressed stream to disk."""
        if self._sink is None or self.f is None:
            raise RuntimeError("Archive not open")
        if self._finalized:
            return self.stats
        s = self.stats
        try:
            write_record(self._sink, RTYPE_END, tlv.dumps_end(s.entry_count, s.file_count, s.content_bytes))
            self._stream.close()
            self.f.flush()
            os.fsync(self.f.fileno())
            s.archive_bytes = self.f.tell()
        except OSError as exc:
            raise IoError(f"{self.out_path}: {exc.strerror or exc}", path=self.out_path) from exc
        self._finalized = True
        return s

    # internals
    def _check_entry(self, e: Entry):
        problem = path_problem(e.path)
        if problem:
            raise EncodingError(f"{problem}: {e.path!r}", path=e.path)
        if e.kind == EntryKind.SYMLINK:
            if e.link_target is None:
                raise InputError(f"symlink without target: {e.path}", path=e.path)
            if "\x00" in e.link_target:
                raise EncodingError(f"symlink target contains NUL: {e.path}", path=e.path)
        violation = self._paths.add(e.path, e.kind)
        if violation == PathTracker.DUPLICATE:
            raise InputError(f"duplicate archive path: {e.path}", path=e.path)
        if violation == PathTracker.ORPHAN:
            raise InputError(f"parent directory must be archived first: {e.path}", path=e.path)

    def _emit_header(self, e: Entry):
        try:
            meta = tlv.dumps_entry(e)
        except UnicodeEncodeError as exc:
            raise EncodingError(f"metadata is not valid UTF-8: {e.path!r}", path=e.path) from exc
        write_record(self._sink, RTYPE_ENTRY, meta)

    def _add_file(self, entry: Entry, content_reader: Optional[ContentReader]) -> Entry:
        if content_reader is None:
            raise InputError(f"no content source for regular file: {entry.path}", path=entry.path)
        with content_reader(entry) as src:
            if src.seekable():
                written, copied, digest = self._stream_file(entry, src)
            else:
                # Pipes and other one-shot streams are staged so they can be read twice
                with tempfile.SpooledTemporaryFile(max_size=self.chunk_size) as spool:
                    shutil.copyfileobj(src, spool, self.chunk_size)
                    spool.seek(0)
                    written, copied, digest = self._stream_file(entry, spool)
        if copied != entry.size or digest != written.checksum:
            raise IoError(f"{entry.path}: content changed while archiving", path=entry.path)
        self.stats.file_count += 1
        self.stats.content_bytes += copied
        return written

    def _stream_file(self, entry: Entry, src: BinaryIO) -> Tuple[Entry, int, bytes]:
        # The checksum travels in the header, ahead of the content, so the
        # source is read twice: once to hash, once to copy (and re-hash).
        digest, n = self._hash_source(src)
        if n != entry.size:
            raise IoError(f"{entry.path}: size changed while archiving ({entry.size} -> {n} bytes)", path=entry.path)
        src.seek(0)
        written = replace(entry, checksum=digest)
        self._emit_header(written)
        written.content_offset = self._sink.pos
        copied, digest2 = self._copy_content(src)
        return written, copied, digest2

    def _hash_source(self, src: BinaryIO) -> Tuple[bytes, int]:
        hasher = content_hasher()
        n = 0
        while True:
            buf = src.read(self.chunk_size)
            if not buf:
                break
            hasher.update(buf)
            n += len(buf)
        return hasher.digest(), n

    def _copy_content(self, src: BinaryIO) -> Tuple[int, bytes]:
        hasher = content_hasher()
        n = 0
        while True:
            buf = src.read(self.chunk_size)
            if not buf:
                break
            hasher.update(buf)
            self._sink.write(buf)
            n += len(buf)
        return n, hasher.digest()
