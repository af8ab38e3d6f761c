from __future__ import annotations

import lzma
import zlib
from typing import BinaryIO, Optional

import zstandard

from .constants import CODEC_NONE, CODEC_ZSTD, CODEC_DEFLATE, CODEC_XZ, CODEC_NAMES


class TrailingDataError(ValueError):
    """Bytes follow the end-of-stream marker of a compressed stream."""


# Exceptions a decoder may raise on corrupt or truncated input
DECODE_ERRORS = (zlib.error, lzma.LZMAError, zstandard.ZstdError, EOFError, TrailingDataError)

_LEVEL_RANGES = {
    CODEC_NONE: (0, 0, 0),
    CODEC_DEFLATE: (0, 9, 6),
    CODEC_XZ: (0, 9, 6),
    CODEC_ZSTD: (1, 22, 3),
}


def codec_id_from_name(name: str) -> int:
    for codec_id, codec_name in CODEC_NAMES.items():
        if codec_name == name.lower():
            return codec_id
    raise ValueError(f"unknown codec: {name}")


class _PassthroughWriter:
    def __init__(self, fh: BinaryIO):
        self.fh = fh

    def write(self, data: bytes) -> int:
        self.fh.write(data)
        return len(data)

    def close(self) -> None:
        self.fh.flush()


class _ObjCompressWriter:
    """Adapts zlib/lzma compressor objects to a write()/close() stream."""

    def __init__(self, fh: BinaryIO, compressor):
        self.fh = fh
        self._c = compressor

    def write(self, data: bytes) -> int:
        out = self._c.compress(data)
        if out:
            self.fh.write(out)
        return len(data)

    def close(self) -> None:
        if self._c is None:
            return
        self.fh.write(self._c.flush())
        self.fh.flush()
        self._c = None


class _DecompressReader:
    """Streaming decompression over a file object.

    Truncation surfaces as EOFError; anything after the end-of-stream marker
    as TrailingDataError.
    """

    def __init__(self, fh: BinaryIO, read_size: int = 65536):
        self.fh = fh
        self.read_size = read_size
        self._d = self._decompressor()
        self._buf = b""
        self._tail_checked = False

    def _decompressor(self):
        raise NotImplementedError

    def _held_input(self) -> Optional[bytes]:
        """Input the decompressor still holds back, or None when it needs more."""
        raise NotImplementedError

    def _decompress(self, raw: bytes, limit: int) -> bytes:
        return self._d.decompress(raw, limit)

    def read(self, n: int = -1) -> bytes:
        if n is None or n < 0:
            chunks = [self._buf]
            self._buf = b""
            while True:
                chunk = self.read(self.read_size)
                if not chunk:
                    return b"".join(chunks)
                chunks.append(chunk)
        while len(self._buf) < n and not self._d.eof:
            raw = self._held_input()
            if raw is None:
                raw = self.fh.read(self.read_size)
                if not raw:
                    raise EOFError("Compressed stream ended before the end-of-stream marker")
            self._buf += self._decompress(raw, n - len(self._buf))
        if self._d.eof and not self._tail_checked:
            self._tail_checked = True
            if self._d.unused_data or self.fh.read(1):
                raise TrailingDataError("data after the end of the compressed stream")
        out, self._buf = self._buf[:n], self._buf[n:]
        return out


class _ZlibReader(_DecompressReader):
    def _decompressor(self):
        return zlib.decompressobj()

    def _held_input(self) -> Optional[bytes]:
        return self._d.unconsumed_tail or None


class _XzReader(_DecompressReader):
    def _decompressor(self):
        return lzma.LZMADecompressor(format=lzma.FORMAT_XZ)

    def _held_input(self) -> Optional[bytes]:
        # Called with no new input, the decompressor drains what it buffered
        return None if self._d.needs_input else b""


class _ZstdReader(_DecompressReader):
    def __init__(self, fh: BinaryIO, read_size: int = 16384):
        super().__init__(fh, read_size)

    def _decompressor(self):
        return zstandard.ZstdDecompressor().decompressobj()

    def _held_input(self) -> Optional[bytes]:
        return None

    def _decompress(self, raw: bytes, limit: int) -> bytes:
        # No output cap here; small input reads keep each step bounded
        return self._d.decompress(raw)


class Codec:
    """Whole-stream compression transform applied to the record stream."""

    def __init__(self, codec_id: int, level: Optional[int] = None, *, threads: int = 0):
        if codec_id not in CODEC_NAMES:
            raise ValueError(f"unsupported codec id: {codec_id}")
        lo, hi, default = _LEVEL_RANGES[codec_id]
        if level is None:
            level = default
        if not lo <= level <= hi:
            raise ValueError(f"{CODEC_NAMES[codec_id]} level must be within {lo}..{hi}")
        self.codec_id = codec_id
        self.level = level
        self.threads = threads

    @property
    def name(self) -> str:
        return CODEC_NAMES[self.codec_id]

    def writer(self, fh: BinaryIO):
        """Return a write()/close() stream compressing into ``fh``; close() leaves ``fh`` open."""
        if self.codec_id == CODEC_NONE:
            return _PassthroughWriter(fh)
        if self.codec_id == CODEC_DEFLATE:
            return _ObjCompressWriter(fh, zlib.compressobj(self.level))
        if self.codec_id == CODEC_XZ:
            return _ObjCompressWriter(fh, lzma.LZMACompressor(format=lzma.FORMAT_XZ, check=lzma.CHECK_CRC64, preset=self.level))
        c = zstandard.ZstdCompressor(level=self.level, write_checksum=True, threads=self.threads)
        return c.stream_writer(fh, closefd=False)

    def reader(self, fh: BinaryIO) -> BinaryIO:
        """Return a readable stream decompressing ``fh``."""
        if self.codec_id == CODEC_NONE:
            return fh
        if self.codec_id == CODEC_DEFLATE:
            return _ZlibReader(fh)
        if self.codec_id == CODEC_XZ:
            return _XzReader(fh)
        return _ZstdReader(fh)
