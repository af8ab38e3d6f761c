from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass
from typing import BinaryIO, Optional, Tuple

from .constants import MAX_META_LEN, REC_SYNC


# Record header (fixed 16 bytes)
# struct: <4s B B H I I
#  - sync[4]
#  - rtype u8
#  - rflags u8
#  - reserved u16
#  - meta_len u32 (TLV metadata that follows the fixed header)
#  - header_crc32 u32 (over fixed header without crc, plus metadata)
_REC_HDR_STRUCT = struct.Struct("<4sBBHII")


@dataclass
class RecordHeader:
    rtype: int
    rflags: int
    meta: bytes

    def pack(self) -> bytes:
        pre_crc = _REC_HDR_STRUCT.pack(REC_SYNC, self.rtype, self.rflags, 0, len(self.meta), 0)
        crc = zlib.crc32(pre_crc[:-4] + self.meta)
        return _REC_HDR_STRUCT.pack(REC_SYNC, self.rtype, self.rflags, 0, len(self.meta), crc) + self.meta


def write_record(f: BinaryIO, rtype: int, meta: bytes, rflags: int = 0) -> int:
    """Write one record header plus metadata; returns the number of bytes written."""
    if len(meta) > MAX_META_LEN:
        raise ValueError("record metadata too large")
    raw = RecordHeader(rtype=rtype, rflags=rflags, meta=meta).pack()
    f.write(raw)
    return len(raw)


def read_exact(f: BinaryIO, n: int) -> bytes:
    # Decompressing readers may return short reads before EOF
    buf = bytearray()
    while len(buf) < n:
        b = f.read(n - len(buf))
        if not b:
            raise EOFError("Unexpected EOF")
        buf += b
    return bytes(buf)


def read_record(f: BinaryIO) -> Optional[Tuple[int, int, bytes, int]]:
    """Read the next record header.

    Returns (rtype, rflags, meta, bytes_consumed), or None when the stream ends
    cleanly before a new record starts.
    """
    first = f.read(_REC_HDR_STRUCT.size)
    if not first:
        return None
    fixed = first if len(first) == _REC_HDR_STRUCT.size else first + read_exact(f, _REC_HDR_STRUCT.size - len(first))
    sync, rtype, rflags, _reserved, meta_len, hdr_crc = _REC_HDR_STRUCT.unpack(fixed)
    if sync != REC_SYNC:
        raise ValueError("Bad record sync")
    if meta_len > MAX_META_LEN:
        raise ValueError("Record metadata length exceeds safety bound")
    meta = read_exact(f, meta_len) if meta_len else b""
    if zlib.crc32(fixed[:-4] + meta) != hdr_crc:
        raise ValueError("Record header CRC mismatch")
    return rtype, rflags, meta, len(fixed) + meta_len
