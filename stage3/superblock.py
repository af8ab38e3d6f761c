from __future__ import annotations

import struct
import time
import zlib
from dataclasses import dataclass
from typing import BinaryIO

from .constants import SUPERBLOCK_MAGIC, VERSION_MAJOR, VERSION_MINOR, FLAG_DETERMINISTIC


# Fields (little endian):
# magic[8], ver_major u16, ver_minor u16, flags u32,
# codec u16, level u16, created_sec u64, uuid[16], header_crc32 u32
_SUPERBLOCK_STRUCT = struct.Struct("<8sHHIHHQ16sI")
SUPERBLOCK_SIZE = _SUPERBLOCK_STRUCT.size


@dataclass
class Superblock:
    version_major: int
    version_minor: int
    flags: int
    codec_id: int
    level: int
    created_sec: int
    uuid: bytes

    @property
    def deterministic(self) -> bool:
        return bool(self.flags & FLAG_DETERMINISTIC)


def pack_superblock(flags: int, codec_id: int, level: int, archive_uuid: bytes) -> bytes:
    created_sec = 0 if flags & FLAG_DETERMINISTIC else int(time.time())
    pre = _SUPERBLOCK_STRUCT.pack(
        SUPERBLOCK_MAGIC,
        VERSION_MAJOR,
        VERSION_MINOR,
        flags,
        codec_id,
        level,
        created_sec,
        archive_uuid,
        0,  # crc placeholder
    )
    crc = zlib.crc32(pre[:-4])
    return pre[:-4] + struct.pack("<I", crc)


def read_superblock(f: BinaryIO) -> Superblock:
    raw = f.read(_SUPERBLOCK_STRUCT.size)
    if len(raw) != _SUPERBLOCK_STRUCT.size:
        raise ValueError("Superblock too short")
    magic, vmaj, vmin, flags, codec_id, level, csec, archive_uuid, hdr_crc = _SUPERBLOCK_STRUCT.unpack(raw)
    if magic != SUPERBLOCK_MAGIC:
        raise ValueError("Bad superblock magic; not a stage3 archive")
    if zlib.crc32(raw[:-4]) != hdr_crc:
        raise ValueError("Superblock CRC mismatch")
    if vmaj != VERSION_MAJOR:
        raise ValueError(f"Unsupported format version {vmaj}.{vmin}")
    return Superblock(
        version_major=vmaj,
        version_minor=vmin,
        flags=flags,
        codec_id=codec_id,
        level=level,
        created_sec=csec,
        uuid=archive_uuid,
    )
