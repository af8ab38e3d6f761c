from __future__ import annotations

"""
Minimal TLV encoder/decoder for stage3 record metadata.

Encoding
- TLV: varint(tag) || varint(length) || payload
- Integers: unsigned LEB128 varint (signed values are zigzag-mapped first)
- Bytes: raw payload (length provided by TLV len)
- Strings: UTF-8 bytes (length provided by TLV len)

Entry record metadata
- 1: path (utf8)
- 2: kind (varint)
- 3: mode (varint)
- 4: uid (varint)
- 5: gid (varint)
- 6: size (varint)
- 7: link_target (utf8, symlinks only)
- 8: checksum (bytes[32], regular files only)
- 9: mtime_ns (zigzag varint, optional)
- 10: file_type (varint, OTHER entries only)
- 11: rdev (varint, device nodes only)

End record metadata
- 1: entry_count (varint)
- 2: file_count (varint)
- 3: content_bytes (varint)

Unknown tags are skipped so later minor versions can add fields.
"""

from typing import Dict, List, Tuple

from .constants import CHECKSUM_SIZE
from .entry import Entry, EntryKind


def _varint_encode(n: int) -> bytes:
    if n < 0:
        raise ValueError("varint: negative not supported")
    out = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            out.append(b | 0x80)
        else:
            out.append(b)
            break
    return bytes(out)


def _varint_decode(data: bytes, pos: int) -> Tuple[int, int]:
    shift = 0
    result = 0
    while True:
        if pos >= len(data):
            raise ValueError("varint: truncated")
        b = data[pos]
        pos += 1
        result |= (b & 0x7F) << shift
        if not (b & 0x80):
            return result, pos
        shift += 7
        if shift > 63:
            raise ValueError("varint: too large")


def _zigzag(n: int) -> int:
    return (n << 1) if n >= 0 else ((-n << 1) - 1)


def _unzigzag(n: int) -> int:
    return (n >> 1) if not (n & 1) else -((n + 1) >> 1)


def _tlv(tag: int, payload: bytes) -> bytes:
    return _varint_encode(tag) + _varint_encode(len(payload)) + payload


def _uint(payload: bytes) -> int:
    value, pos = _varint_decode(payload, 0)
    if pos != len(payload):
        raise ValueError("varint: trailing bytes")
    return value


def _iter_tlvs(data: bytes) -> List[Tuple[int, bytes]]:
    items: List[Tuple[int, bytes]] = []
    pos = 0
    n = len(data)
    while pos < n:
        tag, pos = _varint_decode(data, pos)
        ln, pos = _varint_decode(data, pos)
        if pos + ln > n:
            raise ValueError("TLV length out of range")
        items.append((tag, data[pos : pos + ln]))
        pos += ln
    return items


def dumps_entry(e: Entry) -> bytes:
    """Encode entry metadata. Raises UnicodeEncodeError for unencodable strings."""
    out = bytearray()
    out += _tlv(1, e.path.encode("utf-8"))
    out += _tlv(2, _varint_encode(int(e.kind)))
    out += _tlv(3, _varint_encode(e.mode))
    out += _tlv(4, _varint_encode(e.owner_uid))
    out += _tlv(5, _varint_encode(e.owner_gid))
    out += _tlv(6, _varint_encode(e.size))
    if e.kind == EntryKind.SYMLINK and e.link_target is not None:
        out += _tlv(7, e.link_target.encode("utf-8"))
    if e.kind == EntryKind.FILE and e.checksum is not None:
        out += _tlv(8, e.checksum)
    if e.mtime_ns is not None:
        out += _tlv(9, _varint_encode(_zigzag(e.mtime_ns)))
    if e.kind == EntryKind.OTHER:
        out += _tlv(10, _varint_encode(e.file_type))
        if e.rdev:
            out += _tlv(11, _varint_encode(e.rdev))
    return bytes(out)


def loads_entry(data: bytes) -> Entry:
    fields: Dict[int, bytes] = {}
    for tag, payload in _iter_tlvs(data):
        if tag in fields:
            raise ValueError(f"duplicate entry field {tag}")
        fields[tag] = payload
    for required in (1, 2, 3, 4, 5, 6):
        if required not in fields:
            raise ValueError(f"entry field {required} missing")
    try:
        kind = EntryKind(_uint(fields[2]))
    except ValueError:
        raise ValueError("unknown entry kind") from None
    e = Entry(
        path=fields[1].decode("utf-8"),
        kind=kind,
        mode=_uint(fields[3]),
        owner_uid=_uint(fields[4]),
        owner_gid=_uint(fields[5]),
        size=_uint(fields[6]),
    )
    if e.mode > 0o7777:
        raise ValueError("mode has non-permission bits")
    if kind != EntryKind.FILE and e.size:
        raise ValueError("non-regular entry declares content")
    if kind == EntryKind.SYMLINK:
        if 7 not in fields:
            raise ValueError("symlink without target")
        e.link_target = fields[7].decode("utf-8")
    if kind == EntryKind.FILE:
        checksum = fields.get(8)
        if checksum is None or len(checksum) != CHECKSUM_SIZE:
            raise ValueError("regular file without a valid checksum")
        e.checksum = checksum
    if 9 in fields:
        e.mtime_ns = _unzigzag(_uint(fields[9]))
    if kind == EntryKind.OTHER:
        e.file_type = _uint(fields.get(10, b"\x00"))
        if 11 in fields:
            e.rdev = _uint(fields[11])
    return e


def dumps_end(entry_count: int, file_count: int, content_bytes: int) -> bytes:
    return (
        _tlv(1, _varint_encode(entry_count))
        + _tlv(2, _varint_encode(file_count))
        + _tlv(3, _varint_encode(content_bytes))
    )


def loads_end(data: bytes) -> Dict[str, int]:
    names = {1: "entry_count", 2: "file_count", 3: "content_bytes"}
    out: Dict[str, int] = {}
    for tag, payload in _iter_tlvs(data):
        if tag in names:
            out[names[tag]] = _uint(payload)
    for name in names.values():
        if name not in out:
            raise ValueError(f"end record missing {name}")
    return out
