import uuid


# Magic and version
SUPERBLOCK_MAGIC = b"STAGE3\x00\x00"  # 8 bytes: "STAGE3\0\0"

VERSION_MAJOR = 1
VERSION_MINOR = 0

# Superblock flags
FLAG_DETERMINISTIC = 1 << 0


# Record constants
REC_SYNC = bytes([0xD3, 0x53, 0x33, 0x52])  # 0xD3 'S' '3' 'R'

RTYPE_ENTRY = 0
RTYPE_END = 1

# Upper bound on a single record's metadata block
MAX_META_LEN = 1024 * 1024


# Codec IDs (0=none, 1=deflate/zlib, 2=zstd, 3=xz)
CODEC_NONE = 0
CODEC_DEFLATE = 1
CODEC_ZSTD = 2
CODEC_XZ = 3

CODEC_NAMES = {
    CODEC_NONE: "none",
    CODEC_DEFLATE: "deflate",
    CODEC_ZSTD: "zstd",
    CODEC_XZ: "xz",
}


DEFAULT_CHUNK_SIZE = 1_048_576  # 1 MiB
DEFAULT_CODEC_ID = CODEC_XZ
DEFAULT_PREFETCH_MAX_BYTES = 4 * 1_048_576

CHECKSUM_SIZE = 32

ROOT_PATH = "."


def new_uuid_bytes() -> bytes:
    return uuid.uuid4().bytes
