"""
stage3: base-system snapshot archives

Builds a compressed, permission-faithful snapshot of an OS root filesystem tree
(a "stage3") that an installer later extracts onto a fresh target:

- Pre-order tree walk capturing type, mode, numeric ownership and raw symlink targets
- CRC-framed record stream with per-file BLAKE2s checksums, one end record
- Whole-stream compression: none, deflate (zlib), xz (lzma) or zstd (zstandard)
- Metadata-only listing, read-only verification, checksummed extraction
- FHS skeleton with merged-/usr symlinks for staging an installed system

Programmatic API: stage3.build, stage3.list_archive, stage3.verify_archive,
stage3.extract_archive; the CLI lives in stage3.cli.
"""

__version__ = "0.1"

from .builder import BuildOptions, BuildSummary, ErrorPolicy, build
from .entry import Entry, EntryKind
from .errors import EncodingError, FormatError, InputError, IoError, Stage3Error, VerificationFailed
from .extract import extract_archive
from .reader import ArchiveReader, list_archive
from .verify import VerifyReport, verify_archive
from .walker import EntryError, walk_tree
from .writer import ArchiveWriter

__all__ = [
    "ArchiveReader",
    "ArchiveWriter",
    "BuildOptions",
    "BuildSummary",
    "EncodingError",
    "Entry",
    "EntryError",
    "EntryKind",
    "ErrorPolicy",
    "FormatError",
    "InputError",
    "IoError",
    "Stage3Error",
    "VerificationFailed",
    "VerifyReport",
    "build",
    "extract_archive",
    "list_archive",
    "verify_archive",
    "walk_tree",
]
