from __future__ import annotations

import hashlib

from .constants import CHECKSUM_SIZE


def content_hasher():
    """BLAKE2s-256 hasher for file content."""
    return hashlib.blake2s(digest_size=CHECKSUM_SIZE)
