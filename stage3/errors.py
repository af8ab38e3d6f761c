from __future__ import annotations

from typing import Optional


class Stage3Error(Exception):
    """Base class for stage3-specific errors."""

    exit_code = 2

    def __init__(self, message: str, *, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


# Caller misuse: missing/invalid source root, archive path, or entry sequence
class InputError(Stage3Error):
    exit_code = 2


# Read/write failures against the filesystem
class IoError(Stage3Error):
    exit_code = 4


# Metadata that cannot be represented in the archive
class EncodingError(Stage3Error):
    exit_code = 5


# Malformed, truncated or otherwise unreadable archive
class FormatError(Stage3Error):
    exit_code = 3


class VerificationFailed(Stage3Error):
    """Well-formed archive whose content or structure does not check out."""

    exit_code = 1

    def __init__(self, message: str, *, paths=(), report=None):
        super().__init__(message, path=paths[0] if paths else None)
        self.paths = list(paths)
        self.report = report


def map_os_error(exc: OSError, path: str, *, what: str) -> Stage3Error:
    """Translate an ``OSError`` raised on a caller-supplied path."""
    if isinstance(exc, (FileNotFoundError, NotADirectoryError)):
        return InputError(f"{what} not found: {path}", path=path)
    return IoError(f"{what}: {path}: {exc.strerror or exc}", path=path)
