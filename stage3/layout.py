from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Tuple

from .errors import InputError, IoError


# Directory tree of an installed (disk-based) system. bin, sbin, lib and
# lib64 are not listed: they become merged-/usr symlinks.
FHS_DIRECTORIES: Tuple[str, ...] = (
    "usr/bin",
    "usr/sbin",
    "usr/lib",
    "usr/lib64",
    "usr/share",
    "usr/share/man",
    "usr/share/doc",
    "usr/share/licenses",
    "usr/share/zoneinfo",
    "usr/local/bin",
    "usr/local/sbin",
    "usr/local/lib",
    "etc",
    "etc/systemd/system",
    "etc/pam.d",
    "etc/security",
    "etc/profile.d",
    "etc/skel",
    "proc",
    "sys",
    "dev",
    "dev/pts",
    "dev/shm",
    "run",
    "run/lock",
    "tmp",
    "var",
    "var/log",
    "var/log/journal",
    "var/tmp",
    "var/cache",
    "var/lib",
    "var/spool",
    "mnt",
    "media",
    "boot",
    "root",
    "home",
    "opt",
    "srv",
    "usr/lib/systemd/system",
    "usr/lib/systemd/system-generators",
    "usr/lib64/systemd",
    "usr/lib/modules",
    "usr/lib64/security",
    "usr/share/dbus-1/system.d",
    "usr/share/dbus-1/system-services",
    "usr/lib/locale",
)

DIRECTORY_MODES: Dict[str, int] = {
    "tmp": 0o1777,
    "var/tmp": 0o1777,
    "dev/shm": 0o1777,
    "root": 0o700,
}

# (link path, target); targets are stored verbatim
MERGED_USR_LINKS: Tuple[Tuple[str, str], ...] = (
    ("bin", "usr/bin"),
    ("sbin", "usr/sbin"),
    ("lib", "usr/lib"),
    ("lib64", "usr/lib64"),
    ("var/run", "/run"),
    ("var/lock", "/run/lock"),
    ("usr/bin/sh", "bash"),
)


@dataclass
class SkeletonSummary:
    staging: str
    dirs_created: int = 0
    links_created: int = 0


def _fs(staging: str, rel: str) -> str:
    return os.path.join(staging, *rel.split("/"))


def _place_link(link: str, target: str) -> bool:
    if os.path.islink(link):
        return False
    if os.path.isdir(link):
        # An empty placeholder directory gives way to the merged-usr link
        if os.listdir(link):
            raise InputError(f"cannot replace non-empty directory with a symlink: {link}", path=link)
        os.rmdir(link)
    elif os.path.lexists(link):
        return False
    os.symlink(target, link)
    return True


def create_skeleton(staging: str) -> SkeletonSummary:
    """Create the FHS layout and merged-/usr symlinks of an installed system under ``staging``."""
    staging = os.fspath(staging)
    if not os.path.isdir(staging):
        raise InputError(f"staging directory not found: {staging}", path=staging)
    summary = SkeletonSummary(staging=staging)
    for rel in FHS_DIRECTORIES:
        path = _fs(staging, rel)
        try:
            if not os.path.isdir(path):
                os.makedirs(path)
                summary.dirs_created += 1
            mode = DIRECTORY_MODES.get(rel)
            if mode is not None:
                os.chmod(path, mode)
        except OSError as exc:
            raise IoError(f"failed to create directory {rel}: {exc.strerror or exc}", path=path) from exc
    for rel, target in MERGED_USR_LINKS:
        path = _fs(staging, rel)
        try:
            if _place_link(path, target):
                summary.links_created += 1
        except OSError as exc:
            raise IoError(f"failed to create symlink {rel}: {exc.strerror or exc}", path=path) from exc
    return summary
