from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

from .entry import EntryKind
from .errors import VerificationFailed
from .hashutil import content_hasher
from .pathutil import PathTracker, path_problem
from .reader import ArchiveReader


CHECK_CHECKSUMS = "checksums"
CHECK_UNIQUE = "unique_paths"
CHECK_ANCESTORS = "ancestors"
CHECK_PATH_SAFETY = "path_safety"

ALL_CHECKS = (CHECK_CHECKSUMS, CHECK_UNIQUE, CHECK_ANCESTORS, CHECK_PATH_SAFETY)


@dataclass
class CheckResult:
    name: str
    failures: List[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.failures


@dataclass
class VerifyReport:
    archive: str
    entry_count: int = 0
    file_count: int = 0
    content_bytes: int = 0
    checks: Dict[str, CheckResult] = field(default_factory=lambda: {name: CheckResult(name) for name in ALL_CHECKS})

    @property
    def ok(self) -> bool:
        return all(c.passed for c in self.checks.values())

    @property
    def failed_paths(self) -> List[str]:
        seen: List[str] = []
        for c in self.checks.values():
            for p in c.failures:
                if p not in seen:
                    seen.append(p)
        return seen

    def raise_for_failures(self) -> None:
        if self.ok:
            return
        failing = [c.name for c in self.checks.values() if not c.passed]
        raise VerificationFailed(
            f"{self.archive}: {len(self.failed_paths)} path(s) failed verification ({', '.join(failing)})",
            paths=self.failed_paths,
            report=self,
        )

    def to_dict(self) -> Dict:
        return {
            "archive": self.archive,
            "ok": self.ok,
            "entries": self.entry_count,
            "files": self.file_count,
            "content_bytes": self.content_bytes,
            "checks": {name: {"passed": c.passed, "failures": c.failures} for name, c in self.checks.items()},
        }


def verify_archive(path: str) -> VerifyReport:
    """Stream the archive once and check content checksums and path invariants.

    Checksum mismatches and path violations are collected into the report.
    A structurally unreadable archive raises FormatError immediately.
    """
    report = VerifyReport(archive=str(path))
    checks = report.checks
    tracker = PathTracker()
    with ArchiveReader(path, check_paths=False) as r:
        for e, chunks in r.entries_with_content():
            report.entry_count += 1
            if path_problem(e.path):
                checks[CHECK_PATH_SAFETY].failures.append(e.path)
            violation = tracker.add(e.path, e.kind)
            if violation == PathTracker.DUPLICATE:
                checks[CHECK_UNIQUE].failures.append(e.path)
            elif violation == PathTracker.ORPHAN:
                checks[CHECK_ANCESTORS].failures.append(e.path)
            if e.kind != EntryKind.FILE:
                continue
            hasher = content_hasher()
            for buf in chunks:
                hasher.update(buf)
            report.file_count += 1
            report.content_bytes += e.size
            if hasher.digest() != e.checksum:
                checks[CHECK_CHECKSUMS].failures.append(e.path)
    return report
