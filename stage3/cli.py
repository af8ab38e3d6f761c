from __future__ import annotations

import argparse
import datetime
import json as _json
import sys
from typing import List, Optional

from stage3.builder import BuildOptions, ErrorPolicy, build
from stage3.codec import codec_id_from_name
from stage3.constants import CODEC_NAMES, DEFAULT_CODEC_ID
from stage3.entry import Entry, EntryKind
from stage3.errors import Stage3Error, VerificationFailed
from stage3.extract import extract_archive
from stage3.layout import create_skeleton
from stage3.reader import ArchiveReader
from stage3.verify import verify_archive


def _entry_dict(e: Entry) -> dict:
    d = {
        "path": e.path,
        "kind": e.kind.name.lower(),
        "mode": f"{e.mode:04o}",
        "uid": e.owner_uid,
        "gid": e.owner_gid,
        "size": e.size,
    }
    if e.kind == EntryKind.SYMLINK:
        d["link_target"] = e.link_target
    if e.checksum is not None:
        d["checksum"] = e.checksum.hex()
    return d


def _mib(n: int) -> float:
    return n / (1024.0 * 1024.0)


def cmd_build(
    source: str,
    output: str,
    *,
    codec: str = CODEC_NAMES[DEFAULT_CODEC_ID],
    level: Optional[int] = None,
    skip_errors: bool = False,
    deterministic: bool = False,
    jobs: int = 0,
    quiet: bool = False,
) -> bool:
    """Build a stage3 archive from a source tree.

    Args:
        source: Root directory to snapshot.
        output: Path of the archive to write.
        codec: Compression codec name ("none", "deflate", "zstd", "xz").
        level: Codec level; codec default when None.
        skip_errors: Record unreadable entries and continue instead of aborting.
        deterministic: Zero the header timestamp/uuid so identical trees give identical archives.
        jobs: Worker threads prefetching small files (0 = read inline).
        quiet: Limit output to the summary.
    """
    opts = BuildOptions(
        on_entry_error=ErrorPolicy.SKIP_AND_RECORD if skip_errors else ErrorPolicy.ABORT,
        codec_id=codec_id_from_name(codec),
        level=level,
        deterministic=deterministic,
        read_workers=jobs,
    )

    def _progress(e: Entry):
        if not quiet:
            print(f"   adding: {e.path}")

    summary = build(source, output, opts, progress=_progress)
    for err in summary.skipped:
        print(f"Warning: skipped {err.describe()}", file=sys.stderr)
    print(
        f"Done: {summary.file_count} files, {summary.dir_count} dirs, {summary.symlink_count} links, "
        f"{summary.other_count} other; {_mib(summary.content_bytes):.2f} MiB content -> "
        f"{_mib(summary.archive_bytes):.2f} MiB archive ({codec}) in {summary.elapsed:.1f}s"
        + (f"; skipped={len(summary.skipped)}" if summary.skipped else "")
    )
    return True


def cmd_list(archive: str, *, as_json: bool = False) -> bool:
    """List archive entries.

    Args:
        archive: Path to a stage3 archive.
        as_json: Print one JSON array instead of ``ls -l`` style lines.
    """
    with ArchiveReader(archive) as r:
        if as_json:
            print(_json.dumps([_entry_dict(e) for e in r.entries()], indent=2))
        else:
            for e in r.entries():
                print(e.summary())
    return True


def cmd_verify(archive: str, *, as_json: bool = False) -> bool:
    """Verify checksums and path invariants.

    Prints:
        "OK" on success, "FAIL" plus the offending paths per check otherwise.
    """
    report = verify_archive(archive)
    if as_json:
        print(_json.dumps(report.to_dict(), indent=2))
        return report.ok
    for check in report.checks.values():
        for p in check.failures:
            print(f"  {check.name}: {p}")
    print(
        ("OK" if report.ok else "FAIL")
        + f" ({report.entry_count} entries, {report.file_count} files, {_mib(report.content_bytes):.2f} MiB)"
    )
    return report.ok


def cmd_extract(archive: str, *, outdir: str, same_owner: Optional[bool] = None, quiet: bool = False) -> bool:
    """Extract an archive into ``outdir``."""

    def _progress(e: Entry):
        if not quiet:
            print(f" extracting: {e.path}")

    summary = extract_archive(archive, outdir, same_owner=same_owner, progress=_progress)
    for path, reason in summary.skipped:
        print(f"Warning: skipped {path}: {reason}", file=sys.stderr)
    print(
        f"Done: extracted {summary.file_count} files ({_mib(summary.content_bytes):.2f} MiB); "
        f"dirs={summary.dir_count} symlinks={summary.symlink_count} other={summary.other_count} "
        f"skipped={len(summary.skipped)}"
    )
    return True


def cmd_info(archive: str) -> bool:
    """Show archive header information and entry counts."""
    with ArchiveReader(archive) as r:
        sb = r.superblock
        counts = {k: 0 for k in EntryKind}
        for e in r.entries():
            counts[e.kind] += 1
        end = r.end_record or {}
    print(f"Archive: {archive}")
    print(f"  Version: {sb.version_major}.{sb.version_minor}")
    print(f"  Codec: {CODEC_NAMES.get(sb.codec_id, sb.codec_id)} (level {sb.level})")
    print(f"  Deterministic: {'yes' if sb.deterministic else 'no'}")
    if sb.created_sec:
        created = datetime.datetime.fromtimestamp(sb.created_sec, tz=datetime.timezone.utc)
        print(f"  Created: {created.isoformat()}")
        print(f"  UUID: {sb.uuid.hex()}")
    print(f"  Entries: {end.get('entry_count', sum(counts.values()))}")
    print(f"    Files: {counts[EntryKind.FILE]}")
    print(f"    Directories: {counts[EntryKind.DIR]}")
    print(f"    Symlinks: {counts[EntryKind.SYMLINK]}")
    print(f"    Other: {counts[EntryKind.OTHER]}")
    print(f"  Content: {end.get('content_bytes', 0)} bytes")
    return True


def cmd_skeleton(staging: str) -> bool:
    """Create the installed-system directory layout and merged-/usr links."""
    summary = create_skeleton(staging)
    print(f"Done: {summary.dirs_created} directories, {summary.links_created} symlinks under {summary.staging}")
    return True


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="stage3",
        description="Build, list, verify and extract stage3 base-system archives",
    )
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_build = sub.add_parser("build", help="Snapshot a directory tree into an archive")
    ap_build.add_argument("source", help="Source root directory")
    ap_build.add_argument("output", help="Output archive path")
    ap_build.add_argument("--codec", choices=sorted(CODEC_NAMES.values()), default=CODEC_NAMES[DEFAULT_CODEC_ID])
    ap_build.add_argument("--level", type=int, help="Compression level (codec default if omitted)")
    ap_build.add_argument(
        "--skip-errors",
        action="store_true",
        help="Skip entries that cannot be read and report them, instead of aborting",
    )
    ap_build.add_argument("--deterministic", action="store_true", help="Byte-identical output for identical trees")
    ap_build.add_argument("--jobs", "-j", type=int, default=0, help="Threads prefetching small files (default 0)")
    ap_build.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_list = sub.add_parser("list", help="List archive contents")
    ap_list.add_argument("archive", help="Archive path")
    ap_list.add_argument("--json", action="store_true", help="Emit JSON")

    ap_verify = sub.add_parser("verify", help="Verify archive integrity")
    ap_verify.add_argument("archive", help="Archive path")
    ap_verify.add_argument("--json", action="store_true", help="Emit a JSON report")

    ap_extract = sub.add_parser("extract", help="Extract an archive")
    ap_extract.add_argument("archive", help="Archive path")
    ap_extract.add_argument("--outdir", required=True, help="Destination directory")
    owner = ap_extract.add_mutually_exclusive_group()
    owner.add_argument("--same-owner", dest="same_owner", action="store_true", default=None, help="Restore numeric ownership")
    owner.add_argument("--no-same-owner", dest="same_owner", action="store_false", help="Leave files owned by the caller")
    ap_extract.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")
    ap_extract.set_defaults(same_owner=None)

    ap_info = sub.add_parser("info", help="Show archive information")
    ap_info.add_argument("archive", help="Archive path")

    ap_skel = sub.add_parser("skeleton", help="Create the FHS layout of an installed system in a staging directory")
    ap_skel.add_argument("staging", help="Staging directory")

    args = ap.parse_args(argv)
    try:
        if args.cmd == "build":
            cmd_build(
                args.source,
                args.output,
                codec=args.codec,
                level=args.level,
                skip_errors=args.skip_errors,
                deterministic=args.deterministic,
                jobs=args.jobs,
                quiet=args.quiet,
            )
        elif args.cmd == "list":
            cmd_list(args.archive, as_json=args.json)
        elif args.cmd == "verify":
            if not cmd_verify(args.archive, as_json=args.json):
                sys.exit(VerificationFailed.exit_code)
        elif args.cmd == "extract":
            cmd_extract(args.archive, outdir=args.outdir, same_owner=args.same_owner, quiet=args.quiet)
        elif args.cmd == "info":
            cmd_info(args.archive)
        elif args.cmd == "skeleton":
            cmd_skeleton(args.staging)
        else:
            raise RuntimeError("Unknown command")
    except VerificationFailed as e:
        print(f"Error: {e}", file=sys.stderr)
        for p in e.paths:
            print(f"  {p}", file=sys.stderr)
        sys.exit(e.exit_code)
    except Stage3Error as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(e.exit_code)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
