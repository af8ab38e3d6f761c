from __future__ import annotations

import errno
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from stage3.builder import BuildOptions, ErrorPolicy, build
from stage3.constants import CODEC_NONE, CODEC_XZ, CODEC_ZSTD, ROOT_PATH
from stage3.entry import Entry, EntryKind
from stage3.errors import EncodingError, InputError, IoError
from stage3.reader import ArchiveReader, list_archive
from stage3.verify import verify_archive
from stage3.walker import EntryError, walk_tree


def _make_tree(root: Path) -> None:
    (root / "etc").mkdir()
    (root / "etc" / "hostname").write_text("levitate\n")
    (root / "etc" / "os-release").write_text('NAME="LevitateOS"\n')
    (root / "usr" / "bin").mkdir(parents=True)
    tool = root / "usr" / "bin" / "tool"
    tool.write_bytes(b"\x7fELF" + os.urandom(70000))
    os.chmod(tool, 0o755)
    (root / "usr" / "lib").mkdir()
    (root / "var" / "empty").mkdir(parents=True)
    os.symlink("usr/bin", root / "bin")
    os.symlink("../../etc/passwd", root / "usr" / "lib" / "escape")
    os.symlink("does-not-exist", root / "etc" / "dangling")
    (root / "B").write_bytes(b"upper")
    (root / "a").write_bytes(b"lower")


def _walk_entries(root: Path):
    return [item for item in walk_tree(root) if isinstance(item, Entry)]


class WalkerTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def test_preorder_sorted_by_bytes(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            _make_tree(src)
            paths = [e.path for e in _walk_entries(src)]
            self.assertEqual(ROOT_PATH, paths[0])
            self.assertEqual(
                [".", "B", "a", "bin", "etc", "etc/dangling", "etc/hostname", "etc/os-release",
                 "usr", "usr/bin", "usr/bin/tool", "usr/lib", "usr/lib/escape", "var", "var/empty"],
                paths,
            )

        self.run_with_tmpdir(scenario)

    def test_symlinks_recorded_not_followed(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            _make_tree(src)
            by_path = {e.path: e for e in _walk_entries(src)}
            self.assertEqual(EntryKind.SYMLINK, by_path["bin"].kind)
            self.assertEqual("usr/bin", by_path["bin"].link_target)
            self.assertEqual("../../etc/passwd", by_path["usr/lib/escape"].link_target)
            self.assertEqual("does-not-exist", by_path["etc/dangling"].link_target)
            self.assertFalse(any(p.startswith("bin/") for p in by_path))
            self.assertFalse(any(".." in p.split("/") for p in by_path))

        self.run_with_tmpdir(scenario)

    def test_missing_or_non_directory_root(self):
        def scenario(tmp_path: Path):
            with self.assertRaises(InputError):
                walk_tree(tmp_path / "missing")
            f = tmp_path / "file"
            f.write_bytes(b"")
            with self.assertRaises(InputError):
                walk_tree(f)

        self.run_with_tmpdir(scenario)

    @unittest.skipIf(os.geteuid() == 0, "root can read mode 000 files")
    def test_unreadable_file_yields_entry_error(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            secret = src / "secret"
            secret.write_bytes(b"x")
            os.chmod(secret, 0)
            try:
                items = list(walk_tree(src))
            finally:
                os.chmod(secret, 0o600)
            errors = [i for i in items if isinstance(i, EntryError)]
            self.assertEqual(["secret"], [e.path for e in errors])
            self.assertIsInstance(errors[0].cause, PermissionError)

        self.run_with_tmpdir(scenario)

    @unittest.skipUnless(hasattr(os, "mkfifo"), "needs mkfifo")
    def test_fifo_is_other(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            os.mkfifo(src / "pipe")
            entries = _walk_entries(src)
            self.assertEqual(EntryKind.OTHER, entries[1].kind)
            self.assertEqual(0, entries[1].size)

        self.run_with_tmpdir(scenario)


class BuildTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def test_round_trip_matches_fresh_walk(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            _make_tree(src)
            out = tmp_path / "rootfs.s3"
            summary = build(src, out)
            listed = list_archive(str(out))
            fresh = _walk_entries(src)
            self.assertEqual(len(fresh), len(listed))
            for a, b in zip(fresh, listed):
                self.assertTrue(a.same_metadata(b), (a, b))
            self.assertEqual(len(listed), summary.entry_count)
            self.assertEqual(5, summary.file_count)
            self.assertEqual(3, summary.symlink_count)
            self.assertEqual(out.stat().st_size, summary.archive_bytes)
            self.assertTrue(verify_archive(str(out)).ok)

        self.run_with_tmpdir(scenario)

    def test_modes_preserved(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            f = src / "run.sh"
            f.write_text("#!/bin/sh\n")
            os.chmod(f, 0o755)
            out = tmp_path / "a.s3"
            build(src, out)
            entry = list_archive(str(out))[1]
            self.assertEqual("run.sh", entry.path)
            self.assertEqual(0o755, entry.mode)

        self.run_with_tmpdir(scenario)

    def test_empty_tree(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            out = tmp_path / "a.s3"
            summary = build(src, out)
            entries = list_archive(str(out))
            self.assertEqual(1, len(entries))
            self.assertEqual(ROOT_PATH, entries[0].path)
            self.assertEqual(EntryKind.DIR, entries[0].kind)
            self.assertEqual(0, summary.content_bytes)
            self.assertTrue(verify_archive(str(out)).ok)

        self.run_with_tmpdir(scenario)

    def test_deterministic_builds_are_byte_identical(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            _make_tree(src)
            for codec_id in (CODEC_XZ, CODEC_ZSTD):
                opts = BuildOptions(codec_id=codec_id, deterministic=True)
                a, b = tmp_path / f"a{codec_id}.s3", tmp_path / f"b{codec_id}.s3"
                build(src, a, opts)
                build(src, b, opts)
                self.assertEqual(a.read_bytes(), b.read_bytes())
                self.assertEqual(list_archive(str(a)), list_archive(str(b)))

        self.run_with_tmpdir(scenario)

    def test_read_workers_do_not_change_output(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            _make_tree(src)
            for i in range(30):
                (src / "var" / "empty" / f"f{i:02d}").write_bytes(os.urandom(i * 100))
            serial, parallel = tmp_path / "s.s3", tmp_path / "p.s3"
            build(src, serial, BuildOptions(deterministic=True))
            build(src, parallel, BuildOptions(deterministic=True, read_workers=4, prefetch_max_bytes=2000))
            self.assertEqual(serial.read_bytes(), parallel.read_bytes())

        self.run_with_tmpdir(scenario)

    def test_output_inside_source_is_excluded(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            (src / "data").write_bytes(b"payload")
            out = src / "self.s3"
            build(src, out, BuildOptions(codec_id=CODEC_NONE))
            paths = [e.path for e in list_archive(str(out))]
            self.assertEqual([ROOT_PATH, "data"], paths)

        self.run_with_tmpdir(scenario)

    def test_non_utf8_name_rejected(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            try:
                (src / os.fsdecode(b"bad\xff")).write_bytes(b"")
            except OSError:
                self.skipTest("filesystem refuses non-UTF-8 names")
            with self.assertRaises(EncodingError):
                build(src, tmp_path / "a.s3")

        self.run_with_tmpdir(scenario)

    def test_bad_source_root(self):
        def scenario(tmp_path: Path):
            with self.assertRaises(InputError):
                build(tmp_path / "missing", tmp_path / "a.s3")
            self.assertFalse((tmp_path / "a.s3").exists())

        self.run_with_tmpdir(scenario)

    @unittest.skipIf(os.geteuid() == 0, "root can read mode 000 files")
    def test_entry_error_policies(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            (src / "ok").write_bytes(b"fine")
            secret = src / "secret"
            secret.write_bytes(b"x")
            os.chmod(secret, 0)
            try:
                with self.assertRaises(IoError) as cm:
                    build(src, tmp_path / "abort.s3")
                self.assertEqual("secret", cm.exception.path)

                out = tmp_path / "skip.s3"
                summary = build(src, out, BuildOptions(on_entry_error=ErrorPolicy.SKIP_AND_RECORD))
            finally:
                os.chmod(secret, 0o600)
            self.assertEqual(["secret"], [s.path for s in summary.skipped])
            self.assertEqual([ROOT_PATH, "ok"], [e.path for e in list_archive(str(out))])
            with ArchiveReader(str(out)) as r:
                list(r.entries())
                self.assertEqual(2, r.end_record["entry_count"])

        self.run_with_tmpdir(scenario)

    def test_entry_error_policies_for_vanished_entry(self):
        vanished = EntryError("var/vanished", FileNotFoundError(errno.ENOENT, "No such file or directory"))

        def walk_with_vanished_entry(root, *, exclude=None):
            items = walk_tree(root, exclude=exclude)

            def gen():
                for item in items:
                    yield item
                    if isinstance(item, Entry) and item.path == "var":
                        yield vanished

            return gen()

        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            src.mkdir()
            (src / "var").mkdir()
            (src / "var" / "log").write_bytes(b"boot ok\n")
            with mock.patch("stage3.builder.walk_tree", walk_with_vanished_entry):
                with self.assertRaises(IoError) as cm:
                    build(src, tmp_path / "abort.s3")
                self.assertEqual("var/vanished", cm.exception.path)
                self.assertIsInstance(cm.exception.__cause__, FileNotFoundError)

                out = tmp_path / "skip.s3"
                summary = build(src, out, BuildOptions(on_entry_error=ErrorPolicy.SKIP_AND_RECORD))
            self.assertEqual([vanished], summary.skipped)
            self.assertEqual("var/vanished: No such file or directory", summary.skipped[0].describe())
            self.assertEqual([ROOT_PATH, "var", "var/log"], [e.path for e in list_archive(str(out))])
            self.assertEqual(3, summary.entry_count)
            self.assertTrue(verify_archive(str(out)).ok)

        self.run_with_tmpdir(scenario)


if __name__ == "__main__":
    unittest.main()
