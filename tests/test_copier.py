"""Tests for the rsync copy invoker.

A small shell script stands in for rsync so the streaming, exit code
and progress handling can be checked without the real tool.
"""

from __future__ import annotations

import os
import shutil
import stat
import threading
from pathlib import Path

import pytest

from safemirror.copier import (
    PROGRESS_END,
    PROGRESS_START,
    CopyInvoker,
    ProgressTracker,
    build_rsync_args,
    default_exclusions,
    extract_filename,
    is_file_line,
    parse_progress_percent,
)
from safemirror.errors import CopyError

FAKE_RSYNC = """#!/bin/sh
echo "$@" >> "$FAKE_RSYNC_LOG"
for arg in "$@"; do
    if [ "$arg" = "--dry-run" ]; then
        printf '>f+++++++++ a.txt\\n>f+++++++++ b.txt\\n'
        exit 0
    fi
done
printf 'sending incremental file list\\n'
printf '>f+++++++++ a.txt\\n'
printf '          1,024  50%%    1.00MB/s    0:00:00 (xfr#1, to-chk=1/2)\\n'
printf '>f.st...... b.txt\\n'
printf '          2,048 100%%    1.00MB/s    0:00:00 (xfr#2, to-chk=0/2)\\n'
echo "rsync: something noisy" >&2
exit ${FAKE_RSYNC_EXIT:-0}
"""


@pytest.fixture
def fake_rsync(tmp_path: Path, monkeypatch) -> Path:
    script = tmp_path / "rsync"
    script.write_text(FAKE_RSYNC)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    monkeypatch.setenv("FAKE_RSYNC_LOG", str(tmp_path / "calls.log"))
    return script


class TestArguments:
    """Tests for rsync argument assembly."""

    def test_update_only_never_delete(self, tmp_path: Path):
        args = build_rsync_args(tmp_path / "s", tmp_path / "d", default_exclusions())
        assert args[:4] == ["-av", "--update", "--itemize-changes", "--info=progress2"]
        assert not any(a.startswith("--del") for a in args)
        assert "--remove-source-files" not in args

    def test_trailing_slashes(self, tmp_path: Path):
        args = build_rsync_args(tmp_path / "s", f"{tmp_path}/d/", [])
        assert args[-2] == f"{tmp_path}/s/"
        assert args[-1] == f"{tmp_path}/d/"

    def test_dry_run_first(self, tmp_path: Path):
        assert build_rsync_args("/s", "/d", [], dry_run=True)[0] == "--dry-run"

    def test_exclusions(self):
        args = build_rsync_args("/s", "/d", default_exclusions())
        pairs = {args[i + 1] for i, a in enumerate(args) if a == "--exclude"}
        assert "/SafeMirror_Archive" in pairs
        assert "/.safemirror_backup" in pairs
        assert ".DS_Store" in pairs

    def test_destructive_exclusion_rejected(self):
        with pytest.raises(CopyError):
            build_rsync_args("/s", "/d", ["--delete"])


class TestLineParsing:
    """Tests for itemized and progress line parsing."""

    @pytest.mark.parametrize("line", [">f+++++++++ a.txt", "<f.st...... b.txt", "cf+++++++++ c.txt"])
    def test_file_lines(self, line):
        assert is_file_line(line)

    @pytest.mark.parametrize("line", ["cd+++++++++ dir/", ".d..t...... ./", "sending incremental file list"])
    def test_non_file_lines(self, line):
        assert not is_file_line(line)

    def test_extract_filename_keeps_spaces(self):
        assert extract_filename(">f+++++++++ My Documents/a b.txt") == "My Documents/a b.txt"

    def test_progress_percent(self):
        assert parse_progress_percent("   32,768  42%   31.25MB/s    0:00:00 (xfr#1, to-chk=0/1)") == 0.42

    def test_percent_in_filename_ignored(self):
        assert parse_progress_percent(">f+++++++++ 50% off.txt") is None

    def test_no_percent(self):
        assert parse_progress_percent("sending incremental file list") is None


class TestProgressTracker:
    """Tests for mapping output onto session progress."""

    def test_file_count_fallback(self):
        tracker = ProgressTracker(total_files=4)
        snap = tracker.handle(">f+++++++++ a.txt")
        assert snap.files_processed == 1
        assert snap.current_file == "a.txt"
        assert snap.fraction == pytest.approx(PROGRESS_START + (PROGRESS_END - PROGRESS_START) / 4)

    def test_percent_maps_onto_sub_range(self):
        tracker = ProgressTracker(total_files=10)
        assert tracker.handle("  1,024  50%  1MB/s  0:00:00").fraction == pytest.approx(0.6)
        assert tracker.handle("  1,024 100%  1MB/s  0:00:00").fraction == pytest.approx(PROGRESS_END)

    def test_percent_never_goes_backwards(self):
        tracker = ProgressTracker(total_files=10)
        tracker.handle("  1,024  80%  1MB/s  0:00:00")
        assert tracker.handle("  1,024  20%  1MB/s  0:00:00") is None
        assert tracker.fraction == pytest.approx(0.3 + 0.6 * 0.8)

    def test_file_lines_after_percent_keep_fraction(self):
        tracker = ProgressTracker(total_files=1)
        tracker.handle("  1,024  10%  1MB/s  0:00:00")
        snap = tracker.handle(">f+++++++++ a.txt")
        assert snap.fraction == pytest.approx(0.36)
        assert snap.files_processed == 1

    def test_zero_total(self):
        snap = ProgressTracker(total_files=0).handle(">f+++++++++ a.txt")
        assert snap.fraction == pytest.approx(PROGRESS_END)

    def test_noise_ignored(self):
        assert ProgressTracker(total_files=1).handle("sent 1,234 bytes  received 56 bytes") is None


class TestCopyInvoker:
    """Tests for running the (fake) copy tool."""

    def test_dry_run_then_real_run(self, fake_rsync, tmp_path: Path):
        progress = []
        result = CopyInvoker(rsync_path=str(fake_rsync)).run(
            tmp_path / "s", tmp_path / "d", on_progress=progress.append
        )
        calls = (tmp_path / "calls.log").read_text().splitlines()
        assert len(calls) == 2
        assert calls[0].startswith("--dry-run")
        assert not calls[1].startswith("--dry-run")
        assert result.files_copied == 2
        assert result.dry_run_total == 2
        assert result.exit_status == 0
        assert progress[-1].fraction == pytest.approx(PROGRESS_END)
        assert [p.current_file for p in progress if p.current_file][-1] == "b.txt"

    def test_progress_delivered_on_calling_thread(self, fake_rsync, tmp_path: Path):
        threads = set()
        CopyInvoker(rsync_path=str(fake_rsync)).run(
            tmp_path / "s", tmp_path / "d", on_progress=lambda _p: threads.add(threading.get_ident())
        )
        assert threads == {threading.get_ident()}

    def test_vanished_files_tolerated(self, fake_rsync, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("FAKE_RSYNC_EXIT", "24")
        result = CopyInvoker(rsync_path=str(fake_rsync)).run(tmp_path / "s", tmp_path / "d")
        assert result.exit_status == 24

    def test_failure_raises_with_stderr(self, fake_rsync, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("FAKE_RSYNC_EXIT", "23")
        with pytest.raises(CopyError) as info:
            CopyInvoker(rsync_path=str(fake_rsync)).run(tmp_path / "s", tmp_path / "d")
        assert info.value.exit_status == 23
        assert "exit code 23" in str(info.value)
        assert "something noisy" in str(info.value)

    def test_trace_forwarded_to_session_log(self, fake_rsync, tmp_path: Path):
        class Recorder:
            def __init__(self):
                self.lines = []

            def trace(self, line):
                self.lines.append(line)

        recorder = Recorder()
        CopyInvoker(rsync_path=str(fake_rsync), session_log=recorder).run(tmp_path / "s", tmp_path / "d")
        assert "sending incremental file list" in recorder.lines
        assert "rsync: something noisy" in recorder.lines

    def test_missing_binary(self, tmp_path: Path):
        with pytest.raises(CopyError, match="rsync not found"):
            CopyInvoker(rsync_path=str(tmp_path / "nope")).run(tmp_path / "s", tmp_path / "d")


@pytest.mark.skipif(shutil.which("rsync") is None, reason="rsync not installed")
class TestRealRsync:
    """End-to-end against the real rsync."""

    def test_update_only(self, tmp_path: Path):
        src = tmp_path / "s"
        dst = tmp_path / "d"
        src.mkdir()
        dst.mkdir()
        (src / "new.txt").write_text("new")
        (src / "stale.txt").write_text("fresh")
        (dst / "stale.txt").write_text("old!!")
        os.utime(dst / "stale.txt", (1_000_000_000, 1_000_000_000))
        (src / "keep.txt").write_text("source")
        (dst / "keep.txt").write_text("newer on backup")
        os.utime(src / "keep.txt", (1_000_000_000, 1_000_000_000))
        os.utime(dst / "keep.txt", (1_500_000_000, 1_500_000_000))
        (dst / "extra.txt").write_text("not on source")

        result = CopyInvoker().run(src, dst)

        assert result.files_copied == 2
        assert (dst / "new.txt").read_text() == "new"
        assert (dst / "stale.txt").read_text() == "fresh"
        assert (dst / "keep.txt").read_text() == "newer on backup"
        assert (dst / "extra.txt").exists()

    def test_bookkeeping_on_source_not_copied(self, tmp_path: Path):
        src = tmp_path / "s"
        dst = tmp_path / "d"
        (src / "SafeMirror_Archive").mkdir(parents=True)
        (src / "SafeMirror_Archive" / "x").write_text("x")
        (src / ".DS_Store").write_text("x")
        dst.mkdir()
        CopyInvoker().run(src, dst)
        assert not (dst / "SafeMirror_Archive").exists()
        assert not (dst / ".DS_Store").exists()
