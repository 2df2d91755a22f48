"""Tests for the cross-process session lock."""

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

import pytest

from safemirror.errors import LockError
from safemirror.lock import SessionLock, read_lock_owner


class TestSessionLock:
    """Tests for acquire/release semantics."""

    def test_acquire_writes_pid(self, tmp_path: Path):
        lock = SessionLock(tmp_path / "sync.lock")
        assert lock.acquire()
        try:
            assert lock.held
            assert read_lock_owner(lock.path) == os.getpid()
        finally:
            lock.release()

    def test_second_holder_refused(self, tmp_path: Path):
        first = SessionLock(tmp_path / "sync.lock")
        second = SessionLock(tmp_path / "sync.lock")
        assert first.acquire()
        try:
            assert second.acquire() is False
            assert not second.held
        finally:
            first.release()

    def test_reacquire_after_release(self, tmp_path: Path):
        first = SessionLock(tmp_path / "sync.lock")
        second = SessionLock(tmp_path / "sync.lock")
        assert first.acquire()
        first.release()
        assert second.acquire()
        second.release()

    def test_release_removes_file(self, tmp_path: Path):
        lock = SessionLock(tmp_path / "sync.lock")
        lock.acquire()
        lock.release()
        assert not lock.path.exists()
        assert not lock.held

    def test_release_when_not_held(self, tmp_path: Path):
        SessionLock(tmp_path / "sync.lock").release()

    def test_stale_file_is_reused(self, tmp_path: Path):
        """A file left by a crashed run holds no flock and is simply taken."""
        path = tmp_path / "sync.lock"
        path.write_text("424242\n")
        lock = SessionLock(path)
        assert lock.acquire()
        assert read_lock_owner(path) == os.getpid()
        lock.release()

    def test_context_manager(self, tmp_path: Path):
        path = tmp_path / "sync.lock"
        with SessionLock(path) as lock:
            assert lock.held
            with pytest.raises(LockError):
                with SessionLock(path):
                    pass
        assert not path.exists()

    def test_held_by_other_process(self, tmp_path: Path):
        path = tmp_path / "sync.lock"
        holder = subprocess.Popen(
            [
                sys.executable, "-c",
                "import fcntl, sys, time\n"
                f"f = open({str(path)!r}, 'a+')\n"
                "fcntl.flock(f, fcntl.LOCK_EX)\n"
                "print('locked', flush=True)\n"
                "time.sleep(30)\n",
            ],
            stdout=subprocess.PIPE,
            text=True,
        )
        try:
            assert holder.stdout.readline().strip() == "locked"
            assert SessionLock(path).acquire() is False
        finally:
            holder.kill()
            holder.wait()
        lock = SessionLock(path)
        assert lock.acquire()
        lock.release()

    def test_read_owner_missing(self, tmp_path: Path):
        assert read_lock_owner(tmp_path / "nope") is None
