"""
Session lock: at most one sync runs system-wide.

An exclusive, non-blocking ``flock`` on a well-known file. The kernel
drops the lock when the holder dies, so a crashed run never wedges
future ones; the leftover file is simply re-locked.
"""

from __future__ import annotations

import fcntl
import logging
import os
import tempfile
from pathlib import Path
from typing import IO, Optional

from .errors import LockError

logger = logging.getLogger("safemirror.lock")

LOCK_FILENAME = "safemirror.lock"


def default_lock_path() -> Path:
    return Path(tempfile.gettempdir()) / LOCK_FILENAME


class SessionLock:
    """Cross-process mutex for sync sessions.

    Args:
        path: Lock file location. Defaults to the system temp directory.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else default_lock_path()
        self._handle: Optional[IO[str]] = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> bool:
        """Try to take the lock without waiting.

        Returns:
            False if another session (in any process) holds it.
        """
        if self._handle is not None:
            return False
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(self.path, "a+", encoding="utf-8")
        except OSError as exc:
            logger.error("Cannot open lock file %s: %s", self.path, exc)
            return False

        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            handle.close()
            logger.info("Lock %s is held by PID %s", self.path, read_lock_owner(self.path) or "unknown")
            return False

        # The previous holder may have unlinked the file between our open and flock
        if not _same_file(handle, self.path):
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            handle.close()
            logger.info("Lock %s was replaced while acquiring", self.path)
            return False

        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        logger.debug("Acquired lock %s", self.path)
        return True

    def release(self) -> None:
        """Drop the lock and remove the file. Safe to call when not held."""
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove lock file %s: %s", self.path, exc)
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()
        logger.debug("Released lock %s", self.path)

    def __enter__(self) -> "SessionLock":
        if not self.acquire():
            raise LockError()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


def _same_file(handle: IO[str], path: Path) -> bool:
    try:
        return os.fstat(handle.fileno()).st_ino == os.stat(path).st_ino
    except OSError:
        return False


def read_lock_owner(path: Optional[Path] = None) -> Optional[int]:
    """PID recorded in the lock file, for diagnostics only."""
    path = Path(path) if path else default_lock_path()
    try:
        return int(path.read_text(encoding="utf-8").strip().splitlines()[0])
    except (OSError, ValueError, IndexError):
        return None
