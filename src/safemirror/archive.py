"""
Archive engine: nothing on the backup is ever deleted.

A file on the backup with no counterpart on the source (deleted or
moved away from the source) is an orphan. Before the copy step runs,
every orphan is moved into a dated folder under the archive root:

    <backup>/SafeMirror Backup/
    ├── SafeMirror_Archive/
    │   ├── 2026-10-18/
    │   │   ├── old.txt
    │   │   └── photos/trip/img_001.jpg
    │   └── sync_log.txt
    └── ...mirrored source tree...

Only leaves (regular files and symlinks) are moved; directories may
be left behind as empty husks. Hidden files are included because the
copy step mirrors them. If any single orphan cannot be archived the
whole session aborts, after every failure has been collected.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import shutil
import stat
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel, Field

from .errors import ArchiveError
from .models import BOOKKEEPING_EXCLUDES, LogLevel

logger = logging.getLogger("safemirror.archive")

DAY_FORMAT = "%Y-%m-%d"
COLLISION_FORMAT = "%H%M%S"


class ArchiveResult(BaseModel):
    """Outcome of a successful archive pass."""

    moved_count: int = 0
    archived: list[str] = Field(default_factory=list)
    archive_day: Optional[Path] = None


def _kind(path: str) -> Optional[str]:
    """'file', 'link', 'dir', 'other', or None when nothing is there."""
    try:
        mode = os.lstat(path).st_mode
    except (FileNotFoundError, NotADirectoryError):
        return None
    if stat.S_ISLNK(mode):
        return "link"
    if stat.S_ISDIR(mode):
        return "dir"
    if stat.S_ISREG(mode):
        return "file"
    return "other"


def collision_name(name: str, when: datetime) -> str:
    """Insert a time-of-day suffix before the extension: a.txt -> a_142501.txt."""
    base, ext = os.path.splitext(name)
    return f"{base}_{when.strftime(COLLISION_FORMAT)}{ext}"


class ArchiveEngine:
    """Finds orphans on the backup and moves them into the archive.

    Args:
        excludes: fnmatch patterns skipped at the top level of the walk,
            whole subtree included.
        clock: Wall-clock source, for the day folder and collision suffix.
        session_log: Optional SessionLogger that receives progress lines.
    """

    def __init__(
        self,
        excludes: tuple[str, ...] = BOOKKEEPING_EXCLUDES,
        clock: Callable[[], datetime] = datetime.now,
        session_log=None,
    ):
        self.excludes = excludes
        self.clock = clock
        self.session_log = session_log

    def _log(self, level: LogLevel, message: str) -> None:
        if self.session_log is not None:
            self.session_log.log(level, message)
        elif level == LogLevel.WARNING:
            logger.warning(message)
        elif level == LogLevel.ERROR:
            logger.error(message)
        else:
            logger.info(message)

    def _excluded(self, name: str) -> bool:
        return any(fnmatch.fnmatchcase(name, pattern) for pattern in self.excludes)

    def find_orphans(self, backup_root: Path, source_root: Path) -> list[str]:
        """Relative paths of leaves on the backup that the source lacks.

        A leaf whose source counterpart is of a different kind (file vs
        symlink vs directory) is an orphan too: the copy step would
        otherwise replace it.

        Raises:
            ArchiveError: If part of the backup tree cannot be scanned.
        """
        backup_root = Path(backup_root)
        source_root = Path(source_root)
        scan_errors: list[tuple[str, str]] = []
        orphans: list[str] = []

        def on_error(exc: OSError) -> None:
            scan_errors.append((exc.filename or str(backup_root), exc.strerror or str(exc)))

        top = os.fspath(backup_root)
        for dirpath, dirnames, filenames in os.walk(top, onerror=on_error):
            if dirpath == top:
                dirnames[:] = [d for d in dirnames if not self._excluded(d)]
                filenames = [f for f in filenames if not self._excluded(f)]

            # os.walk lists symlinks-to-directories as dirs but never descends them
            link_dirs = [d for d in dirnames if os.path.islink(os.path.join(dirpath, d))]
            dirnames[:] = sorted(d for d in dirnames if d not in link_dirs)

            for name in sorted(filenames + link_dirs):
                full = os.path.join(dirpath, name)
                kind = _kind(full)
                if kind not in ("file", "link"):
                    continue
                rel = os.path.relpath(full, backup_root)
                if _kind(os.path.join(source_root, rel)) != kind:
                    orphans.append(rel)

        if scan_errors:
            raise ArchiveError(
                f"Could not scan {len(scan_errors)} location(s) on the backup drive",
                failures=scan_errors,
            )
        return orphans

    def _destination(self, day_root: Path, rel: str, when: datetime) -> Path:
        target = day_root / rel
        if not os.path.lexists(target):
            return target
        candidate = target.with_name(collision_name(target.name, when))
        n = 1
        while os.path.lexists(candidate):
            base, ext = os.path.splitext(collision_name(target.name, when))
            candidate = target.with_name(f"{base}_{n}{ext}")
            n += 1
        self._log(LogLevel.INFO, f"Archive collision detected, using: {candidate.name}")
        return candidate

    def archive_orphans(
        self,
        backup_root: Path,
        source_root: Path,
        archive_root: Path,
        on_archived: Optional[Callable[[str], None]] = None,
    ) -> ArchiveResult:
        """Move every orphan into ``archive_root/<today>/<relative path>``.

        Args:
            backup_root: Working subfolder on the backup drive.
            source_root: Root of the source drive. Only read.
            archive_root: Archive directory on the backup drive.
            on_archived: Called with each relative path once it is moved.

        Returns:
            ArchiveResult with the number of files moved.

        Raises:
            ArchiveError: If any orphan could not be archived. Carries
                every failure, not just the first.
        """
        self._log(LogLevel.INFO, "Checking for files to archive...")
        now = self.clock()
        orphans = self.find_orphans(backup_root, source_root)
        if not orphans:
            self._log(LogLevel.INFO, "No orphaned files to archive")
            return ArchiveResult()

        self._log(LogLevel.INFO, f"Found {len(orphans)} file(s) to archive")
        day_root = Path(archive_root) / now.strftime(DAY_FORMAT)
        result = ArchiveResult(archive_day=day_root)
        failures: list[tuple[str, str]] = []

        for rel in orphans:
            original = Path(backup_root) / rel
            try:
                (day_root / rel).parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                failures.append((rel, f"Could not create archive directory: {exc}"))
                continue

            target = self._destination(day_root, rel, self.clock())
            try:
                shutil.move(str(original), str(target))
            except OSError as exc:
                failures.append((rel, str(exc)))
                continue

            if not os.path.lexists(target):
                failures.append((rel, "File move appeared to succeed but archive file does not exist"))
                continue
            if os.path.lexists(original):
                # Some filesystems keep the old entry until open handles close
                self._log(LogLevel.WARNING, f"Move did not remove source file: {rel}")

            result.moved_count += 1
            result.archived.append(rel)
            self._log(LogLevel.INFO, f"Archived: {rel}")
            if on_archived is not None:
                on_archived(rel)

        if failures:
            self._log(LogLevel.ERROR, f"Failed to archive {len(failures)} file(s):")
            for rel, reason in failures:
                self._log(LogLevel.ERROR, f"  - {rel}: {reason}")
            raise ArchiveError(
                f"Failed to archive {len(failures)} file(s). Sync aborted to prevent "
                "data inconsistency. Check logs for details.",
                failures=failures,
                moved_count=result.moved_count,
            )

        self._log(LogLevel.SUCCESS, f"Archived {result.moved_count} file(s)")
        return result
