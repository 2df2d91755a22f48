"""
Session log: a structured, timestamped record of one sync run.

Entries accumulate in memory while the session runs and are appended
as one block to ``sync_log.txt`` under the archive directory on the
backup drive when it ends:

    ================================================================================
    SYNC SESSION: 2026-10-18 02:00:00
    ================================================================================
    [2026-10-18 02:00:00] [INFO] Starting sync session
    ...
    --------------------------------------------------------------------------------
    Summary: 1 file updated, 1 file archived
    Duration: 4 seconds
    Result: SUCCESS
    --------------------------------------------------------------------------------
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from pathlib import Path
from typing import Callable, Optional

from .models import LogEntry, LogLevel, SyncSession

logger = logging.getLogger("safemirror.session")
trace_logger = logging.getLogger("safemirror.copier")

MAX_RECENT_ENTRIES = 100
RULE_HEAVY = "=" * 80
RULE_LIGHT = "-" * 80

_PY_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


def format_session(session: SyncSession) -> str:
    """Render a finished session as the block appended to the log file."""
    lines = [
        "",
        RULE_HEAVY,
        f"SYNC SESSION: {session.start_time.strftime('%Y-%m-%d %H:%M:%S')}",
        RULE_HEAVY,
    ]
    lines.extend(entry.log_line for entry in session.entries)
    lines.extend([
        "",
        RULE_LIGHT,
        f"Summary: {session.summary}",
        f"Duration: {session.duration_formatted}",
        f"Result: {'SUCCESS' if session.success else 'FAILED'}",
        RULE_LIGHT,
        "",
    ])
    return "\n".join(lines)


class SessionLogger:
    """Collects log entries for the running session and persists them.

    Every entry is also mirrored onto the ``safemirror.session`` logger.

    Args:
        log_path: Returns the log file location at flush time; None
            when no backup drive is configured.
    """

    def __init__(self, log_path: Callable[[], Optional[Path]]):
        self._log_path = log_path
        self._lock = threading.Lock()
        self.current_session: Optional[SyncSession] = None
        self.recent_entries: deque[LogEntry] = deque(maxlen=MAX_RECENT_ENTRIES)

    @property
    def log_file(self) -> Optional[Path]:
        return self._log_path()

    def start_session(self, source: str = "", backup: str = "") -> SyncSession:
        """Open a new session, replacing any that was left open."""
        with self._lock:
            self.current_session = SyncSession()
        self.info("Starting sync session")
        if source:
            self.info(f"Source: {source}")
        if backup:
            self.info(f"Backup: {backup}")
        return self.current_session

    def log(self, level: LogLevel, message: str, details: Optional[str] = None) -> LogEntry:
        """Append an entry to the session (if any) and the recent buffer."""
        with self._lock:
            if self.current_session is not None:
                entry = self.current_session.log(level, message, details)
            else:
                entry = LogEntry(level=level, message=message, details=details)
            self.recent_entries.append(entry)

        if details:
            logger.log(_PY_LEVELS[level], "%s (%s)", message, details)
        else:
            logger.log(_PY_LEVELS[level], "%s", message)
        return entry

    def info(self, message: str, details: Optional[str] = None) -> LogEntry:
        return self.log(LogLevel.INFO, message, details)

    def warning(self, message: str, details: Optional[str] = None) -> LogEntry:
        return self.log(LogLevel.WARNING, message, details)

    def error(self, message: str, details: Optional[str] = None) -> LogEntry:
        return self.log(LogLevel.ERROR, message, details)

    def success(self, message: str, details: Optional[str] = None) -> LogEntry:
        return self.log(LogLevel.SUCCESS, message, details)

    def trace(self, line: str) -> None:
        """Low-priority copy-tool output. Not kept in the session block."""
        trace_logger.debug("rsync: %s", line)

    def end_session(
        self,
        success: bool,
        files_updated: int = 0,
        files_archived: int = 0,
    ) -> Optional[SyncSession]:
        """Finish the session, append it to the log file, and drop it.

        Returns:
            The finished session, or None if none was open.
        """
        with self._lock:
            session = self.current_session
            if session is None:
                return None
            session.files_updated = files_updated
            session.files_archived = files_archived
            session.finish(success)
            self.recent_entries.append(session.entries[-1])
            self.current_session = None

        self.write_session(session)
        return session

    def write_session(self, session: SyncSession) -> bool:
        """Append a session block to the log file. Never raises."""
        path = self._log_path()
        if path is None:
            logger.warning("No session log location configured; session %s not persisted", session.id)
            return False
        if not path.parent.is_dir():
            # Never create folders on an unmounted drive's mount point
            logger.warning("Session log folder %s is missing; session %s not persisted", path.parent, session.id)
            return False
        try:
            with open(path, "a", encoding="utf-8") as f:
                f.write(format_session(session))
            return True
        except OSError as exc:
            logger.warning("Failed to write session log %s: %s", path, exc)
            return False

    def read_log_file(self) -> str:
        path = self._log_path()
        if path is None or not path.exists():
            return "No log file found or unable to read log."
        try:
            return path.read_text(encoding="utf-8")
        except OSError:
            return "No log file found or unable to read log."
