"""
Copy invoker: drives rsync to mirror the source onto the backup.

Always update-only and never destructive:

    rsync -av --update --itemize-changes --info=progress2 \\
          --exclude /SafeMirror_Archive --exclude /.safemirror_backup \\
          --exclude .DS_Store ... <source>/ <backup>/

A dry run first counts how many files would change (only to size the
progress bar), then the real run streams its output. Both pipes are
drained by reader threads onto a queue; the caller's thread consumes
the queue, so every progress update happens on the caller's thread.
"""

from __future__ import annotations

import logging
import os
import queue
import re
import shutil
import subprocess
import threading
from collections import deque
from pathlib import Path
from typing import IO, Callable, Iterable, Optional

from pydantic import BaseModel

from .errors import CopyError
from .models import ARCHIVE_DIR_NAME, BOOKKEEPING_EXCLUDES, MARKER_FILENAME

logger = logging.getLogger("safemirror.copier")

RSYNC_OK = 0
RSYNC_VANISHED = 24  # "some files vanished before they could be transferred"
TOLERATED_EXIT = (RSYNC_OK, RSYNC_VANISHED)

# Share of total session progress owned by the copy step
PROGRESS_START = 0.3
PROGRESS_END = 0.9

FILE_LINE_PREFIXES = (">f", "<f", "cf")
_ITEMIZED = re.compile(r"^[<>ch.*][fdLDS]\S{9} ")
_FORBIDDEN = re.compile(r"^--(del|delete\S*|remove-source-files|prune-empty-dirs)$")

STDOUT = "stdout"
STDERR = "stderr"


class CopyProgress(BaseModel):
    """Progress snapshot published to the caller."""

    fraction: float
    files_processed: int = 0
    current_file: str = ""


class CopyResult(BaseModel):
    """Outcome of a successful copy step."""

    files_copied: int = 0
    exit_status: int = 0
    dry_run_total: int = 0


def default_exclusions() -> list[str]:
    """Bookkeeping names anchored to the transfer root, OS artifacts anywhere."""
    anchored = {ARCHIVE_DIR_NAME, MARKER_FILENAME}
    return [f"/{name}" if name in anchored else name for name in BOOKKEEPING_EXCLUDES]


def _with_slash(path: Path | str) -> str:
    return os.path.join(os.fspath(path), "")


def build_rsync_args(
    source_root: Path | str,
    backup_root: Path | str,
    exclusions: Iterable[str],
    dry_run: bool = False,
) -> list[str]:
    """Assemble the rsync argument list (without the binary).

    Raises:
        CopyError: If anything destructive slipped into the arguments.
    """
    args = ["--dry-run"] if dry_run else []
    args += ["-av", "--update", "--itemize-changes", "--info=progress2"]
    for pattern in exclusions:
        args += ["--exclude", pattern]
    args += [_with_slash(source_root), _with_slash(backup_root)]

    for arg in args:
        if _FORBIDDEN.match(arg):
            raise CopyError(f"Refusing destructive rsync option {arg}")
    return args


def is_file_line(line: str) -> bool:
    """An itemized line for one transferred regular file."""
    return line.startswith(FILE_LINE_PREFIXES)


def extract_filename(line: str) -> str:
    _, sep, name = line.partition(" ")
    return name.strip() if sep else line


def parse_progress_percent(line: str) -> Optional[float]:
    """Overall completion (0..1) from a --info=progress2 line, if any."""
    if _ITEMIZED.match(line):
        return None
    for token in line.split():
        if token.endswith("%"):
            try:
                return float(token[:-1]) / 100.0
            except ValueError:
                continue
    return None


class ProgressTracker:
    """Turns rsync output lines into session progress.

    Overall-percentage lines win once seen; before that (or when the
    tool never prints them) progress is processed files over the
    dry-run total.
    """

    def __init__(self, total_files: int, start: float = PROGRESS_START, end: float = PROGRESS_END):
        self.total_files = total_files
        self.start = start
        self.end = end
        self.fraction = start
        self.files_processed = 0
        self.current_file = ""
        self.saw_percent = False

    def _map(self, fraction: float) -> float:
        return self.start + (self.end - self.start) * min(max(fraction, 0.0), 1.0)

    def handle(self, line: str) -> Optional[CopyProgress]:
        """Feed one line. Returns a snapshot when something changed."""
        percent = parse_progress_percent(line)
        if percent is not None:
            self.saw_percent = True
            mapped = self._map(percent)
            if mapped <= self.fraction:
                return None
            self.fraction = mapped
            return self.snapshot()

        if not is_file_line(line):
            return None
        self.files_processed += 1
        self.current_file = extract_filename(line)
        if not self.saw_percent:
            self.fraction = max(
                self.fraction, self._map(self.files_processed / max(self.total_files, 1))
            )
        return self.snapshot()

    def snapshot(self) -> CopyProgress:
        return CopyProgress(
            fraction=self.fraction,
            files_processed=self.files_processed,
            current_file=self.current_file,
        )


def _pump(stream: IO[str], name: str, events: queue.Queue) -> None:
    try:
        for raw in stream:
            line = raw.rstrip("\r\n")
            if line.strip():
                events.put((name, line))
    finally:
        events.put((name, None))


class CopyInvoker:
    """Runs rsync in two passes and reports progress.

    Args:
        rsync_path: rsync binary. Defaults to the first one on PATH.
        session_log: Optional SessionLogger; every output line is
            forwarded to it as a trace event.
    """

    def __init__(self, rsync_path: Optional[str] = None, session_log=None):
        self.rsync_path = rsync_path
        self.session_log = session_log

    def resolve_binary(self) -> str:
        path = self.rsync_path or shutil.which("rsync")
        if not path or not os.access(path, os.X_OK):
            raise CopyError(f"rsync not found ({self.rsync_path or 'PATH'})")
        return path

    def _trace(self, line: str) -> None:
        if self.session_log is not None:
            self.session_log.trace(line)
        else:
            logger.debug("rsync: %s", line)

    def stream(self, args: list[str], on_line: Callable[[str, str], None]) -> tuple[int, list[str]]:
        """Run rsync, delivering each output line to ``on_line`` on this thread.

        Returns:
            (exit status, last stderr lines).

        Raises:
            CopyError: If the process cannot be started.
        """
        cmd = [self.resolve_binary(), *args]
        logger.info("Running: %s", " ".join(cmd))
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as exc:
            raise CopyError(f"Could not start rsync: {exc}") from exc

        events: queue.Queue = queue.Queue()
        readers = [
            threading.Thread(target=_pump, args=(proc.stdout, STDOUT, events), name="rsync-stdout", daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, STDERR, events), name="rsync-stderr", daemon=True),
        ]
        for t in readers:
            t.start()

        stderr_tail: deque[str] = deque(maxlen=20)
        open_streams = len(readers)
        try:
            while open_streams:
                name, line = events.get()
                if line is None:
                    open_streams -= 1
                    continue
                if name == STDERR:
                    stderr_tail.append(line)
                self._trace(line)
                on_line(name, line)
        except BaseException:
            proc.kill()
            proc.wait()
            raise

        for t in readers:
            t.join()
        return proc.wait(), list(stderr_tail)

    def count_changes(self, source_root: Path, backup_root: Path, exclusions: Iterable[str]) -> int:
        """Dry run: how many files the real run would transfer."""
        count = 0

        def on_line(_: str, line: str) -> None:
            nonlocal count
            if is_file_line(line):
                count += 1

        args = build_rsync_args(source_root, backup_root, exclusions, dry_run=True)
        status, stderr = self.stream(args, on_line)
        if status not in TOLERATED_EXIT:
            raise CopyError(f"Dry run failed (exit {status}): {' '.join(stderr)}", exit_status=status)
        return count

    def run(
        self,
        source_root: Path,
        backup_root: Path,
        exclusions: Optional[Iterable[str]] = None,
        on_progress: Optional[Callable[[CopyProgress], None]] = None,
    ) -> CopyResult:
        """Mirror ``source_root`` into ``backup_root``, update-only.

        Args:
            source_root: Source drive root. Only read.
            backup_root: Working subfolder on the backup drive.
            exclusions: rsync exclude patterns. Defaults to bookkeeping names.
            on_progress: Receives progress snapshots on the calling thread.

        Returns:
            CopyResult with the number of files transferred.

        Raises:
            CopyError: On any exit status other than success or vanished files.
        """
        patterns = list(exclusions) if exclusions is not None else default_exclusions()

        total = self.count_changes(source_root, backup_root, patterns)
        logger.info("Dry run complete: %d file(s) to sync", total)

        tracker = ProgressTracker(total)

        def on_line(_: str, line: str) -> None:
            snapshot = tracker.handle(line)
            if snapshot is not None and on_progress is not None:
                on_progress(snapshot)

        args = build_rsync_args(source_root, backup_root, patterns)
        status, stderr = self.stream(args, on_line)
        if status not in TOLERATED_EXIT:
            raise CopyError(
                f"rsync failed with exit code {status}: {' '.join(stderr)}", exit_status=status
            )
        if status == RSYNC_VANISHED:
            logger.warning("Some source files vanished during the copy (exit %d)", status)

        return CopyResult(files_copied=tracker.files_processed, exit_status=status, dry_run_total=total)
