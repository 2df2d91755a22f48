"""
Sync orchestrator: runs one session through the pipeline.

    idle -> validating -> archiving -> copying -> finishing
         -> completed | failed(reason) -> (cooldown) -> idle

Steps run strictly in order on the calling thread. Validation finishes
before any archive move, and every archive move finishes (or the
session aborts) before rsync starts. Any failure skips the remaining
steps. A session cannot be cancelled once it has started; the only
control is refusing to start a new one.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .archive import ArchiveEngine
from .config import ConfigStore
from .copier import CopyInvoker, CopyProgress
from .errors import (
    ArchiveError,
    BackupValidationError,
    LockError,
    SourceValidationError,
    SyncError,
    VerificationError,
)
from .lock import SessionLock
from .models import MirrorConfig, SyncPhase, SyncStatus
from .notify import LogNotifier, Notifier
from .session_log import SessionLogger
from .volumes import DriveValidator

logger = logging.getLogger("safemirror.orchestrator")

DEFAULT_COOLDOWN = 3.0

# Fixed progress checkpoints; the copy step owns 0.3..0.9
PROGRESS_VALIDATING = 0.05
PROGRESS_ARCHIVING = 0.1
PROGRESS_COPYING = 0.3
PROGRESS_FINISHING = 0.95
PROGRESS_DONE = 1.0


class SyncState:
    """Thread-safe orchestrator state, read by status surfaces.

    Only the session thread writes; the daemon API and CLI read
    snapshots.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.status = SyncStatus()
        self.progress: float = 0.0
        self.files_processed: int = 0
        self.files_archived: int = 0
        self.current_file: str = ""
        self.last_error: Optional[str] = None
        self.last_finished: Optional[datetime] = None
        self.sessions_completed: int = 0
        self.sessions_failed: int = 0

    def snapshot(self) -> dict:
        """Return a serializable snapshot of current state."""
        with self._lock:
            return {
                "phase": self.status.phase.value,
                "status": self.status.display_text,
                "is_running": self.status.is_running,
                "progress": round(self.progress, 3),
                "files_processed": self.files_processed,
                "files_archived": self.files_archived,
                "current_file": self.current_file,
                "last_error": self.last_error,
                "last_finished": self.last_finished.isoformat() if self.last_finished else None,
                "sessions_completed": self.sessions_completed,
                "sessions_failed": self.sessions_failed,
            }

    def claim(self) -> bool:
        """Move idle -> validating atomically. False if not idle."""
        with self._lock:
            if self.status.phase != SyncPhase.IDLE:
                return False
            self.status = SyncStatus(phase=SyncPhase.VALIDATING)
            self.progress = PROGRESS_VALIDATING
            self.files_processed = 0
            self.files_archived = 0
            self.current_file = ""
            return True

    def enter(self, phase: SyncPhase, progress: float) -> None:
        with self._lock:
            self.status = SyncStatus(phase=phase)
            self.progress = progress

    def record_archived(self) -> None:
        with self._lock:
            self.files_archived += 1

    def record_copy_progress(self, progress: CopyProgress) -> None:
        with self._lock:
            self.progress = max(self.progress, progress.fraction)
            self.files_processed = progress.files_processed
            self.current_file = progress.current_file

    def complete(self) -> None:
        with self._lock:
            self.status = SyncStatus(phase=SyncPhase.COMPLETED)
            self.progress = PROGRESS_DONE
            self.current_file = ""
            self.last_error = None
            self.last_finished = datetime.now(timezone.utc)
            self.sessions_completed += 1

    def fail(self, reason: str) -> None:
        with self._lock:
            self.status = SyncStatus.failed(reason)
            self.current_file = ""
            self.last_error = reason
            self.last_finished = datetime.now(timezone.utc)
            self.sessions_failed += 1

    def reset(self) -> None:
        """Back to idle with per-run counters cleared. Keeps last_error."""
        with self._lock:
            self.status = SyncStatus()
            self.progress = 0.0
            self.files_processed = 0
            self.files_archived = 0
            self.current_file = ""


class SyncOrchestrator:
    """Owns the session state machine and its collaborators.

    Args:
        store: Configuration store. The orchestrator only writes the
            last-sync result.
        validator: Drive identity validator.
        archive_engine: Moves orphans into the archive.
        copy_invoker: Runs rsync.
        lock: Cross-process session lock.
        session_log: Session logger shared with the archive engine and
            copy invoker.
        notifier: Receives one notification per finished session.
        cooldown: Seconds a terminal status stays visible before idle.
    """

    def __init__(
        self,
        store: ConfigStore,
        validator: DriveValidator,
        archive_engine: ArchiveEngine,
        copy_invoker: CopyInvoker,
        lock: SessionLock,
        session_log: SessionLogger,
        notifier: Optional[Notifier] = None,
        cooldown: float = DEFAULT_COOLDOWN,
    ):
        self.store = store
        self.validator = validator
        self.archive_engine = archive_engine
        self.copy_invoker = copy_invoker
        self.lock = lock
        self.session_log = session_log
        self.notifier = notifier or LogNotifier()
        self.cooldown = cooldown
        self.state = SyncState()
        self.last_failure: Optional[Exception] = None
        self._wake = threading.Event()

    @property
    def status(self) -> SyncStatus:
        return self.state.status

    @property
    def is_syncing(self) -> bool:
        return self.state.status.is_running

    def perform_sync(self) -> bool:
        """Run one full session.

        Returns:
            True if the session completed. False if it failed or was
            refused because another session is in progress here.
        """
        if not self.state.claim():
            logger.warning("Sync already in progress, refusing to start another")
            return False

        self.session_log.start_session()
        success = False
        message = ""
        self.last_failure = None
        try:
            try:
                config = self.store.load()
                if config.source is not None:
                    self.session_log.info(f"Source: {_describe(config.source)}")
                if config.backup is not None:
                    self.session_log.info(f"Backup: {_describe(config.backup)}")
                self._run_pipeline(config)
                success = True
            finally:
                self.lock.release()
        except SyncError as exc:
            self.last_failure = exc
            message = str(exc)
            self.session_log.error("Sync failed", details=message)
        except Exception as exc:
            self.last_failure = exc
            message = f"Unexpected error: {exc}"
            logger.exception("Sync failed with unexpected error")
            self.session_log.error("Sync failed with unexpected error", details=str(exc))

        snapshot = self.state.snapshot()
        if success:
            message = (
                f"Successfully synced {snapshot['files_processed']} file(s), "
                f"archived {snapshot['files_archived']} file(s)"
            )
            self.state.complete()
            self.session_log.success(message)
        else:
            self.state.fail(message)

        self._finish(success, message, snapshot["files_processed"], snapshot["files_archived"])
        return success

    # -- pipeline ------------------------------------------------------------

    def _run_pipeline(self, config: MirrorConfig) -> None:
        if not self.lock.acquire():
            raise LockError("another sync session is running")

        self._validate(config)

        self.state.enter(SyncPhase.ARCHIVING, PROGRESS_ARCHIVING)
        self._archive(config)

        self.state.enter(SyncPhase.COPYING, PROGRESS_COPYING)
        self._copy(config)

        self.state.enter(SyncPhase.FINISHING, PROGRESS_FINISHING)
        self._verify(config)

    def _validate(self, config: MirrorConfig) -> None:
        self.session_log.info("Validating drives...")
        if not config.is_configured or config.source is None or config.backup is None:
            raise SourceValidationError("Backup is not configured")

        # Before anything that could create folders on either drive
        conflict = self.validator.check_distinct(config)
        if conflict:
            self.session_log.error(conflict)
            raise SourceValidationError(conflict)

        source = self.validator.validate_source(config)
        if not source.is_valid:
            raise SourceValidationError(source.error_message, result=source)
        self.session_log.info(f"Source drive validated: {config.source.display_name}")

        backup = self.validator.validate_backup(config)
        if not backup.is_valid:
            raise BackupValidationError(backup.error_message, result=backup)
        self.session_log.info(f"Backup drive validated: {config.backup.display_name}")
        self.session_log.success("Drive validation complete")

    def _archive(self, config: MirrorConfig) -> None:
        archive_root = config.archive_path
        try:
            archive_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ArchiveError(f"Could not create archive directory {archive_root}: {exc}") from exc

        self.archive_engine.archive_orphans(
            config.backup_destination_path,
            Path(config.source.mount_path),
            archive_root,
            on_archived=lambda _rel: self.state.record_archived(),
        )

    def _copy(self, config: MirrorConfig) -> None:
        self.session_log.info("Starting file sync...")
        result = self.copy_invoker.run(
            Path(config.source.mount_path),
            config.backup_destination_path,
            on_progress=self.state.record_copy_progress,
        )
        # Per-line updates may have been coalesced; the result is authoritative
        self.state.record_copy_progress(
            CopyProgress(fraction=self.state.progress, files_processed=result.files_copied)
        )
        self.session_log.success(f"rsync complete: {result.files_copied} file(s) synced")

    def _verify(self, config: MirrorConfig) -> None:
        self.session_log.info("Verifying backup bookkeeping...")
        if not config.marker_path.exists():
            raise VerificationError("Backup marker file disappeared during sync")
        if not config.archive_path.is_dir():
            raise VerificationError("Archive directory disappeared during sync")

    # -- terminal handling ---------------------------------------------------

    def _finish(self, success: bool, message: str, files_updated: int, files_archived: int) -> None:
        try:
            self.store.record_sync_result(success, message)
        except OSError as exc:
            logger.error("Could not record sync result: %s", exc)
            self.session_log.error("Could not record sync result", details=str(exc))

        title = "Backup Complete" if success else "Backup Failed"
        try:
            self.notifier.notify(title, message)
        except Exception as exc:
            logger.warning("Notification failed: %s", exc)

        self.session_log.end_session(success, files_updated=files_updated, files_archived=files_archived)

        if self.cooldown > 0:
            self._wake.wait(self.cooldown)
        self.state.reset()

    def shutdown(self) -> None:
        """Cut the post-session cooldown short."""
        self._wake.set()


def _describe(volume) -> str:
    if volume is None:
        return ""
    return f"{volume.display_name or volume.durable_id} ({volume.mount_path})"
