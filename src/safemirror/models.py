"""
Pydantic models defining the mirror's configuration, session and status.

Configuration is the single source of truth for drive identities.
Everything else here (volume snapshots, validation results, sync
status) is transient and rebuilt on every check.
"""

from __future__ import annotations

import uuid
from datetime import datetime, time, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ---------------------------------------------------------------------------
# Bookkeeping names on the backup volume
# ---------------------------------------------------------------------------

BACKUP_FOLDER_NAME = "SafeMirror Backup"
ARCHIVE_DIR_NAME = "SafeMirror_Archive"
MARKER_FILENAME = ".safemirror_backup"
SESSION_LOG_FILENAME = "sync_log.txt"

# Transient OS artifacts never mirrored and never archived (fnmatch patterns)
SYSTEM_ARTIFACTS = (
    ".DS_Store",
    ".Spotlight-V100",
    ".fseventsd",
    ".Trashes",
    ".TemporaryItems",
    ".DocumentRevisions-V100",
    ".PKInstallSandboxManager-SystemSoftware",
    ".Trash-*",
    "lost+found",
)

BOOKKEEPING_EXCLUDES = (ARCHIVE_DIR_NAME, MARKER_FILENAME) + SYSTEM_ARTIFACTS

SCHEDULE_MINUTES = (0, 15, 30, 45)
OVERDUE_HOURS = 25


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


# ---------------------------------------------------------------------------
# Volumes
# ---------------------------------------------------------------------------


class VolumeRef(BaseModel):
    """A configured drive: what Configuration persists for each role."""

    durable_id: str
    mount_path: str
    display_name: str = ""


class VolumeIdentity(VolumeRef):
    """A live snapshot of a mounted volume. Never persisted.

    Attributes:
        total_bytes: Capacity of the filesystem.
        free_bytes: Space available to unprivileged writers.
        is_writable: False for read-only mounts or paths we cannot write.
        fstype: Filesystem type reported by the mount table.
        device: Backing block device, if any.
    """

    total_bytes: int = 0
    free_bytes: int = 0
    is_writable: bool = False
    fstype: str = ""
    device: str = ""

    def to_ref(self) -> VolumeRef:
        """Strip the transient fields for persistence."""
        return VolumeRef(
            durable_id=self.durable_id,
            mount_path=self.mount_path,
            display_name=self.display_name,
        )

    @property
    def used_percentage(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return (self.total_bytes - self.free_bytes) / self.total_bytes * 100


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class MirrorConfig(BaseModel):
    """Persistent mirror configuration.

    Created by setup, mutated only by setup and by sync-result
    recording, destroyed on explicit reset.
    """

    source: Optional[VolumeRef] = None
    backup: Optional[VolumeRef] = None
    schedule_hour: int = 2
    schedule_minute: int = 0
    is_configured: bool = False
    last_sync_time: Optional[datetime] = None
    last_sync_success: bool = False
    last_sync_message: str = ""
    rsync_path: Optional[str] = None

    @field_validator("schedule_hour")
    @classmethod
    def hour_in_range(cls, v: int) -> int:
        """Hours are 0..23."""
        if not 0 <= v <= 23:
            raise ValueError(f"schedule_hour must be 0..23: got {v}")
        return v

    @field_validator("schedule_minute")
    @classmethod
    def minute_on_quarter(cls, v: int) -> int:
        """Minutes snap to quarter hours."""
        if v not in SCHEDULE_MINUTES:
            raise ValueError(f"schedule_minute must be one of {SCHEDULE_MINUTES}: got {v}")
        return v

    @property
    def backup_destination_path(self) -> Optional[Path]:
        """Working subfolder on the backup volume that mirrors the source."""
        if self.backup is None or not self.backup.mount_path:
            return None
        root = Path(self.backup.mount_path)
        if root.name == BACKUP_FOLDER_NAME:
            return root
        return root / BACKUP_FOLDER_NAME

    @property
    def archive_path(self) -> Optional[Path]:
        dest = self.backup_destination_path
        return dest / ARCHIVE_DIR_NAME if dest is not None else None

    @property
    def marker_path(self) -> Optional[Path]:
        """Marker lives at the backup volume root, not inside the working folder."""
        if self.backup is None or not self.backup.mount_path:
            return None
        return Path(self.backup.mount_path) / MARKER_FILENAME

    @property
    def session_log_path(self) -> Optional[Path]:
        archive = self.archive_path
        return archive / SESSION_LOG_FILENAME if archive is not None else None

    @property
    def schedule_time_formatted(self) -> str:
        """Schedule as a 12-hour clock string, e.g. '2:00 AM'."""
        t = time(self.schedule_hour, self.schedule_minute)
        return t.strftime("%I:%M %p").lstrip("0")

    @property
    def time_since_last_sync(self) -> str:
        if self.last_sync_time is None:
            return "Never"
        last = self.last_sync_time
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        seconds = (datetime.now(timezone.utc) - last).total_seconds()
        if seconds < 60:
            return "Just now"
        if seconds < 3600:
            return f"{_plural(int(seconds // 60), 'minute')} ago"
        if seconds < 86400:
            return f"{_plural(int(seconds // 3600), 'hour')} ago"
        return f"{_plural(int(seconds // 86400), 'day')} ago"

    @property
    def is_backup_overdue(self) -> bool:
        """Overdue when configured but never synced, or silent for over a day."""
        if self.last_sync_time is None:
            return self.is_configured
        last = self.last_sync_time
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        age = datetime.now(timezone.utc) - last
        return age.total_seconds() > OVERDUE_HOURS * 3600


# ---------------------------------------------------------------------------
# Session log
# ---------------------------------------------------------------------------


class LogLevel(str, Enum):
    """Severity of a session log entry."""

    INFO = "INFO"
    WARNING = "WARN"
    ERROR = "ERROR"
    SUCCESS = "SUCCESS"


class LogEntry(BaseModel):
    """One timestamped line of a sync session."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = Field(default_factory=datetime.now)
    level: LogLevel = LogLevel.INFO
    message: str
    details: Optional[str] = None

    @property
    def formatted_timestamp(self) -> str:
        return self.timestamp.strftime("%Y-%m-%d %H:%M:%S")

    @property
    def log_line(self) -> str:
        """Render as '[ts] [LEVEL] message' with indented details."""
        line = f"[{self.formatted_timestamp}] [{self.level.value}] {self.message}"
        if self.details:
            line += "\n    " + self.details.replace("\n", "\n    ")
        return line


class SyncSession(BaseModel):
    """One end-to-end run of the sync pipeline.

    Created at orchestration start, appended to throughout the run,
    flushed to the backup volume at the end, then discarded.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    start_time: datetime = Field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    entries: list[LogEntry] = Field(default_factory=list)
    files_updated: int = 0
    files_archived: int = 0
    bytes_transferred: int = 0
    success: bool = False

    def log(self, level: LogLevel, message: str, details: Optional[str] = None) -> LogEntry:
        entry = LogEntry(level=level, message=message, details=details)
        self.entries.append(entry)
        return entry

    def finish(self, success: bool) -> None:
        self.end_time = datetime.now()
        self.success = success
        if success:
            self.log(LogLevel.SUCCESS, "Sync completed successfully")
        else:
            self.log(LogLevel.ERROR, "Sync failed")

    @property
    def duration(self) -> float:
        """Seconds elapsed, up to now if the session is still open."""
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()

    @property
    def duration_formatted(self) -> str:
        seconds = int(self.duration)
        if seconds < 60:
            return _plural(seconds, "second")
        minutes, remainder = divmod(seconds, 60)
        if remainder == 0:
            return _plural(minutes, "minute")
        return f"{minutes}m {remainder}s"

    @property
    def summary(self) -> str:
        parts = []
        if self.files_updated > 0:
            parts.append(f"{_plural(self.files_updated, 'file')} updated")
        if self.files_archived > 0:
            parts.append(f"{_plural(self.files_archived, 'file')} archived")
        return ", ".join(parts) if parts else "No changes"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationStatus(str, Enum):
    """Outcome tag of a drive validation check."""

    VALID = "valid"
    NOT_MOUNTED = "not_mounted"
    WRONG_DRIVE = "wrong_drive"
    NOT_READABLE = "not_readable"
    NOT_WRITABLE = "not_writable"
    MARKER_MISSING = "marker_missing"
    BACKUP_FOLDER_MISSING = "backup_folder_missing"


_VALIDATION_MESSAGES = {
    ValidationStatus.VALID: "Drive is valid",
    ValidationStatus.NOT_MOUNTED: "Drive is not mounted",
    ValidationStatus.WRONG_DRIVE: "Wrong drive mounted (UUID: {observed_id})",
    ValidationStatus.NOT_READABLE: "Drive is not readable",
    ValidationStatus.NOT_WRITABLE: "Drive is not writable",
    ValidationStatus.MARKER_MISSING: (
        "Backup marker file is missing - this may not be the correct backup drive"
    ),
    ValidationStatus.BACKUP_FOLDER_MISSING: "Backup folder is missing on the drive",
}


class ValidationResult(BaseModel):
    """Result of one validation call. Produced fresh, never cached.

    Only WRONG_DRIVE carries data: the durable id actually observed.
    """

    model_config = ConfigDict(frozen=True)

    status: ValidationStatus
    observed_id: Optional[str] = None

    @model_validator(mode="after")
    def observed_id_only_for_wrong_drive(self) -> "ValidationResult":
        if self.status == ValidationStatus.WRONG_DRIVE and not self.observed_id:
            raise ValueError("wrong_drive requires observed_id")
        if self.status != ValidationStatus.WRONG_DRIVE and self.observed_id is not None:
            raise ValueError(f"{self.status.value} does not carry observed_id")
        return self

    @classmethod
    def of(cls, status: ValidationStatus) -> "ValidationResult":
        return cls(status=status)

    @classmethod
    def wrong_drive(cls, observed_id: str) -> "ValidationResult":
        return cls(status=ValidationStatus.WRONG_DRIVE, observed_id=observed_id)

    @property
    def is_valid(self) -> bool:
        return self.status == ValidationStatus.VALID

    @property
    def error_message(self) -> str:
        return _VALIDATION_MESSAGES[self.status].format(observed_id=self.observed_id)


# ---------------------------------------------------------------------------
# Orchestrator status
# ---------------------------------------------------------------------------


class SyncPhase(str, Enum):
    """States of the sync orchestrator."""

    IDLE = "idle"
    VALIDATING = "validating"
    ARCHIVING = "archiving"
    COPYING = "copying"
    FINISHING = "finishing"
    COMPLETED = "completed"
    FAILED = "failed"


_PHASE_TEXT = {
    SyncPhase.IDLE: "Ready",
    SyncPhase.VALIDATING: "Validating drives...",
    SyncPhase.ARCHIVING: "Archiving deleted files...",
    SyncPhase.COPYING: "Syncing files...",
    SyncPhase.FINISHING: "Finishing up...",
    SyncPhase.COMPLETED: "Completed",
    SyncPhase.FAILED: "Failed: {reason}",
}


class SyncStatus(BaseModel):
    """Tagged orchestrator state. Only FAILED carries a reason."""

    model_config = ConfigDict(frozen=True)

    phase: SyncPhase = SyncPhase.IDLE
    reason: Optional[str] = None

    @model_validator(mode="after")
    def reason_only_for_failed(self) -> "SyncStatus":
        if self.phase == SyncPhase.FAILED and not self.reason:
            raise ValueError("failed status requires a reason")
        if self.phase != SyncPhase.FAILED and self.reason is not None:
            raise ValueError(f"{self.phase.value} does not carry a reason")
        return self

    @classmethod
    def failed(cls, reason: str) -> "SyncStatus":
        return cls(phase=SyncPhase.FAILED, reason=reason)

    @property
    def is_running(self) -> bool:
        return self.phase not in (SyncPhase.IDLE, SyncPhase.COMPLETED, SyncPhase.FAILED)

    @property
    def display_text(self) -> str:
        return _PHASE_TEXT[self.phase].format(reason=self.reason)
