"""
Fatal sync errors. Any of these aborts the rest of the session.
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for errors that end a sync session."""

    prefix = "Sync error"

    def __init__(self, message: str = ""):
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.prefix}: {self.message}" if self.message else self.prefix


class DriveValidationError(SyncError):
    """A drive failed validation.

    Attributes:
        result: The ValidationResult behind the failure, when there is one.
    """

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result


class SourceValidationError(DriveValidationError):
    """The source drive is missing, wrong, or unreadable."""

    prefix = "Source drive error"


class BackupValidationError(DriveValidationError):
    """The backup drive is missing, wrong, unwritable, or unmarked."""

    prefix = "Backup drive error"


class ArchiveError(SyncError):
    """One or more orphans could not be archived.

    Attributes:
        failures: Every (relative_path, reason) that failed, in scan order.
        moved_count: Orphans archived before the engine gave up.
    """

    prefix = "Archive error"

    def __init__(
        self,
        message: str,
        failures: Optional[list[tuple[str, str]]] = None,
        moved_count: int = 0,
    ):
        super().__init__(message)
        self.failures = list(failures or [])
        self.moved_count = moved_count


class CopyError(SyncError):
    """The copy tool failed or could not be started."""

    def __init__(self, message: str, exit_status: Optional[int] = None):
        super().__init__(message)
        self.exit_status = exit_status


class VerificationError(SyncError):
    """Bookkeeping on the backup drive did not survive the copy."""

    prefix = "Verification error"


class LockError(SyncError):
    """Another sync session holds the lock."""

    prefix = "Could not acquire sync lock"
