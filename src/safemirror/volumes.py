"""
Drive identity: resolve paths to durable volume identities and
check them against the configured source and backup drives.

The durable identifier is the filesystem UUID: it survives remounts
and does not depend on where the volume happens to be mounted.
Volumes without one (tmpfs, overlays, other synthetic mounts) are
invisible here and can never be picked as source or backup.

Re-validation happens at the start of every sync. It is separate
from any periodic mount-table polling a UI might do.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from .models import MirrorConfig, ValidationResult, ValidationStatus, VolumeIdentity

logger = logging.getLogger("safemirror.volumes")

FINDMNT_COLUMNS = "TARGET,SOURCE,UUID,LABEL,FSTYPE,OPTIONS"

# Mount targets never offered as source or backup
SKIP_TARGETS = {"/", "/boot", "/boot/efi", "/efi"}
SKIP_PREFIXES = ("/proc", "/sys", "/dev", "/run/credentials", "/snap/")


def _run(cmd: list[str]) -> subprocess.CompletedProcess:
    """Run a command and capture output.

    Args:
        cmd: Command and arguments.

    Returns:
        CompletedProcess with stdout/stderr.
    """
    return subprocess.run(cmd, capture_output=True, text=True, timeout=30, check=False)


class VolumeProbe(ABC):
    """Source of truth for what is mounted where."""

    @abstractmethod
    def probe(self, path: Path) -> Optional[VolumeIdentity]:
        """Identify the volume holding ``path``.

        Returns:
            The identity, or None if the path has no durable identifier.
        """

    @abstractmethod
    def mounts(self) -> list[VolumeIdentity]:
        """List every mounted volume that has a durable identifier."""


class FindmntProbe(VolumeProbe):
    """Volume probe backed by util-linux ``findmnt``."""

    def __init__(self, findmnt: str = "findmnt"):
        self.findmnt = findmnt

    def _query(self, *args: str) -> list[dict[str, Any]]:
        cmd = [self.findmnt, "-J", "-o", FINDMNT_COLUMNS, *args]
        try:
            result = _run(cmd)
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.error("findmnt failed: %s", exc)
            return []
        if result.returncode != 0:
            logger.debug("findmnt %s returned %d: %s", args, result.returncode, result.stderr.strip())
            return []
        try:
            data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            logger.error("findmnt output is not valid JSON: %s", exc)
            return []
        rows: list[dict[str, Any]] = []

        def walk(nodes: list[dict[str, Any]]) -> None:
            for node in nodes:
                rows.append(node)
                walk(node.get("children") or [])

        walk(data.get("filesystems") or [])
        return rows

    @staticmethod
    def _identity(row: dict[str, Any], path: Path) -> Optional[VolumeIdentity]:
        uuid = (row.get("uuid") or "").strip()
        if not uuid:
            return None
        target = row.get("target") or str(path)
        options = (row.get("options") or "").split(",")
        try:
            usage = shutil.disk_usage(path)
            total, free = usage.total, usage.free
        except OSError:
            total, free = 0, 0
        return VolumeIdentity(
            durable_id=uuid,
            mount_path=str(path),
            display_name=row.get("label") or Path(target).name or str(row.get("source") or target),
            total_bytes=total,
            free_bytes=free,
            is_writable="ro" not in options and os.access(path, os.W_OK),
            fstype=row.get("fstype") or "",
            device=row.get("source") or "",
        )

    def probe(self, path: Path) -> Optional[VolumeIdentity]:
        rows = self._query("--target", str(path))
        if not rows:
            return None
        return self._identity(rows[0], path)

    def mounts(self) -> list[VolumeIdentity]:
        volumes = []
        for row in self._query("-l"):
            target = row.get("target") or ""
            if not target or target in SKIP_TARGETS or target.startswith(SKIP_PREFIXES):
                continue
            identity = self._identity(row, Path(target))
            if identity is not None:
                volumes.append(identity)
        return volumes


class DriveValidator:
    """Checks that the configured drives are the drives actually mounted.

    Args:
        probe: Volume probe. Defaults to findmnt.
    """

    def __init__(self, probe: Optional[VolumeProbe] = None):
        self.probe = probe or FindmntProbe()

    def resolve(self, path: Path | str) -> Optional[VolumeIdentity]:
        """Resolve a path to the durable identity of its volume."""
        p = Path(path)
        if not p.exists():
            return None
        return self.probe.probe(p)

    def discover_volumes(self) -> list[VolumeIdentity]:
        """Mounted volumes eligible for source/backup, sorted by name."""
        volumes = self.probe.mounts()
        return sorted(volumes, key=lambda v: v.display_name.casefold())

    def _check_identity(self, path: Path, expected_id: str) -> Optional[ValidationResult]:
        if not path.exists():
            return ValidationResult.of(ValidationStatus.NOT_MOUNTED)
        identity = self.probe.probe(path)
        if identity is None:
            return ValidationResult.of(ValidationStatus.NOT_MOUNTED)
        if identity.durable_id != expected_id:
            return ValidationResult.wrong_drive(identity.durable_id)
        return None

    def validate_source(self, config: MirrorConfig) -> ValidationResult:
        """Validate the source drive: mounted, same identity, readable."""
        if config.source is None or not config.source.mount_path or not config.source.durable_id:
            return ValidationResult.of(ValidationStatus.NOT_MOUNTED)
        path = Path(config.source.mount_path)

        failure = self._check_identity(path, config.source.durable_id)
        if failure is not None:
            return failure
        if not os.access(path, os.R_OK | os.X_OK):
            return ValidationResult.of(ValidationStatus.NOT_READABLE)
        return ValidationResult.of(ValidationStatus.VALID)

    def validate_backup(self, config: MirrorConfig, create: bool = True) -> ValidationResult:
        """Validate the backup drive.

        Beyond identity and writability, the marker must sit at the
        volume root. The working subfolder is created on demand, but
        only once the marker has proven this is the right drive.

        Args:
            config: Current configuration.
            create: Create a missing working subfolder. With False a
                missing folder reports BACKUP_FOLDER_MISSING and nothing
                on the drive is touched.
        """
        if config.backup is None or not config.backup.mount_path or not config.backup.durable_id:
            return ValidationResult.of(ValidationStatus.NOT_MOUNTED)
        path = Path(config.backup.mount_path)

        failure = self._check_identity(path, config.backup.durable_id)
        if failure is not None:
            return failure
        if not config.marker_path.exists():
            return ValidationResult.of(ValidationStatus.MARKER_MISSING)

        dest = config.backup_destination_path
        if not dest.exists():
            if not create:
                return ValidationResult.of(ValidationStatus.BACKUP_FOLDER_MISSING)
            if not os.access(path, os.W_OK):
                return ValidationResult.of(ValidationStatus.NOT_WRITABLE)
            try:
                dest.mkdir(parents=True, exist_ok=True)
                logger.info("Created backup folder %s", dest)
            except OSError as exc:
                logger.error("Could not create backup folder %s: %s", dest, exc)
                return ValidationResult.of(ValidationStatus.BACKUP_FOLDER_MISSING)

        if not os.access(dest, os.W_OK):
            return ValidationResult.of(ValidationStatus.NOT_WRITABLE)
        return ValidationResult.of(ValidationStatus.VALID)

    def check_distinct(self, config: MirrorConfig) -> Optional[str]:
        """Make sure source and backup are different drives.

        Compares the configured identities and the identities the
        configured paths resolve to right now. Touches nothing.

        Returns:
            None when distinct, otherwise the reason they are not.
        """
        if config.source is None or config.backup is None:
            return None
        if config.source.durable_id == config.backup.durable_id:
            return "CRITICAL: Source and backup drives are the same! This is a misconfiguration. ABORTING."
        if os.path.normpath(config.source.mount_path) == os.path.normpath(config.backup.mount_path):
            return "CRITICAL: Source and backup paths are identical! ABORTING."

        source = self.resolve(config.source.mount_path)
        backup = self.resolve(config.backup.mount_path)
        if source is not None and backup is not None and source.durable_id == backup.durable_id:
            return (
                f"CRITICAL: Source and backup resolve to the same volume ({source.durable_id}). ABORTING."
            )
        return None
