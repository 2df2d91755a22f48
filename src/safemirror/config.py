"""
Configuration store: the single source of truth for drive identities.

Backed by ``<home>/config.yaml``. Setup writes identities and the
schedule; the orchestrator writes only the last-sync result. Every
write goes through a temp file and an atomic replace, so it is durable
before the next read.
"""

from __future__ import annotations

import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from . import MIRROR_HOME
from .models import MirrorConfig, VolumeIdentity, VolumeRef

logger = logging.getLogger("safemirror.config")

CONFIG_FILENAME = "config.yaml"

MARKER_TEMPLATE = """SafeMirror Backup Destination
Configured: {configured}
Source Drive: {source_name} ({source_id})

WARNING: Do not delete this file. It is used to verify this is the correct backup destination.
"""


class ConfigStore:
    """Thread-safe, YAML-backed configuration collaborator.

    Readers get deep-copied snapshots and must tolerate them going
    stale between refreshes.

    Args:
        home: State directory. Defaults to ~/.safemirror.
    """

    def __init__(self, home: Optional[Path] = None):
        self.home = (home or Path(MIRROR_HOME)).expanduser()
        self.path = self.home / CONFIG_FILENAME
        self._lock = threading.Lock()
        self._config = self._read()

    # -- persistence ---------------------------------------------------------

    def _read(self) -> MirrorConfig:
        if self.path.exists():
            try:
                data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
                return MirrorConfig(**data)
            except (yaml.YAMLError, ValidationError, TypeError) as exc:
                logger.warning("Failed to load config %s: %s", self.path, exc)
        return MirrorConfig()

    def _write(self, config: MirrorConfig) -> None:
        self.home.mkdir(parents=True, exist_ok=True)
        data = config.model_dump(mode="json")
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(yaml.dump(data, default_flow_style=False, sort_keys=True))
            f.flush()
            os.fsync(f.fileno())
        tmp.replace(self.path)

    def load(self) -> MirrorConfig:
        """Re-read the file from disk and return a snapshot."""
        with self._lock:
            self._config = self._read()
            return self._config.model_copy(deep=True)

    def get(self) -> MirrorConfig:
        """Return a snapshot of the in-memory configuration."""
        with self._lock:
            return self._config.model_copy(deep=True)

    def set(self, **fields: Any) -> MirrorConfig:
        """Validate and persist a partial update.

        Raises:
            pydantic.ValidationError: If the result is not a valid config.
        """
        with self._lock:
            merged = {**self._config.model_dump(), **fields}
            updated = MirrorConfig.model_validate(merged)
            self._write(updated)
            self._config = updated
            return updated.model_copy(deep=True)

    # -- setup ---------------------------------------------------------------

    def configure_source(self, volume: VolumeRef) -> MirrorConfig:
        """Record the source drive. Refuses the configured backup drive."""
        _ensure_distinct(volume, self.get().backup, "backup")
        ref = volume.to_ref() if isinstance(volume, VolumeIdentity) else volume
        logger.info("Source drive set: %s (%s)", ref.display_name, ref.durable_id)
        return self.set(source=ref.model_dump())

    def configure_backup(self, volume: VolumeRef) -> MirrorConfig:
        """Record the backup drive. Refuses the configured source drive."""
        _ensure_distinct(volume, self.get().source, "source")
        ref = volume.to_ref() if isinstance(volume, VolumeIdentity) else volume
        logger.info("Backup drive set: %s (%s)", ref.display_name, ref.durable_id)
        return self.set(backup=ref.model_dump())

    def set_schedule(self, hour: int, minute: int) -> MirrorConfig:
        return self.set(schedule_hour=hour, schedule_minute=minute)

    def ensure_backup_destination(self) -> bool:
        """Create the working subfolder on the backup drive if missing."""
        dest = self.get().backup_destination_path
        if dest is None:
            return False
        try:
            dest.mkdir(parents=True, exist_ok=True)
            return True
        except OSError as exc:
            logger.error("Failed to create backup folder %s: %s", dest, exc)
            return False

    def finalize(self) -> bool:
        """Write the backup marker, create the archive root, mark configured.

        Returns:
            True if the marker and folders were created.
        """
        config = self.get()
        if config.source is None or config.backup is None:
            logger.error("Cannot finalize: source and backup drives must both be set")
            return False
        if not self.ensure_backup_destination():
            return False

        content = MARKER_TEMPLATE.format(
            configured=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            source_name=config.source.display_name,
            source_id=config.source.durable_id,
        )
        try:
            config.marker_path.write_text(content, encoding="utf-8")
            config.archive_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error("Failed to finalize configuration: %s", exc)
            return False

        self.set(is_configured=True)
        logger.info("Configuration finalized; marker written to %s", config.marker_path)
        return True

    def record_sync_result(self, success: bool, message: str = "") -> MirrorConfig:
        """Record the outcome of a sync attempt."""
        return self.set(
            last_sync_time=datetime.now(timezone.utc),
            last_sync_success=success,
            last_sync_message=message,
        )

    def reset(self) -> None:
        """Forget everything. Removes the backup marker if reachable."""
        marker = self.get().marker_path
        if marker is not None:
            try:
                marker.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Could not remove backup marker %s: %s", marker, exc)
        with self._lock:
            self._config = MirrorConfig()
            self._write(self._config)
        logger.info("Configuration reset")


def _ensure_distinct(volume: VolumeRef, other: Optional[VolumeRef], other_role: str) -> None:
    if other is None:
        return
    if volume.durable_id == other.durable_id:
        raise ValueError(f"Drive {volume.durable_id} is already configured as the {other_role} drive")
    if os.path.normpath(volume.mount_path) == os.path.normpath(other.mount_path):
        raise ValueError(f"Path {volume.mount_path} is already configured as the {other_role} drive")
