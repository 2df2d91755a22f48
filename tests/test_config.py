"""Tests for the YAML-backed configuration store."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from safemirror.config import CONFIG_FILENAME, ConfigStore
from safemirror.models import MirrorConfig, VolumeIdentity, VolumeRef

from conftest import BACKUP_ID, SOURCE_ID


class TestPersistence:
    """Tests for reading and writing config.yaml."""

    def test_missing_file_gives_defaults(self, store):
        assert store.get() == MirrorConfig()

    def test_set_persists(self, store, mirror_home):
        store.set(schedule_hour=5, schedule_minute=30)
        data = yaml.safe_load((mirror_home / CONFIG_FILENAME).read_text())
        assert data["schedule_hour"] == 5
        assert data["schedule_minute"] == 30

    def test_durable_before_next_read(self, store, mirror_home):
        """A fresh store sees what another store just wrote."""
        store.set(rsync_path="/opt/rsync/bin/rsync")
        assert ConfigStore(mirror_home).get().rsync_path == "/opt/rsync/bin/rsync"

    def test_no_temp_file_left(self, store, mirror_home):
        store.set(schedule_hour=4)
        assert not list(mirror_home.glob("*.tmp"))

    def test_invalid_update_rejected(self, store, mirror_home):
        with pytest.raises(ValidationError):
            store.set(schedule_minute=7)
        assert store.get().schedule_minute == 0
        assert not (mirror_home / CONFIG_FILENAME).exists()

    def test_corrupt_file_falls_back(self, mirror_home):
        (mirror_home / CONFIG_FILENAME).write_text("schedule_hour: [not, an, int]\n")
        assert ConfigStore(mirror_home).get() == MirrorConfig()

    def test_snapshots_are_copies(self, store):
        snapshot = store.get()
        snapshot.schedule_hour = 9
        assert store.get().schedule_hour == 2

    def test_load_rereads_disk(self, store, mirror_home):
        ConfigStore(mirror_home).set(schedule_hour=7)
        assert store.get().schedule_hour == 2
        assert store.load().schedule_hour == 7


class TestSetup:
    """Tests for configuring drives and finalizing."""

    def test_configure_strips_transient_fields(self, store):
        volume = VolumeIdentity(durable_id="U1", mount_path="/m/a", display_name="A", total_bytes=99)
        config = store.configure_source(volume)
        assert config.source == VolumeRef(durable_id="U1", mount_path="/m/a", display_name="A")
        raw = yaml.safe_load(store.path.read_text())
        assert "total_bytes" not in raw["source"]

    def test_same_drive_refused(self, store):
        store.configure_source(VolumeRef(durable_id="U1", mount_path="/m/a"))
        with pytest.raises(ValueError, match="source"):
            store.configure_backup(VolumeRef(durable_id="U1", mount_path="/m/b"))

    def test_same_path_refused(self, store):
        store.configure_backup(VolumeRef(durable_id="U2", mount_path="/m/b"))
        with pytest.raises(ValueError, match="backup"):
            store.configure_source(VolumeRef(durable_id="U1", mount_path="/m/b/"))

    def test_finalize_requires_both_drives(self, store):
        store.configure_source(VolumeRef(durable_id="U1", mount_path="/m/a"))
        assert store.finalize() is False
        assert store.get().is_configured is False

    def test_finalize_writes_marker_and_archive(self, configured_store, drives):
        _, backup, _ = drives
        config = configured_store.get()
        assert config.is_configured
        assert config.source.durable_id == SOURCE_ID
        assert config.backup.durable_id == BACKUP_ID
        marker = backup / ".safemirror_backup"
        assert marker.exists()
        assert SOURCE_ID in marker.read_text()
        assert config.archive_path.is_dir()

    def test_record_sync_result(self, configured_store):
        configured_store.record_sync_result(False, "Backup drive error: Drive is not mounted")
        config = configured_store.load()
        assert config.last_sync_success is False
        assert config.last_sync_time is not None
        assert config.last_sync_message == "Backup drive error: Drive is not mounted"

    def test_reset(self, configured_store, drives):
        _, backup, _ = drives
        configured_store.set_schedule(23, 45)
        configured_store.reset()
        config = configured_store.load()
        assert config == MirrorConfig()
        assert config.schedule_time_formatted == "2:00 AM"
        assert not (backup / ".safemirror_backup").exists()
        # Mirrored data is not touched
        assert (backup / "SafeMirror Backup").is_dir()

    def test_default_home(self, monkeypatch, tmp_path: Path):
        monkeypatch.setattr("safemirror.config.MIRROR_HOME", str(tmp_path / "elsewhere"))
        assert ConfigStore().path == tmp_path / "elsewhere" / CONFIG_FILENAME
