"""Shared test fixtures for safemirror."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Optional

import pytest

from safemirror.archive import ArchiveEngine
from safemirror.config import ConfigStore
from safemirror.copier import CopyResult
from safemirror.lock import SessionLock
from safemirror.models import VolumeIdentity
from safemirror.notify import LogNotifier
from safemirror.orchestrator import SyncOrchestrator
from safemirror.runtime import MirrorRuntime
from safemirror.scheduler import Scheduler
from safemirror.session_log import SessionLogger
from safemirror.volumes import DriveValidator, VolumeProbe

SOURCE_ID = "1111-AAAA"
BACKUP_ID = "2222-BBBB"


class FakeProbe(VolumeProbe):
    """Maps mount points to identities; a path belongs to the longest matching mount."""

    def __init__(self):
        self.volumes: dict[str, VolumeIdentity] = {}

    def add(self, mount: Path, durable_id: str, name: str, writable: bool = True) -> VolumeIdentity:
        identity = VolumeIdentity(
            durable_id=durable_id,
            mount_path=str(mount),
            display_name=name,
            total_bytes=1000,
            free_bytes=250,
            is_writable=writable,
            fstype="ext4",
        )
        self.volumes[str(mount)] = identity
        return identity

    def probe(self, path: Path) -> Optional[VolumeIdentity]:
        path = os.path.normpath(str(path))
        best = None
        for mount, identity in self.volumes.items():
            if path == mount or path.startswith(mount + os.sep):
                if best is None or len(mount) > len(best[0]):
                    best = (mount, identity)
        if best is None:
            return None
        return best[1].model_copy(update={"mount_path": path})

    def mounts(self) -> list[VolumeIdentity]:
        return list(self.volumes.values())


class FakeCopier:
    """Stands in for CopyInvoker: records calls, optionally runs a callable."""

    def __init__(self, action: Optional[Callable] = None, files_copied: int = 0):
        self.calls: list[tuple[Path, Path]] = []
        self.action = action
        self.files_copied = files_copied

    def run(self, source_root, backup_root, exclusions=None, on_progress=None) -> CopyResult:
        self.calls.append((Path(source_root), Path(backup_root)))
        if self.action is not None:
            self.action(source_root, backup_root, on_progress)
        return CopyResult(files_copied=self.files_copied)


def tree_snapshot(root: Path) -> dict[str, tuple[bytes, int]]:
    """Every file under root with its bytes and mtime."""
    snap = {}
    for dirpath, _dirs, files in os.walk(root):
        for name in files:
            full = Path(dirpath) / name
            snap[str(full.relative_to(root))] = (full.read_bytes(), full.stat().st_mtime_ns)
    return snap


@pytest.fixture
def mirror_home(tmp_path: Path) -> Path:
    """Provide a temporary state directory."""
    home = tmp_path / ".safemirror"
    home.mkdir()
    return home


@pytest.fixture
def drives(tmp_path: Path):
    """Source and backup 'drives' as plain folders, plus a probe that knows them."""
    source = tmp_path / "source"
    backup = tmp_path / "backup"
    source.mkdir()
    backup.mkdir()
    probe = FakeProbe()
    probe.add(source, SOURCE_ID, "Photos")
    probe.add(backup, BACKUP_ID, "Mirror")
    return source, backup, probe


@pytest.fixture
def store(mirror_home: Path) -> ConfigStore:
    return ConfigStore(mirror_home)


@pytest.fixture
def configured_store(store: ConfigStore, drives) -> ConfigStore:
    """A store that has gone through setup: identities, marker, archive root."""
    _, _, probe = drives
    validator = DriveValidator(probe)
    source, backup, _ = drives
    store.configure_source(validator.resolve(source))
    store.configure_backup(validator.resolve(backup))
    assert store.finalize()
    return store


@pytest.fixture
def make_orchestrator(configured_store: ConfigStore, drives, tmp_path: Path):
    """Factory for an orchestrator wired to the fake drives."""
    _, _, probe = drives

    def factory(copier=None, clock=None, lock_path: Optional[Path] = None) -> SyncOrchestrator:
        session_log = SessionLogger(lambda: configured_store.get().session_log_path)
        engine = ArchiveEngine(session_log=session_log, **({"clock": clock} if clock else {}))
        return SyncOrchestrator(
            store=configured_store,
            validator=DriveValidator(probe),
            archive_engine=engine,
            copy_invoker=copier if copier is not None else FakeCopier(),
            lock=SessionLock(lock_path or tmp_path / "sync.lock"),
            session_log=session_log,
            notifier=LogNotifier(),
            cooldown=0,
        )

    return factory


@pytest.fixture
def runtime_factory(drives, tmp_path: Path):
    """Builds runtimes like build_runtime, but on the fake probe and a private lock."""
    _, _, probe = drives

    def factory(home: Path, cooldown: float = 0.0, copier=None) -> MirrorRuntime:
        store = ConfigStore(home)
        session_log = SessionLogger(lambda: store.get().session_log_path)
        validator = DriveValidator(probe)
        orchestrator = SyncOrchestrator(
            store=store,
            validator=validator,
            archive_engine=ArchiveEngine(session_log=session_log),
            copy_invoker=copier if copier is not None else FakeCopier(),
            lock=SessionLock(tmp_path / "sync.lock"),
            session_log=session_log,
            notifier=LogNotifier(),
            cooldown=cooldown,
        )
        return MirrorRuntime(home, store, validator, session_log, orchestrator, Scheduler(store, orchestrator))

    return factory
