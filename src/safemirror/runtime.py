"""
Mirror runtime: wires the collaborators together.

Every component receives its dependencies here; nothing reaches for
shared global state. The CLI and the daemon each build one runtime.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from . import MIRROR_HOME
from .archive import ArchiveEngine
from .config import ConfigStore
from .copier import CopyInvoker
from .lock import SessionLock
from .notify import DesktopNotifier, Notifier
from .orchestrator import DEFAULT_COOLDOWN, SyncOrchestrator
from .scheduler import Scheduler
from .session_log import SessionLogger
from .volumes import DriveValidator, VolumeProbe

logger = logging.getLogger("safemirror.runtime")


class MirrorRuntime:
    """One fully wired mirror.

    Attributes:
        home: State directory.
        store: Configuration store.
        validator: Drive identity validator.
        session_log: Session logger shared by the pipeline steps.
        orchestrator: Sync state machine.
        scheduler: Daily timer around the orchestrator.
    """

    def __init__(
        self,
        home: Path,
        store: ConfigStore,
        validator: DriveValidator,
        session_log: SessionLogger,
        orchestrator: SyncOrchestrator,
        scheduler: Scheduler,
    ):
        self.home = home
        self.store = store
        self.validator = validator
        self.session_log = session_log
        self.orchestrator = orchestrator
        self.scheduler = scheduler

    @property
    def config(self):
        return self.store.get()


def build_runtime(
    home: Optional[Path] = None,
    probe: Optional[VolumeProbe] = None,
    notifier: Optional[Notifier] = None,
    lock_path: Optional[Path] = None,
    cooldown: float = DEFAULT_COOLDOWN,
) -> MirrorRuntime:
    """Build a runtime for ``home``.

    Args:
        home: State directory. Defaults to ~/.safemirror.
        probe: Volume probe. Defaults to findmnt.
        notifier: Notification sink. Defaults to desktop banners.
        lock_path: Session lock file. Defaults to the system temp dir.
        cooldown: Seconds a terminal status stays visible.

    Returns:
        A MirrorRuntime with every collaborator injected.
    """
    home = (home or Path(MIRROR_HOME)).expanduser()
    store = ConfigStore(home)
    config = store.get()

    session_log = SessionLogger(lambda: store.get().session_log_path)
    validator = DriveValidator(probe)
    orchestrator = SyncOrchestrator(
        store=store,
        validator=validator,
        archive_engine=ArchiveEngine(session_log=session_log),
        copy_invoker=CopyInvoker(rsync_path=config.rsync_path, session_log=session_log),
        lock=SessionLock(lock_path),
        session_log=session_log,
        notifier=notifier or DesktopNotifier(),
        cooldown=cooldown,
    )
    scheduler = Scheduler(store, orchestrator)
    logger.debug("Runtime built for %s", home)
    return MirrorRuntime(home, store, validator, session_log, orchestrator, scheduler)
