"""
Scheduler: one sync per day at the configured time.

A single background thread keeps exactly one pending fire time while
enabled. Waits are sliced so wall-clock jumps (suspend/resume, NTP
corrections) are noticed within a minute. After every fire the next
occurrence is re-armed, whatever the outcome of the sync.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, time, timedelta
from typing import Callable, Optional

from .config import ConfigStore
from .orchestrator import SyncOrchestrator

logger = logging.getLogger("safemirror.scheduler")

MAX_WAIT_SECONDS = 60.0


def next_occurrence(hour: int, minute: int, now: datetime) -> datetime:
    """Next wall-clock ``hour:minute`` strictly after ``now``.

    Args:
        hour: 0..23.
        minute: 0..59.
        now: Current local time.

    Returns:
        Today at that time if still ahead, otherwise tomorrow.
    """
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def _clock_text(when: datetime) -> str:
    return time(when.hour, when.minute).strftime("%I:%M %p").lstrip("0")


class Scheduler:
    """Fires the orchestrator daily at ``schedule_hour:schedule_minute``.

    Args:
        store: Configuration store holding the schedule.
        orchestrator: Runs the sync when the timer fires.
        clock: Wall-clock source.
        max_wait: Longest single sleep, in seconds.
    """

    def __init__(
        self,
        store: ConfigStore,
        orchestrator: SyncOrchestrator,
        clock: Callable[[], datetime] = datetime.now,
        max_wait: float = MAX_WAIT_SECONDS,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.clock = clock
        self.max_wait = max_wait
        self.next_fire: Optional[datetime] = None
        self.fires: int = 0
        self._armed_for: Optional[tuple[int, int]] = None
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_enabled(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """Arm the next occurrence and start the timer thread.

        Returns:
            False if the mirror is not configured yet.
        """
        config = self.store.get()
        if not config.is_configured:
            logger.warning("Cannot start scheduler - not configured")
            return False
        if self.is_enabled:
            return True

        self._stop_event.clear()
        self._arm()
        self._thread = threading.Thread(target=self._loop, name="safemirror-scheduler", daemon=True)
        self._thread.start()
        logger.info("Scheduler started - next sync at %s", config.schedule_time_formatted)
        return True

    def stop(self) -> None:
        """Disarm the timer and stop the thread. A running sync is not interrupted."""
        self._stop_event.set()
        self._wake.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)
        self._thread = None
        with self._lock:
            self.next_fire = None
        logger.info("Scheduler stopped")

    def update_schedule(self, hour: int, minute: int) -> None:
        """Persist a new daily time and re-arm if the scheduler is running.

        Raises:
            pydantic.ValidationError: If the time is out of range.
        """
        config = self.store.set_schedule(hour, minute)
        if self.is_enabled:
            self._arm()
            self._wake.set()
        logger.info("Schedule updated to %s", config.schedule_time_formatted)

    def trigger_manual_sync(self) -> bool:
        """Run a sync now on the calling thread. The standing schedule is untouched."""
        logger.info("Manual sync triggered")
        return self.orchestrator.perform_sync()

    def _arm(self, config=None) -> datetime:
        config = config or self.store.get()
        fire = next_occurrence(config.schedule_hour, config.schedule_minute, self.clock())
        with self._lock:
            self.next_fire = fire
            self._armed_for = (config.schedule_hour, config.schedule_minute)
        logger.debug("Next sync armed for %s", fire.isoformat())
        return fire

    def _refresh(self) -> None:
        # Another process (the CLI) may have changed the schedule on disk
        try:
            config = self.store.load()
        except OSError as exc:
            logger.warning("Could not re-read schedule, keeping %s: %s", self.next_fire, exc)
            return
        if (config.schedule_hour, config.schedule_minute) != self._armed_for:
            self._arm(config)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self._refresh()
            with self._lock:
                fire = self.next_fire
            if fire is None:
                break

            remaining = (fire - self.clock()).total_seconds()
            if remaining > 0:
                self._wake.wait(timeout=min(remaining, self.max_wait))
                self._wake.clear()
                continue

            self._fire()

    def _fire(self) -> None:
        logger.info("Starting scheduled sync...")
        self.fires += 1
        try:
            if self.orchestrator.perform_sync():
                logger.info("Scheduled sync completed successfully")
            else:
                logger.error("Scheduled sync failed")
        except Exception:
            logger.exception("Scheduled sync raised")
        finally:
            if not self._stop_event.is_set():
                self._arm()

    # -- display -------------------------------------------------------------

    def _upcoming(self) -> Optional[datetime]:
        with self._lock:
            if self.next_fire is not None:
                return self.next_fire
        config = self.store.get()
        if not config.is_configured:
            return None
        return next_occurrence(config.schedule_hour, config.schedule_minute, self.clock())

    @property
    def next_sync_description(self) -> str:
        upcoming = self._upcoming()
        if upcoming is None:
            return "Not scheduled"
        today = self.clock().date()
        if upcoming.date() == today:
            return f"Today at {_clock_text(upcoming)}"
        if upcoming.date() == today + timedelta(days=1):
            return f"Tomorrow at {_clock_text(upcoming)}"
        return f"{upcoming.strftime('%A')} at {_clock_text(upcoming)}"

    @property
    def time_until_next_sync(self) -> str:
        upcoming = self._upcoming()
        if upcoming is None:
            return "N/A"
        seconds = int((upcoming - self.clock()).total_seconds())
        if seconds <= 0:
            return "Now"
        hours, rest = divmod(seconds, 3600)
        minutes = rest // 60
        if hours > 0:
            return f"{hours}h {minutes}m"
        return f"{minutes}m"
