"""
Operator notifications: one banner per sync session.

Delivery is best effort: a missing notifier binary or a dead desktop
session is logged and never fails the sync that triggered it.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from abc import ABC, abstractmethod

logger = logging.getLogger("safemirror.notify")

NOTIFY_BIN = "notify-send"
APP_NAME = "SafeMirror"


class Notifier(ABC):
    """Receives human-readable session outcomes."""

    @abstractmethod
    def notify(self, title: str, body: str) -> None:
        """Deliver one notification."""


class LogNotifier(Notifier):
    """Writes notifications to the log. Used headless and in tests."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []

    def notify(self, title: str, body: str) -> None:
        self.sent.append((title, body))
        logger.info("%s: %s", title, body)


class DesktopNotifier(Notifier):
    """Desktop banners through ``notify-send``, falling back to the log."""

    def __init__(self, binary: str = NOTIFY_BIN):
        self.binary = binary

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def notify(self, title: str, body: str) -> None:
        logger.info("%s: %s", title, body)
        if not self.available():
            logger.debug("%s not available; notification logged only", self.binary)
            return
        try:
            subprocess.run(
                [self.binary, "--app-name", APP_NAME, title, body],
                capture_output=True, text=True, timeout=10, check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Notification failed: %s", exc)
