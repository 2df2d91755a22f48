"""
SafeMirror daemon: the always-on mirror.

Runs the daily scheduler in the background, writes a PID file, stops
cleanly on SIGTERM/SIGINT, and exposes a small local HTTP API so the
CLI can see what the mirror is doing without touching the drives.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Optional

from . import MIRROR_HOME
from .models import SyncPhase
from .runtime import MirrorRuntime, build_runtime

logger = logging.getLogger("safemirror.daemon")

DEFAULT_PORT = 7787
PID_FILE = "daemon.pid"
LOG_DIR = "logs"
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


class DaemonConfig:
    """Configuration for the daemon process.

    Attributes:
        home: Mirror state directory.
        port: HTTP API port for local queries.
        log_file: Path for daemon log output.
    """

    def __init__(self, home: Optional[Path] = None, port: int = DEFAULT_PORT):
        self.home = (home or Path(MIRROR_HOME)).expanduser()
        self.port = port

        log_dir = self.home / LOG_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        self.log_file = log_dir / "daemon.log"


class DaemonState:
    """Thread-safe daemon bookkeeping. All access is lock-protected."""

    def __init__(self):
        self._lock = threading.Lock()
        self.started_at: Optional[datetime] = None
        self.manual_syncs: int = 0
        self.errors: list[str] = []
        self.running: bool = False

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "running": self.running,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "uptime_seconds": (
                    (datetime.now(timezone.utc) - self.started_at).total_seconds()
                    if self.started_at
                    else 0
                ),
                "manual_syncs": self.manual_syncs,
                "recent_errors": self.errors[-10:],
                "pid": os.getpid(),
            }

    def record_manual_sync(self) -> None:
        with self._lock:
            self.manual_syncs += 1

    def record_error(self, error: str) -> None:
        """Record an error, keeping only the last 50."""
        with self._lock:
            ts = datetime.now(timezone.utc).isoformat()
            self.errors.append(f"[{ts}] {error}")
            if len(self.errors) > 50:
                self.errors = self.errors[-50:]


class DaemonService:
    """The mirror daemon process.

    Args:
        config: Daemon configuration.
        runtime: Pre-built runtime. Built from ``config.home`` if omitted.
    """

    def __init__(self, config: DaemonConfig, runtime: Optional[MirrorRuntime] = None):
        self.config = config
        self.runtime = runtime or build_runtime(config.home)
        self.state = DaemonState()
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._server: Optional[HTTPServer] = None
        self._log_handler: Optional[logging.Handler] = None
        self._prev_level = logging.NOTSET

    def start(self) -> None:
        """Start the daemon: PID file, logging, signals, scheduler, API."""
        self._write_pid()
        self._setup_logging()
        self._setup_signals()

        self.state.running = True
        self.state.started_at = datetime.now(timezone.utc)
        logger.info("Daemon starting - home=%s port=%d", self.config.home, self.config.port)

        if not self.runtime.scheduler.start():
            self.state.record_error("Scheduler not started: mirror is not configured")

        self._start_api_server()
        logger.info("Daemon started - PID %d", os.getpid())

    def stop(self) -> None:
        """Stop the scheduler and the API. A sync in flight finishes on its own."""
        logger.info("Daemon stopping...")
        self._stop_event.set()
        self.state.running = False

        self.runtime.scheduler.stop()
        self.runtime.orchestrator.shutdown()
        if self._server:
            self._server.shutdown()
            self._server.server_close()

        for t in self._threads:
            t.join(timeout=5)

        self._remove_pid()
        logger.info("Daemon stopped.")
        if self._log_handler is not None:
            root = logging.getLogger()
            root.removeHandler(self._log_handler)
            root.setLevel(self._prev_level)
            self._log_handler.close()
            self._log_handler = None

    def run_forever(self) -> None:
        """Block until stop is signaled."""
        try:
            while not self._stop_event.is_set():
                self._stop_event.wait(timeout=1)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def trigger_sync(self) -> bool:
        """Start a manual sync in the background.

        Returns:
            False unless the orchestrator is idle. A finished session
            still in its cooldown counts as busy.
        """
        if self.runtime.orchestrator.status.phase != SyncPhase.IDLE:
            return False
        self.state.record_manual_sync()
        t = threading.Thread(target=self._manual_sync, name="daemon-manual-sync", daemon=True)
        t.start()
        return True

    def _manual_sync(self) -> None:
        try:
            self.runtime.scheduler.trigger_manual_sync()
        except Exception as exc:
            logger.error("Manual sync error: %s", exc)
            self.state.record_error(f"Manual sync: {exc}")

    def status(self) -> dict:
        """Daemon, scheduler, and orchestrator state in one dict."""
        config = self.runtime.store.get()
        scheduler = self.runtime.scheduler
        return {
            **self.state.snapshot(),
            "configured": config.is_configured,
            "source": config.source.model_dump() if config.source else None,
            "backup": config.backup.model_dump() if config.backup else None,
            "schedule": config.schedule_time_formatted,
            "scheduler_enabled": scheduler.is_enabled,
            "next_sync": scheduler.next_sync_description,
            "time_until_next_sync": scheduler.time_until_next_sync,
            "last_sync_time": config.last_sync_time.isoformat() if config.last_sync_time else None,
            "last_sync_success": config.last_sync_success,
            "last_sync_message": config.last_sync_message,
            "sync": self.runtime.orchestrator.state.snapshot(),
        }

    def _start_api_server(self) -> None:
        """Start the local HTTP API server in a background thread."""
        service = self

        class DaemonHandler(BaseHTTPRequestHandler):
            """HTTP handler for the daemon API."""

            def do_GET(self):
                if self.path == "/status":
                    self._json_response(service.status())
                elif self.path == "/log":
                    entries = [
                        {"timestamp": e.formatted_timestamp, "level": e.level.value, "message": e.message}
                        for e in list(service.runtime.session_log.recent_entries)
                    ]
                    self._json_response({"entries": entries})
                elif self.path == "/ping":
                    self._json_response({"pong": True, "pid": os.getpid()})
                else:
                    self._json_response({"endpoints": ["/status", "/log", "/ping", "POST /sync"]})

            def do_POST(self):
                if self.path != "/sync":
                    self._json_response({"error": "not found"}, status=404)
                elif service.trigger_sync():
                    self._json_response({"started": True}, status=202)
                else:
                    self._json_response({"started": False, "reason": "sync in progress"}, status=409)

            def _json_response(self, data: dict, status: int = 200):
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.end_headers()
                self.wfile.write(json.dumps(data, indent=2, default=str).encode())

            def log_message(self, format, *args):
                logger.debug("API: %s", format % args)

        try:
            self._server = HTTPServer(("127.0.0.1", self.config.port), DaemonHandler)
            t = threading.Thread(target=self._server.serve_forever, name="daemon-api", daemon=True)
            t.start()
            self._threads.append(t)
            logger.info("API server listening on http://127.0.0.1:%d", self.config.port)
        except OSError as exc:
            logger.error("Failed to start API server: %s", exc)
            self.state.record_error(f"API server: {exc}")

    def _setup_logging(self) -> None:
        handler = logging.FileHandler(self.config.log_file)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root = logging.getLogger()
        root.addHandler(handler)
        self._prev_level = root.level
        root.setLevel(logging.INFO)
        self._log_handler = handler

    def _setup_signals(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum, frame):
        logger.info("Received signal %s - stopping", signal.Signals(signum).name)
        self._stop_event.set()

    def _write_pid(self) -> None:
        pid_path = self.config.home / PID_FILE
        pid_path.parent.mkdir(parents=True, exist_ok=True)
        pid_path.write_text(str(os.getpid()), encoding="utf-8")

    def _remove_pid(self) -> None:
        pid_path = self.config.home / PID_FILE
        if pid_path.exists():
            pid_path.unlink()


def read_pid(home: Optional[Path] = None) -> Optional[int]:
    """Read the daemon PID from the PID file.

    Args:
        home: Mirror state directory.

    Returns:
        PID as int, or None if not running. A stale file is removed.
    """
    home = (home or Path(MIRROR_HOME)).expanduser()
    pid_path = home / PID_FILE
    if not pid_path.exists():
        return None
    try:
        pid = int(pid_path.read_text(encoding="utf-8").strip())
        os.kill(pid, 0)
        return pid
    except (ValueError, ProcessLookupError, PermissionError):
        pid_path.unlink(missing_ok=True)
        return None


def is_running(home: Optional[Path] = None) -> bool:
    return read_pid(home) is not None


def get_daemon_status(port: int = DEFAULT_PORT) -> Optional[dict]:
    """Query the running daemon's status via the HTTP API.

    Returns:
        Status dict from the daemon, or None if unreachable.
    """
    import urllib.error
    import urllib.request

    try:
        url = f"http://127.0.0.1:{port}/status"
        with urllib.request.urlopen(url, timeout=3) as resp:
            return json.loads(resp.read())
    except (urllib.error.URLError, OSError, json.JSONDecodeError):
        return None
