"""Daemon commands: start, stop, status."""

from __future__ import annotations

import json
import os
import signal
import sys
from pathlib import Path

import click
from rich.panel import Panel

from ._common import MIRROR_HOME, console, get_runtime
from ..daemon import DEFAULT_PORT
from ..orchestrator import DEFAULT_COOLDOWN


def register_daemon_commands(main: click.Group) -> None:
    """Register the daemon command group."""

    @main.group()
    def daemon():
        """Background daemon that runs the daily sync.

        Keeps the scheduler armed and exposes a local status API.
        """

    @daemon.command("start")
    @click.option("--home", default=MIRROR_HOME, type=click.Path())
    @click.option("--port", default=DEFAULT_PORT, show_default=True, help="API port.")
    def daemon_start(home: str, port: int):
        """Start the daemon in the foreground.

        Use a systemd user service or similar to keep it running in
        the background. Ctrl+C or SIGTERM stops it; a sync in flight
        is allowed to finish first.
        """
        from ..daemon import DaemonConfig, DaemonService, is_running

        home_path = Path(home).expanduser()
        if is_running(home_path):
            console.print("[yellow]Daemon is already running.[/]")
            sys.exit(0)

        config = DaemonConfig(home=home_path, port=port)
        svc = DaemonService(config, runtime=get_runtime(home, cooldown=DEFAULT_COOLDOWN))

        console.print(f"\n  [green]Starting daemon[/] on port [cyan]{port}[/]")
        console.print(f"  Log: {config.log_file}")
        console.print(f"  PID: {os.getpid()}")
        console.print("  [dim]Running in foreground (Ctrl+C to stop)[/]\n")
        svc.start()
        svc.run_forever()

    @daemon.command("stop")
    @click.option("--home", default=MIRROR_HOME, type=click.Path())
    def daemon_stop(home: str):
        """Stop the running daemon."""
        from ..daemon import PID_FILE, read_pid

        home_path = Path(home).expanduser()
        pid = read_pid(home_path)
        if pid is None:
            console.print("[yellow]Daemon is not running.[/]")
            return

        try:
            os.kill(pid, signal.SIGTERM)
            console.print(f"\n  [green]Sent SIGTERM to daemon (PID {pid})[/]\n")
        except ProcessLookupError:
            console.print("[yellow]Daemon process not found, cleaning up PID file.[/]")
            (home_path / PID_FILE).unlink(missing_ok=True)

    @daemon.command("status")
    @click.option("--home", default=MIRROR_HOME, type=click.Path())
    @click.option("--port", default=DEFAULT_PORT, show_default=True, help="API port to query.")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def daemon_status(home: str, port: int, json_out: bool):
        """Show daemon status."""
        from ..daemon import get_daemon_status, read_pid

        home_path = Path(home).expanduser()
        pid = read_pid(home_path)
        if pid is None:
            if json_out:
                click.echo(json.dumps({"running": False}))
            else:
                console.print("\n  [yellow]Daemon is not running.[/]\n")
            return

        status = get_daemon_status(port)
        if json_out:
            click.echo(json.dumps(status or {"running": True, "pid": pid, "api": "unreachable"}, indent=2))
            return

        if not status:
            console.print(f"\n  [green]Daemon running[/] (PID {pid})")
            console.print(f"  [yellow]API unreachable on port {port}[/]\n")
            return

        uptime = status.get("uptime_seconds", 0)
        h, remainder = divmod(int(uptime), 3600)
        m, s = divmod(remainder, 60)
        uptime_str = f"{h}h {m}m {s}s" if h else f"{m}m {s}s"
        sync = status.get("sync", {})

        console.print()
        console.print(
            Panel(
                f"PID: [bold]{status.get('pid')}[/]\n"
                f"Uptime: [bold]{uptime_str}[/]\n"
                f"Sync: [bold]{sync.get('status', 'unknown')}[/]\n"
                f"Next sync: {status.get('next_sync')} (in {status.get('time_until_next_sync')})\n"
                f"Sessions: {sync.get('sessions_completed', 0)} completed, "
                f"{sync.get('sessions_failed', 0)} failed\n"
                f"API: [green]http://127.0.0.1:{port}[/]",
                title="[green]Daemon Running[/]",
                border_style="green",
            )
        )

        errors = status.get("recent_errors", [])
        if errors:
            console.print(f"\n[yellow]Recent errors ({len(errors)}):[/]")
            for err in errors[-5:]:
                console.print(f"  [dim]{err}[/]")
        console.print()
