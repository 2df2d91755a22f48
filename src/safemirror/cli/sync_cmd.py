"""Sync command: run one session now."""

from __future__ import annotations

import sys

import click
from rich.panel import Panel

from ._common import MIRROR_HOME, console, get_runtime


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command."""

    @main.command()
    @click.option("--home", default=MIRROR_HOME, type=click.Path())
    def sync(home: str):
        """Run a sync now, in this process.

        The session lock keeps this from overlapping a scheduled sync
        run by the daemon.
        """
        runtime = get_runtime(home)
        if not runtime.store.get().is_configured:
            console.print("[bold red]Not configured.[/] Run [bold]safemirror setup[/] first.")
            sys.exit(1)

        with console.status("[bold cyan]Syncing...[/]"):
            ok = runtime.scheduler.trigger_manual_sync()

        config = runtime.store.get()
        console.print()
        if ok:
            console.print(
                Panel(config.last_sync_message, title="[green]Backup Complete[/]", border_style="green")
            )
            console.print()
            return

        reason = config.last_sync_message or runtime.orchestrator.state.last_error or "Sync refused"
        console.print(Panel(reason, title="[red]Backup Failed[/]", border_style="red"))
        console.print()
        sys.exit(1)
