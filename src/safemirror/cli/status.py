"""Status command: configuration, drive health, last result."""

from __future__ import annotations

import click
from rich.panel import Panel
from rich.table import Table

from ._common import MIRROR_HOME, console, get_runtime, validation_icon
from ..daemon import DEFAULT_PORT, get_daemon_status, is_running


def register_status_commands(main: click.Group) -> None:
    """Register the status command."""

    @main.command()
    @click.option("--home", default=MIRROR_HOME, type=click.Path())
    @click.option("--port", default=DEFAULT_PORT, show_default=True, help="Daemon API port to query.")
    def status(home: str, port: int):
        """Show the mirror's configuration and current state."""
        runtime = get_runtime(home)
        config = runtime.store.load()

        if not config.is_configured:
            console.print(
                "\n  [yellow]Not configured.[/] "
                "Run [bold]safemirror setup --source PATH --backup PATH[/] first.\n"
            )
            return

        if config.last_sync_time is None:
            last = "[dim]never[/]"
        elif config.last_sync_success:
            last = f"[green]succeeded[/] {config.time_since_last_sync}"
        else:
            last = f"[red]failed[/] {config.time_since_last_sync}"

        lines = [
            f"Source: [bold]{config.source.display_name}[/] [dim]{config.source.mount_path}[/]",
            f"Backup: [bold]{config.backup.display_name}[/] [dim]{config.backup.mount_path}[/]",
            f"Daily sync: [bold]{config.schedule_time_formatted}[/] "
            f"(next: {runtime.scheduler.next_sync_description}, in {runtime.scheduler.time_until_next_sync})",
            f"Last sync: {last}",
        ]
        if config.last_sync_message:
            lines.append(f"  [dim]{config.last_sync_message}[/]")
        if config.is_backup_overdue:
            lines.append("[bold yellow]Backup is overdue.[/]")

        console.print()
        console.print(Panel("\n".join(lines), title="SafeMirror", border_style="bright_blue"))

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Drive", style="bold")
        table.add_column("Check")
        conflict = runtime.validator.check_distinct(config)
        if conflict:
            table.add_row("Both", f"[bold red]{conflict}[/]")
        else:
            table.add_row("Source", validation_icon(runtime.validator.validate_source(config)))
            table.add_row("Backup", validation_icon(runtime.validator.validate_backup(config, create=False)))
        console.print(table)

        if is_running(runtime.home):
            daemon = get_daemon_status(port)
            if daemon:
                sync = daemon.get("sync", {})
                console.print(
                    f"\n  Daemon: [green]running[/] (PID {daemon.get('pid')}) - {sync.get('status', 'unknown')}"
                )
                if sync.get("is_running"):
                    console.print(
                        f"  Progress: {sync.get('progress', 0) * 100:.0f}% "
                        f"[dim]{sync.get('current_file', '')}[/]"
                    )
            else:
                console.print(f"\n  Daemon: [yellow]running, API unreachable on port {port}[/]")
        else:
            console.print("\n  Daemon: [dim]not running[/]")
        console.print()
