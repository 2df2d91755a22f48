"""Log command: show the session log from the backup drive."""

from __future__ import annotations

import click

from ._common import MIRROR_HOME, console, get_runtime


def register_log_commands(main: click.Group) -> None:
    """Register the log command."""

    @main.command()
    @click.option("--lines", "-n", default=50, help="Number of lines (default: 50, 0 for all).")
    @click.option("--home", default=MIRROR_HOME, type=click.Path())
    def log(lines: int, home: str):
        """Show the end of the session log kept on the backup drive."""
        runtime = get_runtime(home)
        path = runtime.session_log.log_file
        if path is None or not path.exists():
            console.print("[dim]No log file found or unable to read log.[/]")
            return
        text = runtime.session_log.read_log_file().splitlines()
        if lines > 0:
            text = text[-lines:]
        click.echo("\n".join(text))
