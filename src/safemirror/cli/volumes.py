"""Volume discovery command."""

from __future__ import annotations

import json

import click
from rich.table import Table

from ._common import MIRROR_HOME, console, format_bytes, get_runtime


def register_volumes_commands(main: click.Group) -> None:
    """Register the volumes command."""

    @main.command()
    @click.option("--home", default=MIRROR_HOME, type=click.Path())
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def volumes(home: str, json_out: bool):
        """List mounted drives that can be used as source or backup."""
        runtime = get_runtime(home)
        config = runtime.store.get()
        found = runtime.validator.discover_volumes()

        if json_out:
            click.echo(json.dumps([v.model_dump() for v in found], indent=2))
            return

        if not found:
            console.print("\n  [yellow]No eligible drives found.[/]\n")
            return

        roles = {}
        if config.source:
            roles[config.source.durable_id] = "[cyan]source[/]"
        if config.backup:
            roles[config.backup.durable_id] = "[magenta]backup[/]"

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Name", style="bold")
        table.add_column("Mount")
        table.add_column("UUID", style="dim")
        table.add_column("FS")
        table.add_column("Size", justify="right")
        table.add_column("Used", justify="right")
        table.add_column("Writable")
        table.add_column("Role")

        for v in found:
            table.add_row(
                v.display_name,
                v.mount_path,
                v.durable_id,
                v.fstype,
                format_bytes(v.total_bytes),
                f"{v.used_percentage:.0f}%",
                "[green]yes[/]" if v.is_writable else "[red]no[/]",
                roles.get(v.durable_id, ""),
            )

        console.print()
        console.print(table)
        console.print()
