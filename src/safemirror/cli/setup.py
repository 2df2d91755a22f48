"""Setup commands: choose the source and backup drives."""

from __future__ import annotations

import click
from pydantic import ValidationError
from rich.panel import Panel

from ._common import MIRROR_HOME, console, fail, get_runtime


def register_setup_commands(main: click.Group) -> None:
    """Register the setup command."""

    @main.command()
    @click.option("--source", "source_path", required=True, type=click.Path(exists=True, file_okay=False),
                  help="Mount point (or any folder) of the drive to mirror.")
    @click.option("--backup", "backup_path", required=True, type=click.Path(exists=True, file_okay=False),
                  help="Mount point of the drive that receives the mirror.")
    @click.option("--hour", default=2, show_default=True, help="Daily sync hour (0-23).")
    @click.option("--minute", default=0, show_default=True, type=click.Choice(["0", "15", "30", "45"]),
                  help="Daily sync minute.")
    @click.option("--home", default=MIRROR_HOME, type=click.Path())
    def setup(source_path: str, backup_path: str, hour: int, minute: str, home: str):
        """Configure the mirror and mark the backup drive.

        Both paths are resolved to their volumes' durable identifiers.
        A marker file is written to the backup drive's root; syncs
        refuse any drive that lacks it.

        Examples:

            safemirror setup --source /media/me/Photos --backup /media/me/Mirror

            safemirror setup --source /mnt/data --backup /mnt/usb --hour 23 --minute 30
        """
        runtime = get_runtime(home)
        store = runtime.store

        if store.get().is_configured:
            fail("Already configured. Run [bold]safemirror reset --yes[/] first.")

        source = runtime.validator.resolve(source_path)
        if source is None:
            fail(f"{source_path} is not on a volume with a durable identifier.")
        backup = runtime.validator.resolve(backup_path)
        if backup is None:
            fail(f"{backup_path} is not on a volume with a durable identifier.")
        if source.durable_id == backup.durable_id:
            fail(f"Source and backup are on the same drive ({source.durable_id}).")
        if not backup.is_writable:
            fail(f"Backup drive {backup.display_name} is not writable.")

        try:
            store.configure_source(source)
            store.configure_backup(backup)
            store.set_schedule(hour, int(minute))
        except (ValueError, ValidationError) as exc:
            fail(str(exc))

        if not store.finalize():
            fail("Could not write the backup marker. Check the log for details.")

        config = store.get()
        console.print()
        console.print(
            Panel(
                f"Source: [bold]{source.display_name}[/] [dim]{source.mount_path} ({source.durable_id})[/]\n"
                f"Backup: [bold]{backup.display_name}[/] [dim]{backup.mount_path} ({backup.durable_id})[/]\n"
                f"Mirror folder: [cyan]{config.backup_destination_path}[/]\n"
                f"Archive: [cyan]{config.archive_path}[/]\n"
                f"Daily sync: [bold]{config.schedule_time_formatted}[/]",
                title="[green]SafeMirror configured[/]",
                border_style="green",
            )
        )
        console.print("  Run [bold]safemirror sync[/] now, or [bold]safemirror daemon start[/] for daily syncs.\n")

    @main.command()
    @click.option("--home", default=MIRROR_HOME, type=click.Path())
    @click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
    def reset(home: str, yes: bool):
        """Forget the configured drives and remove the backup marker.

        Mirrored files and the archive on the backup drive are left alone.
        """
        if not yes and not click.confirm("Reset SafeMirror configuration?"):
            console.print("[yellow]Aborted.[/]")
            return
        runtime = get_runtime(home)
        runtime.store.reset()
        console.print("\n  [green]Configuration reset.[/] Run [bold]safemirror setup[/] to start over.\n")
