"""Schedule command: change the daily sync time."""

from __future__ import annotations

import click
from pydantic import ValidationError

from ._common import MIRROR_HOME, console, fail, get_runtime


def register_schedule_commands(main: click.Group) -> None:
    """Register the schedule command."""

    @main.command()
    @click.argument("hour", type=click.IntRange(0, 23))
    @click.argument("minute", type=click.Choice(["0", "15", "30", "45"]))
    @click.option("--home", default=MIRROR_HOME, type=click.Path())
    def schedule(hour: int, minute: str, home: str):
        """Set the daily sync time.

        A running daemon picks up the new time within a minute.

        Examples:

            safemirror schedule 2 0

            safemirror schedule 23 45
        """
        runtime = get_runtime(home)
        try:
            runtime.scheduler.update_schedule(hour, int(minute))
        except ValidationError as exc:
            fail(str(exc))
        config = runtime.store.get()
        console.print(f"\n  [green]Daily sync set to[/] [bold]{config.schedule_time_formatted}[/]\n")
