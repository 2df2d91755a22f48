"""
SafeMirror CLI: one-way drive mirroring from the command line.

Each command group lives in its own module and is registered on the
main Click group through a register function.

Entry point: safemirror.cli:main
"""

from __future__ import annotations

import click

from .. import __version__
from ._common import setup_verbose_logging


@click.group()
@click.version_option(version=__version__, prog_name="safemirror")
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr.")
def main(verbose: bool):
    """SafeMirror: mirror one drive onto another, never deleting.

    Files removed from the source are moved into a dated archive on
    the backup drive instead of being deleted.
    """
    if verbose:
        setup_verbose_logging()


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .setup import register_setup_commands
from .volumes import register_volumes_commands
from .status import register_status_commands
from .sync_cmd import register_sync_commands
from .schedule import register_schedule_commands
from .log import register_log_commands
from .daemon import register_daemon_commands

register_setup_commands(main)
register_volumes_commands(main)
register_status_commands(main)
register_sync_commands(main)
register_schedule_commands(main)
register_log_commands(main)
register_daemon_commands(main)
