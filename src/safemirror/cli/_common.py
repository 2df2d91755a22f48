"""Shared utilities for all CLI command modules.

Provides the Rich console instance, formatting helpers, and the
runtime factory every command builds its collaborators from.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from rich.console import Console

from .. import MIRROR_HOME
from ..daemon import LOG_FORMAT
from ..models import ValidationResult
from ..runtime import MirrorRuntime, build_runtime

console = Console()
logger = logging.getLogger("safemirror.cli")

# Swapped out in tests
runtime_factory = build_runtime


def setup_verbose_logging() -> None:
    """Send DEBUG logging to stderr in the daemon's format."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG)


def get_runtime(home: str, cooldown: float = 0.0) -> MirrorRuntime:
    """Build a runtime rooted at ``home``.

    CLI sessions skip the post-sync cooldown; the result is printed
    right away instead of lingering in a status display.
    """
    return runtime_factory(Path(home).expanduser(), cooldown=cooldown)


def fail(message: str) -> None:
    """Print an error and exit 1."""
    console.print(f"[bold red]Error:[/] {message}")
    sys.exit(1)


def validation_icon(result: ValidationResult) -> str:
    """Rich markup for a drive validation result."""
    if result.is_valid:
        return "[bold green]OK[/]"
    return f"[bold red]{result.status.value.upper()}[/] [dim]{result.error_message}[/]"


def format_bytes(count: int) -> str:
    """Human-readable size, e.g. 1.5 TB."""
    size = float(count)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size < 1024 or unit == "TB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return ""
