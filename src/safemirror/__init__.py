"""
SafeMirror: unattended one-way drive mirroring.

Mirrors a source volume onto a backup volume every day.
Nothing that already lives on the backup is ever lost:
files that vanished from the source are archived, never deleted.
"""

import os

__version__ = "0.1.0"
__author__ = "safemirror"

MIRROR_HOME = os.environ.get("SAFEMIRROR_HOME", "~/.safemirror")
