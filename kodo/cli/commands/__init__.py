"""CLI command modules for Kodo.

Each module holds the handlers for one command group.
"""

from kodo.cli.commands.curate import cmd_curate
from kodo.cli.commands.extract import cmd_extract, cmd_reflect
from kodo.cli.commands.flow import cmd_flow
from kodo.cli.commands.init import cmd_init
from kodo.cli.commands.maintenance import cmd_compact, cmd_rebuild, cmd_repair, cmd_status
from kodo.cli.commands.query import cmd_query
from kodo.cli.commands.sync import cmd_sync

__all__ = [
    "cmd_compact",
    "cmd_curate",
    "cmd_extract",
    "cmd_flow",
    "cmd_init",
    "cmd_query",
    "cmd_rebuild",
    "cmd_repair",
    "cmd_reflect",
    "cmd_status",
    "cmd_sync",
]
