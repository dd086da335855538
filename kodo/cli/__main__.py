"""
Kodo CLI - command-line interface for the project knowledge base.

Usage:
    kodo init
    kodo query TEXT [--category C]... [--confidence L] [--recent DAYS] [--json]
    kodo curate add TITLE [--body B] [--category C] [--confidence L] [--tag T]...
    kodo curate edit ID [--title T] [--body B] [--tag T]... [--untag T]...
    kodo curate remove ID
    kodo curate show ID [--history]
    kodo reflect [TEXT | --file F]
    kodo extract FILE [--dry-run] [--strict]
    kodo sync [--pull | --push] [--strategy merge|theirs|ours|interactive] [--dir D]
    kodo flow route [--split] TEXT
    kodo rebuild | repair | compact [--purge-tombstones] | status

Exit codes: 0 success, 1 failure, 2 unresolved sync conflicts,
3 store locked by another live process.
"""

import argparse
import logging
import sys

from kodo import Kodo, __version__
from kodo.cli.commands import (
    cmd_compact,
    cmd_curate,
    cmd_extract,
    cmd_flow,
    cmd_init,
    cmd_query,
    cmd_rebuild,
    cmd_reflect,
    cmd_repair,
    cmd_status,
    cmd_sync,
)
from kodo.cli.commands.helpers import positive_float, positive_int
from kodo.errors import ConflictUnresolvedError, CorruptionError, KodoError
from kodo.storage.store import LOG_FILENAME
from kodo.sync.resolve import Strategy
from kodo.types import Category, Confidence

logger = logging.getLogger(__name__)

CATEGORY_CHOICES = [c.value for c in Category]
CONFIDENCE_CHOICES = [c.value for c in Confidence]

COMMANDS = {
    "query": cmd_query,
    "curate": cmd_curate,
    "reflect": cmd_reflect,
    "extract": cmd_extract,
    "sync": cmd_sync,
    "flow": cmd_flow,
    "rebuild": cmd_rebuild,
    "compact": cmd_compact,
    "status": cmd_status,
}

# Run without opening the store
STORELESS_COMMANDS = {
    "init": cmd_init,
    "repair": cmd_repair,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kodo",
        description="Local-first, team-syncable knowledge base for your codebase",
    )
    parser.add_argument("--home", help="Store directory (default: KODO_HOME, nearest .kodo/, ~/.kodo)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"kodo {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # init
    subparsers.add_parser("init", help="Create a project store in .kodo/ (or --home)")

    # query
    p_query = subparsers.add_parser("query", help="Search entries")
    p_query.add_argument("text", nargs="?", default="", help="Free text (empty lists everything)")
    p_query.add_argument("--category", "-c", action="append", choices=CATEGORY_CHOICES)
    p_query.add_argument("--confidence", choices=CONFIDENCE_CHOICES, help="Minimum confidence")
    p_query.add_argument("--recent", type=positive_float, metavar="DAYS", help="Updated in the last N days")
    p_query.add_argument("--tag", "-t", action="append", help="Require tag")
    p_query.add_argument("--limit", "-l", type=positive_int, help="Page size")
    p_query.add_argument("--cursor", help="Continue from a previous page")
    p_query.add_argument("--json", "-j", action="store_true")

    # curate
    p_curate = subparsers.add_parser("curate", help="Add, edit, remove or show entries")
    curate_sub = p_curate.add_subparsers(dest="curate_action", required=True)

    p_add = curate_sub.add_parser("add", help="Add an entry")
    p_add.add_argument("title")
    p_add.add_argument("--body", "-b", default="")
    p_add.add_argument("--category", "-c", choices=CATEGORY_CHOICES, default=Category.OBSERVATION.value)
    p_add.add_argument("--confidence", choices=CONFIDENCE_CHOICES, default=Confidence.MEDIUM.value)
    p_add.add_argument("--tag", "-t", action="append")
    p_add.add_argument("--related", "-r", action="append", metavar="ID")
    p_add.add_argument("--json", "-j", action="store_true")

    p_edit = curate_sub.add_parser("edit", help="Edit an entry")
    p_edit.add_argument("id")
    p_edit.add_argument("--title")
    p_edit.add_argument("--body", "-b")
    p_edit.add_argument("--category", "-c", choices=CATEGORY_CHOICES)
    p_edit.add_argument("--confidence", choices=CONFIDENCE_CHOICES)
    p_edit.add_argument("--tag", "-t", action="append", help="Add tag")
    p_edit.add_argument("--untag", action="append", help="Remove tag")
    p_edit.add_argument("--related", "-r", action="append", metavar="ID", help="Replace related ids")
    p_edit.add_argument("--json", "-j", action="store_true")

    p_remove = curate_sub.add_parser("remove", help="Remove (tombstone) an entry")
    p_remove.add_argument("id")

    p_show = curate_sub.add_parser("show", help="Show an entry")
    p_show.add_argument("id")
    p_show.add_argument("--history", action="store_true", help="Include operation history")
    p_show.add_argument("--json", "-j", action="store_true")

    # reflect
    p_reflect = subparsers.add_parser("reflect", help="Capture learnings from session notes")
    p_reflect.add_argument("text", nargs="?", help="Notes (default: read stdin)")
    p_reflect.add_argument("--file", "-f", help="Read notes from a file")
    p_reflect.add_argument("--dry-run", action="store_true")
    p_reflect.add_argument("--json", "-j", action="store_true")

    # extract
    p_extract = subparsers.add_parser("extract", help="Extract learnings from a markdown document")
    p_extract.add_argument("file")
    p_extract.add_argument("--dry-run", action="store_true", help="Show candidates without writing")
    p_extract.add_argument("--strict", action="store_true", help="Fail on ambiguous section headings")
    p_extract.add_argument("--json", "-j", action="store_true")

    # sync
    p_sync = subparsers.add_parser("sync", help="Synchronize with other workstations")
    direction = p_sync.add_mutually_exclusive_group()
    direction.add_argument("--pull", action="store_true", help="Only pull")
    direction.add_argument("--push", action="store_true", help="Only push")
    p_sync.add_argument(
        "--strategy", "-s", choices=[s.value for s in Strategy], default=Strategy.MERGE.value
    )
    p_sync.add_argument(
        "--resolve", action="append", metavar="ID=CHOICE", help="Interactive resolution (ours|theirs|merge)"
    )
    p_sync.add_argument("--plan", action="store_true", help="List pending conflicts without writing")
    p_sync.add_argument("--dir", "-d", help="Use a shared directory as transport")
    p_sync.add_argument("--json", "-j", action="store_true")

    # flow
    p_flow = subparsers.add_parser("flow", help="Workflow helpers")
    flow_sub = p_flow.add_subparsers(dest="flow_action", required=True)
    p_route = flow_sub.add_parser("route", help="Decide where a piece of text belongs")
    p_route.add_argument("text", nargs="+")
    p_route.add_argument("--split", action="store_true", help="Route each sentence separately")
    p_route.add_argument("--json", "-j", action="store_true")

    # maintenance
    subparsers.add_parser("rebuild", help="Replay the log and regenerate the index")
    subparsers.add_parser("repair", help="Move a corrupt log tail aside and rebuild")
    p_compact = subparsers.add_parser("compact", help="Snapshot state and shrink the log")
    p_compact.add_argument("--purge-tombstones", action="store_true")
    p_status = subparsers.add_parser("status", help="Show store and sync status")
    p_status.add_argument("--json", "-j", action="store_true")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    k = None
    try:
        if args.command in STORELESS_COMMANDS:
            STORELESS_COMMANDS[args.command](args)
        else:
            k = Kodo.open(args.home, use_index_cache=args.command != "rebuild")
            COMMANDS[args.command](args, k)
    except ConflictUnresolvedError as e:
        logger.error(str(e))
        print("Re-run with --strategy merge|theirs|ours, or --resolve ID=CHOICE for each entry.", file=sys.stderr)
        sys.exit(e.exit_code)
    except KodoError as e:
        logger.error(f"{type(e).__name__}: {e}")
        if isinstance(e, CorruptionError) and e.path.name == LOG_FILENAME:
            print("Run 'kodo repair' to move the corrupt records aside and rebuild.", file=sys.stderr)
        sys.exit(e.exit_code)
    except (ValueError, TypeError, OSError) as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)
    finally:
        if k is not None:
            k.close()


if __name__ == "__main__":
    main()
