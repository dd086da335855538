"""Sync command for Kodo CLI: exchange operations with other workstations."""

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Dict

from kodo.cli.commands.helpers import print_json
from kodo.sync.resolve import Strategy
from kodo.sync.transport import DirectoryTransport

if TYPE_CHECKING:
    from kodo import Kodo

logger = logging.getLogger(__name__)


def parse_resolutions(values) -> Dict[str, str]:
    """Parse repeated ``ID=ours|theirs|merge`` options."""
    resolutions = {}
    for value in values or []:
        entry_id, sep, choice = value.partition("=")
        if not sep or not entry_id.strip():
            raise ValueError(f"Invalid --resolve value {value!r} (expected ID=ours|theirs|merge)")
        choice = choice.strip().lower()
        if choice not in (Strategy.OURS.value, Strategy.THEIRS.value, Strategy.MERGE.value):
            raise ValueError(f"Invalid resolution {choice!r} for {entry_id} (expected ours, theirs or merge)")
        resolutions[entry_id.strip()] = choice
    return resolutions


def cmd_sync(args, k: "Kodo"):
    """Pull remote operations and push local ones."""
    if args.dir:
        k.transport = DirectoryTransport(Path(args.dir).expanduser())

    pull, push = True, True
    if args.pull or args.push:
        pull, push = args.pull, args.push

    if args.plan:
        conflicts = k.plan_sync()
        if args.json:
            print_json([c.summary() for c in conflicts])
        elif conflicts:
            print(f"{len(conflicts)} conflict(s) would need resolution:")
            for conflict in conflicts:
                print(f"  {conflict.summary()}")
        else:
            print("No conflicts pending")
        return

    resolutions = {k.resolve_id(entry_id): choice for entry_id, choice in parse_resolutions(args.resolve).items()}
    result = k.sync(pull=pull, push=push, strategy=args.strategy, resolutions=resolutions)

    if args.json:
        print_json(
            {
                "pulled": result.pulled,
                "pushed": result.pushed,
                "skipped": result.skipped,
                "merge_ops": result.merge_ops,
                "conflicts": [
                    {
                        "entry_id": c.entry_id,
                        "local_clock": str(c.local_clock),
                        "remote_clock": str(c.remote_clock),
                        "fields": c.fields,
                        "resolution": c.resolution,
                    }
                    for c in result.conflicts
                ],
                "needs_review": result.needs_review,
            }
        )
        return

    print(f"✓ Sync complete: pulled {result.pulled}, pushed {result.pushed}")
    if result.skipped:
        print(f"  {result.skipped} operation(s) were already applied")
    if result.conflicts:
        print(f"  {result.conflict_count} conflict(s) resolved:")
        for conflict in result.conflicts:
            print(f"    {conflict.summary()} -> {conflict.resolution}")
    if result.needs_review:
        print(f"  ⚠ {len(result.needs_review)} entr{'y needs' if len(result.needs_review) == 1 else 'ies need'} review:")
        for entry_id in result.needs_review:
            print(f"    kodo curate show {entry_id}")
