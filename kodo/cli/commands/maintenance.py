"""Maintenance commands for Kodo CLI: rebuild, repair, compact and status."""

from kodo.cli.commands.helpers import print_json
from kodo.core import Kodo


def cmd_rebuild(args, k: "Kodo"):
    """Replay snapshot and log, regenerating the index."""
    count = k.rebuild()
    print(f"✓ Rebuilt index: {count} entr{'y' if count == 1 else 'ies'}")


def cmd_repair(args):
    report = Kodo.repair(args.home)
    entries = f"{report.entries} entr{'y' if report.entries == 1 else 'ies'}"
    if not report.repaired:
        print(f"✓ No corrupt records found; rebuilt index: {entries}")
        return
    print(f"✓ Moved {report.moved_lines} line(s) starting at line {report.first_line} to {report.quarantine_path}")
    print(f"  Line {report.bad_line}: {report.reason}")
    if report.clocks:
        print(f"  Moved clocks: {', '.join(str(c) for c in report.clocks)}")
    print(f"  Rebuilt index: {entries}")
    print("  Run 'kodo sync' to fetch operations from other workstations again.")


def cmd_compact(args, k: "Kodo"):
    stats = k.compact(purge_tombstones=args.purge_tombstones)
    print(f"✓ Compacted: dropped {stats.dropped_ops} op(s), kept {stats.retained_ops} unpushed in the outbox")
    if stats.purged:
        print(f"  Purged {len(stats.purged)} old tombstone(s)")


def cmd_status(args, k: "Kodo"):
    """Show store and sync status."""
    status = k.status()
    if args.json:
        print_json(status)
        return

    sync = status["sync"]
    print(f"Home:        {status['home']}")
    print(f"Workstation: {status['workstation_id']}")
    print(f"Entries:     {status['entries']} ({status['tombstoned']} tombstoned)")
    print(f"Log:         {status['log_ops']} op(s), {status['log_bytes']} bytes")
    print(f"Outbox:      {status['outbox_ops']} op(s)")
    print(f"Unpushed:    {sync['unpushed']} op(s)")
    print(f"Last sync:   {sync['last_sync'] or 'never'}")
    if status["needs_review"]:
        print()
        print(f"⚠ {len(status['needs_review'])} entr{'y needs' if len(status['needs_review']) == 1 else 'ies need'} review:")
        for entry_id in status["needs_review"]:
            print(f"  {entry_id}")
