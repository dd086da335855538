"""Extraction commands for Kodo CLI: extract a document, reflect on notes."""

import sys
from pathlib import Path
from typing import TYPE_CHECKING

from kodo.cli.commands.helpers import print_json, validate_input

if TYPE_CHECKING:
    from kodo import Kodo
    from kodo.extraction import ExtractionReport


def _report(report: "ExtractionReport", as_json: bool) -> None:
    if as_json:
        print_json(
            {
                "source": report.source,
                "dry_run": report.dry_run,
                "created": [e.to_dict() for e in report.created],
                "touched": report.touched,
                "skipped": [c.title for c in report.skipped],
            }
        )
        return

    verb = "Would create" if report.dry_run else "Created"
    print(f"{verb} {len(report.created)} entr{'y' if len(report.created) == 1 else 'ies'} from {report.source}")
    for entry in report.created:
        print(f"  + [{entry.category.value}/{entry.confidence.value}] {entry.title}")
    if report.touched:
        print(f"  {len(report.touched)} matched existing entries")
    if report.skipped:
        print(f"  {len(report.skipped)} duplicate candidate(s) skipped")


def cmd_extract(args, k: "Kodo"):
    """Extract learnings from a markdown document."""
    report = k.extract(Path(args.file), dry_run=args.dry_run, strict=args.strict)
    _report(report, args.json)


def cmd_reflect(args, k: "Kodo"):
    """Turn free-form session notes into low-confidence learnings."""
    if args.file:
        text = Path(args.file).read_text(encoding="utf-8")
    elif args.text:
        text = args.text
    else:
        text = sys.stdin.read()
    text = validate_input(text, "notes", 100000)
    if not text.strip():
        raise ValueError("Nothing to reflect on")
    report = k.reflect(text, dry_run=args.dry_run)
    _report(report, args.json)
