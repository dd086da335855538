"""Curation commands for Kodo CLI: add, edit, remove and show entries."""

from typing import TYPE_CHECKING

from kodo.cli.commands.helpers import print_json, validate_input

if TYPE_CHECKING:
    from kodo import Kodo


def _print_entry(entry) -> None:
    print(f"{entry.title}")
    print(f"  id:         {entry.id}")
    print(f"  category:   {entry.category.value}")
    print(f"  confidence: {entry.confidence.value}")
    if entry.tags:
        print(f"  tags:       {', '.join(sorted(entry.tags))}")
    if entry.related_ids:
        print(f"  related:    {', '.join(sorted(entry.related_ids))}")
    print(f"  origin:     {entry.origin.value}")
    print(f"  updated:    {entry.updated_at.isoformat() if entry.updated_at else '-'}")
    if entry.needs_review:
        print("  ⚠ needs review (merged from concurrent edits)")
    if entry.body:
        print()
        print(entry.body)


def cmd_curate(args, k: "Kodo"):
    """Handle curate subcommands."""
    if args.curate_action == "add":
        entry_id = k.add(
            validate_input(args.title, "title", 500),
            body=validate_input(args.body or "", "body", 20000),
            category=args.category,
            confidence=args.confidence,
            tags=[validate_input(t, "tag", 100) for t in args.tag or []],
            related_ids=[k.resolve_id(r) for r in args.related or []],
        )
        if args.json:
            print_json({"id": entry_id})
        else:
            print(f"✓ Added {entry_id}")

    elif args.curate_action == "edit":
        entry_id = k.resolve_id(args.id)
        entry = k.edit(
            entry_id,
            title=validate_input(args.title, "title", 500) if args.title is not None else None,
            body=validate_input(args.body, "body", 20000) if args.body is not None else None,
            category=args.category,
            confidence=args.confidence,
            add_tags=[validate_input(t, "tag", 100) for t in args.tag or []],
            remove_tags=args.untag or [],
            related_ids=(
                [k.resolve_id(r) for r in args.related] if args.related is not None else None
            ),
        )
        if args.json:
            print_json(entry.to_dict())
        else:
            print(f"✓ Updated {entry.id}")

    elif args.curate_action == "remove":
        entry_id = k.resolve_id(args.id)
        if k.remove(entry_id):
            print(f"✓ Removed {entry_id}")
        else:
            print(f"Entry {entry_id} was already removed")

    elif args.curate_action == "show":
        entry_id = k.resolve_id(args.id)
        entry = k.get(entry_id)
        if entry is None:
            raise ValueError(f"Entry {entry_id} not found")
        history = k.history(entry_id) if args.history else []
        if args.json:
            data = entry.to_dict()
            if args.history:
                data["history"] = [
                    {"status": item.status, "operation": item.operation.describe()} for item in history
                ]
            print_json(data)
            return
        _print_entry(entry)
        related = k.related(entry_id)
        if related:
            print()
            print("Related:")
            for other in related:
                print(f"  {other.id[:8]}  {other.title}")
        if args.history:
            print()
            print("History:")
            for item in history:
                print(f"  {item.operation.describe():<60} {item.status}")
