"""Query command for Kodo CLI."""

from typing import TYPE_CHECKING

from kodo.cli.commands.helpers import format_entry_line, print_json, validate_input

if TYPE_CHECKING:
    from kodo import Kodo


def cmd_query(args, k: "Kodo"):
    """Search the knowledge base."""
    text = validate_input(args.text or "", "query", 500)
    page = k.query(
        text,
        categories=args.category or None,
        confidence=args.confidence,
        recent_days=args.recent,
        tags=args.tag or None,
        limit=args.limit,
        cursor=args.cursor,
    )

    if args.json:
        print_json(
            {
                "total": page.total,
                "next_cursor": page.next_cursor,
                "hits": [
                    {
                        "score": round(hit.score, 4),
                        "exact": hit.exact,
                        "matched_tokens": hit.matched_tokens,
                        "entry": hit.entry.to_dict(),
                    }
                    for hit in page.hits
                ],
            }
        )
        return

    if not page.hits:
        print(f"No entries found for '{text}'" if text else "No entries found")
        return

    print(f"Found {page.total} entr{'y' if page.total == 1 else 'ies'}:")
    print()
    for hit in page.hits:
        print(f"  {format_entry_line(hit.entry)}  ({hit.score:.2f})")
    if page.next_cursor:
        print()
        print(f"More results: --cursor {page.next_cursor}")
