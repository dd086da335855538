"""Flow commands for Kodo CLI."""

from typing import TYPE_CHECKING

from kodo.cli.commands.helpers import print_json, validate_input

if TYPE_CHECKING:
    from kodo import Kodo


def cmd_flow(args, k: "Kodo"):
    """Handle flow subcommands."""
    if args.flow_action == "route":
        text = validate_input(" ".join(args.text), "text", 10000)
        result = k.route(text, split=args.split)
        if args.json:
            print_json([r.to_dict() for r in result.routes])
            return
        for r in result.routes:
            extra = f" ({r.label})" if r.label else ""
            print(f"{r.destination.value:<7}{extra:<14} {r.text}")
