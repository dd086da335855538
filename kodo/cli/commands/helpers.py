"""Shared helper functions for CLI commands."""

import argparse
import json
import re
from typing import Any

from kodo.types import Entry


def validate_input(value: str, field_name: str, max_length: int = 1000) -> str:
    """Validate and sanitize CLI inputs."""
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string")

    if len(value) > max_length:
        raise ValueError(f"{field_name} too long (max {max_length} characters)")

    # Remove null bytes and control characters except newlines and tabs
    return re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", value)


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    print(json.dumps(data, indent=2, default=str))


def positive_float(value: str) -> float:
    try:
        fvalue = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected a number, got '{value}'")
    if fvalue <= 0:
        raise argparse.ArgumentTypeError(f"Expected a positive number, got {value}")
    return fvalue


def positive_int(value: str) -> int:
    try:
        ivalue = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected an integer, got '{value}'")
    if ivalue < 1:
        raise argparse.ArgumentTypeError(f"Expected a positive integer, got {ivalue}")
    return ivalue


def short_id(entry_id: str) -> str:
    return entry_id[:8]


def format_entry_line(entry: Entry) -> str:
    flags = " [review]" if entry.needs_review else ""
    return f"{short_id(entry.id)}  {entry.category.value:<12} {entry.confidence.value:<6} {entry.title}{flags}"
