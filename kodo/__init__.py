"""
Kodo - local-first, team-syncable knowledge base for a codebase.

Decisions, conventions and debugging lessons, scored by confidence and
shared between workstations.
"""

from .core import Kodo
from .types import Category, Confidence, Entry

try:
    from importlib.metadata import version

    __version__ = version("kodo")
except Exception:
    __version__ = "0.0.0"

__all__ = ["Kodo", "Category", "Confidence", "Entry"]
