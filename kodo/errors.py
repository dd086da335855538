"""Error taxonomy for kodo.

Every error carries the context needed to inspect the problem by hand:
paths and line numbers for storage errors, entry ids and logical clocks for
sync errors.
"""

from pathlib import Path
from typing import TYPE_CHECKING, Iterable, List, Optional

if TYPE_CHECKING:
    from kodo.types import LogicalClock, SyncConflict


class KodoError(Exception):
    """Base class for all kodo errors."""

    exit_code = 1


# === Store ===


class StoreError(KodoError):
    """Failure in the entry store."""


class IoFailureError(StoreError):
    """Reading or writing a store file failed."""

    def __init__(self, path: Path, cause: Exception):
        self.path = Path(path)
        self.cause = cause
        super().__init__(f"I/O failure on {self.path}: {cause}")


class CorruptionError(StoreError):
    """A committed record or snapshot could not be decoded.

    Never repaired automatically. `kodo repair` moves a corrupt log record
    and everything after it aside.
    """

    def __init__(self, path: Path, reason: str, line: Optional[int] = None):
        self.path = Path(path)
        self.reason = reason
        self.line = line
        where = f"{self.path}:{line}" if line is not None else str(self.path)
        super().__init__(f"Corrupt store file {where}: {reason}")


class LockContentionError(StoreError):
    """Another live process holds the writer lock."""

    exit_code = 3

    def __init__(self, lock_path: Path, pid: Optional[int], since: Optional[str] = None):
        self.lock_path = Path(lock_path)
        self.pid = pid
        self.since = since
        held = f" since {since}" if since else ""
        super().__init__(f"Store is locked by process {pid}{held} ({self.lock_path})")


# === Index ===


class IndexingError(KodoError):
    """Failure in the search index."""


class RebuildRequiredError(IndexingError):
    """The persisted index no longer matches the log; run `kodo rebuild`."""

    def __init__(self, path: Path, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Index {self.path} needs a rebuild: {reason}")


# === Sync ===


class SyncError(KodoError):
    """Failure while synchronizing with another workstation."""


class NetworkFailureError(SyncError):
    """Transport failure; retried with backoff before surfacing."""

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class ConflictUnresolvedError(SyncError):
    """Conflicts remain that the selected strategy did not resolve."""

    exit_code = 2

    def __init__(self, conflicts: Iterable["SyncConflict"]):
        self.conflicts: List["SyncConflict"] = list(conflicts)
        lines = [c.summary() for c in self.conflicts]
        super().__init__(
            f"{len(self.conflicts)} unresolved conflict(s):\n  " + "\n  ".join(lines)
        )


class ClockSkewError(SyncError):
    """A remote operation claims a timestamp too far in the future."""

    def __init__(self, entry_id: str, clock: "LogicalClock", timestamp: str, limit_hours: float):
        self.entry_id = entry_id
        self.clock = clock
        self.timestamp = timestamp
        super().__init__(
            f"Remote operation on {entry_id} @ {clock} is stamped {timestamp}, "
            f"more than {limit_hours:g}h ahead of local time"
        )


class SyncCancelledError(SyncError):
    """Sync was cancelled or timed out between batches."""


# === Extraction ===


class ExtractionError(KodoError):
    """Failure while extracting learnings from a document."""


class ParseFailureError(ExtractionError):
    """The document could not be parsed; nothing is written."""

    def __init__(self, source: str, reason: str, line: Optional[int] = None):
        self.source = source
        self.reason = reason
        self.line = line
        where = f"{source}:{line}" if line is not None else source
        super().__init__(f"Cannot parse {where}: {reason}")


class AmbiguousSectionError(ExtractionError):
    """A heading matches more than one classification rule (strict mode)."""

    def __init__(self, source: str, heading: str, categories: List[str], line: int):
        self.source = source
        self.heading = heading
        self.categories = categories
        self.line = line
        super().__init__(
            f"{source}:{line}: heading {heading!r} matches several categories: "
            f"{', '.join(categories)}"
        )
