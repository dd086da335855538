"""
Shared types for kodo.

Entries, operations and sync records live here. These are the vocabulary
shared between the store, the indexer, the query engine, extraction and
sync. The store persists Operations; everything else reads Entries.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Set

# === Shared Utility Functions ===


def utc_now() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime string, assuming UTC when no offset is given."""
    if not s:
        return None
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Render a datetime the way it is persisted."""
    return dt.isoformat() if dt else None


# === Enums ===


class Category(str, Enum):
    """Fixed set of knowledge categories."""

    ARCHITECTURE = "architecture"
    TESTING = "testing"
    CODE_STYLE = "code-style"
    DATABASE = "database"
    API = "api"
    DECISIONS = "decisions"
    WORKFLOWS = "workflows"
    DOMAIN = "domain"
    DEBUGGING = "debugging"
    OBSERVATION = "observation"


VALID_CATEGORY_VALUES = frozenset(c.value for c in Category)


class Confidence(str, Enum):
    """Trust level attached to an entry."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]

    @property
    def boost(self) -> float:
        """Ranking multiplier used by the query engine."""
        return _CONFIDENCE_BOOST[self]

    @classmethod
    def parse(cls, value: "str | Confidence") -> "Confidence":
        if isinstance(value, Confidence):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Invalid confidence {value!r} (expected one of: low, medium, high)"
            )

    @staticmethod
    def highest(a: "Confidence", b: "Confidence") -> "Confidence":
        return a if a.rank >= b.rank else b


_CONFIDENCE_RANK = {Confidence.LOW: 0, Confidence.MEDIUM: 1, Confidence.HIGH: 2}
_CONFIDENCE_BOOST = {Confidence.LOW: 0.8, Confidence.MEDIUM: 1.0, Confidence.HIGH: 1.3}


class Origin(str, Enum):
    """How an entry came to exist."""

    MANUAL = "manual"  # curate add/edit
    REFLECT = "reflect"  # session reflection
    EXTRACT = "extract"  # markdown extraction
    SYNC = "sync"  # produced by a sync merge


class OpKind(str, Enum):
    """Kinds of operation stored in the log."""

    INSERT = "Insert"
    UPDATE = "Update"
    TOMBSTONE = "Tombstone"


# === Clocks ===


class LogicalClock(NamedTuple):
    """Causal position of an operation: (workstation_id, counter)."""

    workstation_id: str
    counter: int

    def to_list(self) -> List[Any]:
        return [self.workstation_id, self.counter]

    @classmethod
    def from_list(cls, value: List[Any]) -> "LogicalClock":
        ws, counter = value
        return cls(str(ws), int(counter))

    @property
    def sort_key(self):
        """Total order used for tie-breaks: counter first, then workstation."""
        return (self.counter, self.workstation_id)

    def __str__(self) -> str:
        return f"{self.workstation_id}:{self.counter}"


# === Entries ===


@dataclass
class Entry:
    """A context entry or learning.

    `clock` and `causal_context` are maintained by the store; callers set the
    user fields (category, title, body, confidence, tags, related_ids).
    """

    id: str
    category: Category
    title: str
    body: str = ""
    confidence: Confidence = Confidence.MEDIUM
    tags: Set[str] = field(default_factory=set)
    related_ids: Set[str] = field(default_factory=set)
    origin: Origin = Origin.MANUAL
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    tombstoned: bool = False
    needs_review: bool = False  # Set when a merge kept both divergent bodies
    clock: Optional[LogicalClock] = None
    causal_context: Dict[str, int] = field(default_factory=dict)  # Version vector

    def __post_init__(self) -> None:
        self.category = Category(self.category)
        self.confidence = Confidence.parse(self.confidence)
        self.origin = Origin(self.origin)
        self.tags = set(self.tags or ())
        self.related_ids = set(self.related_ids or ())

    def copy(self) -> "Entry":
        return copy.deepcopy(self)

    def user_fields(self) -> Dict[str, Any]:
        """Fields a user sets directly; used for round-trip comparisons."""
        return {
            "id": self.id,
            "category": self.category.value,
            "title": self.title,
            "body": self.body,
            "confidence": self.confidence.value,
            "tags": sorted(self.tags),
            "related_ids": sorted(self.related_ids),
        }

    def content_fingerprint(self) -> Dict[str, Any]:
        """Everything that defines the visible state, minus causal metadata."""
        data = self.user_fields()
        data.update(
            {
                "origin": self.origin.value,
                "tombstoned": self.tombstoned,
                "needs_review": self.needs_review,
            }
        )
        return data

    def to_dict(self) -> Dict[str, Any]:
        data = self.user_fields()
        data.update(
            {
                "origin": self.origin.value,
                "created_at": format_datetime(self.created_at),
                "updated_at": format_datetime(self.updated_at),
                "tombstoned": self.tombstoned,
                "needs_review": self.needs_review,
                "clock": self.clock.to_list() if self.clock else None,
                "causal_context": dict(sorted(self.causal_context.items())),
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Entry":
        clock = data.get("clock")
        return cls(
            id=data["id"],
            category=data["category"],
            title=data.get("title", ""),
            body=data.get("body", "") or "",
            confidence=data.get("confidence", Confidence.MEDIUM.value),
            tags=set(data.get("tags") or ()),
            related_ids=set(data.get("related_ids") or ()),
            origin=data.get("origin", Origin.MANUAL.value),
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
            tombstoned=bool(data.get("tombstoned", False)),
            needs_review=bool(data.get("needs_review", False)),
            clock=LogicalClock.from_list(clock) if clock else None,
            causal_context={str(k): int(v) for k, v in (data.get("causal_context") or {}).items()},
        )


# === Operations ===


@dataclass
class MergeInfo:
    """Marks a synthetic merge operation appended after conflict resolution."""

    parents: List[LogicalClock]
    strategy: str
    superseded: List[LogicalClock] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parents": [c.to_list() for c in self.parents],
            "strategy": self.strategy,
            "superseded": [c.to_list() for c in self.superseded],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MergeInfo":
        return cls(
            parents=[LogicalClock.from_list(c) for c in data.get("parents", [])],
            strategy=data.get("strategy", "merge"),
            superseded=[LogicalClock.from_list(c) for c in data.get("superseded", [])],
        )


@dataclass
class Operation:
    """One record of the append-only log."""

    kind: OpKind
    entry_id: str
    clock: LogicalClock
    timestamp: datetime
    payload: Entry
    context: Dict[str, int] = field(default_factory=dict)
    merge: Optional[MergeInfo] = None

    @property
    def is_merge(self) -> bool:
        return self.merge is not None

    def describe(self) -> str:
        """Short reproducible reference for messages: kind, id and clock."""
        return f"{self.kind.value} {self.entry_id} @ {self.clock}"


# === Query Types ===


@dataclass
class EntryFilter:
    """Structured filters shared by `EntryStore.list` and the query engine."""

    categories: Optional[Set[Category]] = None
    min_confidence: Optional[Confidence] = None
    since: Optional[datetime] = None  # updated_at >= since
    until: Optional[datetime] = None  # updated_at <= until
    tags: Optional[Set[str]] = None  # entry must carry all of these
    include_tombstoned: bool = False

    def __post_init__(self) -> None:
        if self.categories is not None:
            self.categories = {Category(c) for c in self.categories}
        if self.min_confidence is not None:
            self.min_confidence = Confidence.parse(self.min_confidence)
        if self.tags is not None:
            self.tags = set(self.tags)

    def matches(self, entry: Entry) -> bool:
        if entry.tombstoned and not self.include_tombstoned:
            return False
        if self.categories and entry.category not in self.categories:
            return False
        if self.min_confidence and entry.confidence.rank < self.min_confidence.rank:
            return False
        if self.since and (entry.updated_at is None or entry.updated_at < self.since):
            return False
        if self.until and (entry.updated_at is None or entry.updated_at > self.until):
            return False
        if self.tags and not self.tags <= entry.tags:
            return False
        return True


@dataclass
class SearchHit:
    """A ranked query result."""

    entry: Entry
    score: float
    exact: bool = False  # Any query token matched an indexed token exactly
    matched_tokens: List[str] = field(default_factory=list)


# === Sync Types ===


@dataclass
class SyncConflict:
    """Two concurrent, divergent operations on the same entry.

    Carries both versions and their clocks so the conflict can be inspected and
    resolved by hand.
    """

    entry_id: str
    local_clock: LogicalClock
    remote_clock: LogicalClock
    local_version: Entry
    remote_version: Entry
    fields: List[str] = field(default_factory=list)  # Differing user fields
    resolution: Optional[str] = None  # merge, ours, theirs, manual
    merge_clock: Optional[LogicalClock] = None

    def summary(self) -> str:
        fields = ", ".join(self.fields) or "content"
        return (
            f"{self.entry_id}: local {self.local_clock} vs remote {self.remote_clock} "
            f"(differs in {fields})"
        )


@dataclass
class SyncResult:
    """Result of a sync operation."""

    pushed: int = 0  # Operations pushed to the transport
    pulled: int = 0  # Remote operations applied
    skipped: int = 0  # Remote operations already applied before
    conflicts: List[SyncConflict] = field(default_factory=list)
    merge_ops: int = 0  # Synthetic merge operations appended
    needs_review: List[str] = field(default_factory=list)  # Entry ids flagged by merge
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    @property
    def conflict_count(self) -> int:
        return len(self.conflicts)

    def extend(self, other: "SyncResult") -> None:
        self.pushed += other.pushed
        self.pulled += other.pulled
        self.skipped += other.skipped
        self.conflicts.extend(other.conflicts)
        self.merge_ops += other.merge_ops
        self.needs_review.extend(i for i in other.needs_review if i not in self.needs_review)
        self.errors.extend(other.errors)
