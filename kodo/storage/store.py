"""Entry store.

The operation log is the source of truth. Current state is derived by folding
operations in log order over the last snapshot:

- an operation whose context dominates the entry's context replaces it
  (``updated_at`` never moves backwards);
- an operation the entry already dominates changes nothing;
- a concurrent operation with identical content only joins the contexts;
- a concurrent, divergent operation is held until the merge operation that
  sync appends after it in the same transaction.

Writers serialize on the lock file. Readers never lock: they fold whatever
transactions are committed and ignore an in-flight tail.
"""

import json
import logging
import os
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, NamedTuple, Optional, Sequence, Set, Tuple

from kodo.config import KodoConfig, resolve_workstation_id
from kodo.errors import CorruptionError, IoFailureError, RebuildRequiredError, StoreError
from kodo.search.index import IndexMarker, Indexer, load_index, save_index
from kodo.storage.causal import Context, Order, compare, dominates, join
from kodo.storage.codec import operation_from_record, operation_to_record
from kodo.storage.lock import StoreLock
from kodo.storage.oplog import OpLog, salvage_clock
from kodo.storage.sync_state import SyncState
from kodo.types import (
    Entry,
    EntryFilter,
    LogicalClock,
    Operation,
    OpKind,
    format_datetime,
    utc_now,
)

logger = logging.getLogger(__name__)

LOG_FILENAME = "oplog.ndjson"
SNAPSHOT_FILENAME = "snapshot.json"
INDEX_FILENAME = "index.json"
LOCK_FILENAME = "lock"
SNAPSHOT_FORMAT_VERSION = 1


def new_entry_id() -> str:
    return uuid.uuid4().hex


class Outcome(str, Enum):
    """What folding one operation did to the entry state."""

    INSERTED = "inserted"
    APPLIED = "applied"
    JOINED = "joined"
    DOMINATED = "dominated"
    CONCURRENT = "concurrent"


def fold_operation(current: Optional[Entry], op: Operation) -> Tuple[Optional[Entry], Outcome]:
    """Fold one operation into an entry state. Pure; returns (new_state, outcome).

    Shared by replay and by the sync planner so both agree on what an
    operation does.
    """
    incoming = op.payload.copy()
    incoming.clock = op.clock
    incoming.causal_context = dict(op.context)
    if current is None:
        return incoming, Outcome.INSERTED

    order = compare(op.context, current.causal_context)
    if order is Order.AFTER:
        if current.updated_at and (incoming.updated_at is None or incoming.updated_at < current.updated_at):
            incoming.updated_at = current.updated_at
        if current.created_at and (incoming.created_at is None or current.created_at < incoming.created_at):
            incoming.created_at = current.created_at
        return incoming, Outcome.APPLIED
    if order in (Order.EQUAL, Order.BEFORE):
        return current, Outcome.DOMINATED

    if incoming.content_fingerprint() == current.content_fingerprint():
        joined = current.copy()
        joined.causal_context = join(current.causal_context, op.context)
        if current.clock is None or op.clock.sort_key > current.clock.sort_key:
            joined.clock = op.clock
        if incoming.updated_at and (joined.updated_at is None or incoming.updated_at > joined.updated_at):
            joined.updated_at = incoming.updated_at
        if incoming.created_at and (joined.created_at is None or incoming.created_at < joined.created_at):
            joined.created_at = incoming.created_at
        return joined, Outcome.JOINED
    return current, Outcome.CONCURRENT


class HistoryItem(NamedTuple):
    operation: Operation
    status: str  # applied, superseded or merge


@dataclass
class CompactionStats:
    dropped_ops: int = 0
    retained_ops: int = 0
    purged: List[str] = field(default_factory=list)
    snapshot_id: str = ""


@dataclass
class RepairReport:
    """What `EntryStore.repair` moved out of the log."""

    quarantine_path: Optional[Path] = None
    first_line: Optional[int] = None  # First line moved out of the log
    bad_line: Optional[int] = None
    reason: str = ""
    moved_lines: int = 0
    clocks: List[LogicalClock] = field(default_factory=list)
    entries: int = 0

    @property
    def repaired(self) -> bool:
        return self.quarantine_path is not None


class Batch:
    """Local writes staged for one atomic commit.

    Obtained from `EntryStore.batch()`; reads through the batch see staged
    writes before they are committed.
    """

    def __init__(self, store: "EntryStore"):
        self._store = store
        self._staged: Dict[str, Entry] = {}
        self.operations: List[Operation] = []

    def __len__(self) -> int:
        return len(self.operations)

    def _current(self, entry_id: str) -> Optional[Entry]:
        if entry_id in self._staged:
            return self._staged[entry_id]
        return self._store._entries.get(entry_id)

    def get(self, entry_id: str) -> Optional[Entry]:
        entry = self._current(entry_id)
        if entry is None or entry.tombstoned:
            return None
        return entry.copy()

    def _stage(self, kind: OpKind, entry: Entry, existing: Optional[Entry]) -> Operation:
        store = self._store
        now = utc_now()
        clock = store.next_clock()
        if existing is not None:
            entry.created_at = existing.created_at or entry.created_at or now
            entry.updated_at = now if existing.updated_at is None else max(now, existing.updated_at)
            context = join(existing.causal_context, {clock.workstation_id: clock.counter})
        else:
            entry.updated_at = entry.updated_at or now
            entry.created_at = entry.created_at or entry.updated_at
            context = {clock.workstation_id: clock.counter}
        entry.clock = clock
        entry.causal_context = context
        op = Operation(
            kind=kind,
            entry_id=entry.id,
            clock=clock,
            timestamp=now,
            payload=entry,
            context=dict(context),
        )
        self._staged[entry.id] = entry
        self.operations.append(op)
        return op

    def put(self, entry: Entry, automated: bool = False) -> str:
        """Stage an Insert (unknown id) or Update. Returns the entry id.

        Automated writers (extraction, reflection) never lower an existing
        entry's confidence; explicit user edits may.
        """
        entry = entry.copy()
        if not entry.id:
            entry.id = new_entry_id()
        if not entry.title or not entry.title.strip():
            raise ValueError("Entry title must not be empty")
        existing = self._current(entry.id)
        if existing is not None and automated and entry.confidence.rank < existing.confidence.rank:
            logger.debug(
                "Keeping confidence %s on %s (automated write proposed %s)",
                existing.confidence.value,
                entry.id,
                entry.confidence.value,
            )
            entry.confidence = existing.confidence
        entry.tombstoned = False
        kind = OpKind.INSERT if existing is None else OpKind.UPDATE
        self._stage(kind, entry, existing)
        return entry.id

    def delete(self, entry_id: str) -> bool:
        existing = self._current(entry_id)
        if existing is None or existing.tombstoned:
            return False
        entry = existing.copy()
        entry.tombstoned = True
        self._stage(OpKind.TOMBSTONE, entry, existing)
        return True

    def touch(self, entry_id: str) -> bool:
        """Stage an Update that only advances `updated_at`."""
        existing = self._current(entry_id)
        if existing is None or existing.tombstoned:
            return False
        self._stage(OpKind.UPDATE, existing.copy(), existing)
        return True


class EntryStore:
    """Append-only, causally ordered entry store rooted at one directory.

    Use `EntryStore.open()` and `close()` (or a `with` block). Independent
    handles on different directories coexist freely; handles on the same
    directory coordinate through the lock file.
    """

    def __init__(self, home: Path, workstation_id: str, config: Optional[KodoConfig] = None):
        self.home = Path(home)
        self.workstation_id = workstation_id
        self.config = config or KodoConfig()
        self.oplog = OpLog(self.home / LOG_FILENAME)
        self.lock = StoreLock(self.home / LOCK_FILENAME, timeout=self.config.lock_timeout)
        self.index = Indexer(fuzzy_threshold=self.config.fuzzy_threshold)
        self._is_open = False
        self._index_dirty = False
        self._writer_depth = 0
        self._reset()

    def _reset(self) -> None:
        self._entries: Dict[str, Entry] = {}
        self._ops: List[Operation] = []
        self._outbox: List[Operation] = []  # unpushed local ops moved out of the log by compaction
        self._outcomes: Dict[LogicalClock, Outcome] = {}
        self._superseded: Set[LogicalClock] = set()
        self._purged: Dict[str, Context] = {}
        self._seen: Context = {}
        self._counter = 0
        self._snapshot_id = ""
        self._snapshot_stat: Optional[Tuple[int, int, int]] = None
        self._log_offset = 0
        self._log_lines = 0

    # === Lifecycle ===

    @classmethod
    def open(
        cls,
        home: Path,
        workstation_id: Optional[str] = None,
        config: Optional[KodoConfig] = None,
        use_index_cache: bool = True,
    ) -> "EntryStore":
        """Open (creating if needed) the store at `home`.

        A stale lock left by a dead process is reclaimed. With
        `use_index_cache=False` the index is built from state instead of the
        cache, which is how `rebuild` recovers from a broken cache.
        """
        home = Path(home)
        try:
            home.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IoFailureError(home, e) from e
        if workstation_id is None:
            workstation_id = resolve_workstation_id(home)
        store = cls(home, workstation_id, config)
        store.lock.reclaim_stale()
        store._load_state()
        if use_index_cache:
            store._load_index()
        else:
            store.index.index_all(store._entries.values())
            store._index_dirty = True
        store._is_open = True
        logger.debug(
            "Opened store %s as %s (%d entries, %d ops in log)",
            home,
            workstation_id,
            len(store._entries),
            len(store._ops),
        )
        return store

    def close(self) -> None:
        if not self._is_open:
            return
        if self._index_dirty:
            try:
                self._save_index()
            except IoFailureError as e:
                logger.warning("Could not save index cache: %s", e)
        self._is_open = False

    def __enter__(self) -> "EntryStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._is_open

    def _check_open(self) -> None:
        if not self._is_open:
            raise StoreError(f"Store {self.home} is closed")

    # === Loading ===

    @property
    def snapshot_path(self) -> Path:
        return self.home / SNAPSHOT_FILENAME

    @property
    def index_path(self) -> Path:
        return self.home / INDEX_FILENAME

    def _stat_snapshot(self) -> Optional[Tuple[int, int, int]]:
        try:
            st = self.snapshot_path.stat()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise IoFailureError(self.snapshot_path, e) from e
        return (st.st_ino, st.st_size, st.st_mtime_ns)

    def _read_snapshot(self) -> None:
        path = self.snapshot_path
        self._snapshot_stat = self._stat_snapshot()
        if self._snapshot_stat is None:
            return
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            self._snapshot_stat = None
            return
        except json.JSONDecodeError as e:
            raise CorruptionError(path, f"invalid JSON: {e.msg}", line=e.lineno) from e
        except OSError as e:
            raise IoFailureError(path, e) from e

        if not isinstance(data, dict) or data.get("version") != SNAPSHOT_FORMAT_VERSION:
            raise CorruptionError(path, "unknown snapshot format")
        try:
            self._snapshot_id = str(data["snapshot_id"])
            self._counter = int(data.get("counter", 0))
            self._seen = {str(k): int(v) for k, v in data.get("seen", {}).items()}
            for raw in data.get("entries", []):
                entry = Entry.from_dict(raw)
                self._entries[entry.id] = entry
            self._purged = {
                str(k): {str(ws): int(c) for ws, c in v.items()}
                for k, v in data.get("purged", {}).items()
            }
            self._superseded = {LogicalClock.from_list(c) for c in data.get("superseded", [])}
            self._outbox = [operation_from_record(r) for r in data.get("outbox", [])]
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptionError(path, f"malformed snapshot ({e})") from e

    def _load_state(self) -> None:
        self._reset()
        self._read_snapshot()
        read = self.oplog.read()
        for op in read.operations:
            self._fold(op, reindex=False)
        self._log_offset = read.committed_offset
        self._log_lines = read.committed_lines
        if read.has_uncommitted_tail:
            logger.debug(
                "Ignoring %d uncommitted bytes at the end of %s",
                read.uncommitted_bytes,
                self.oplog.path,
            )

    def _load_index(self) -> None:
        path = self.index_path
        marker = load_index(path, self.index)
        if marker is None or marker.snapshot_id != self._snapshot_id:
            if marker is not None:
                logger.debug("Index cache predates snapshot %s, rebuilding", self._snapshot_id)
            self.index.index_all(self._entries.values())
            self._index_dirty = True
            return
        if marker.log_offset > self._log_offset:
            raise RebuildRequiredError(
                path,
                f"cache reflects log offset {marker.log_offset} but only "
                f"{self._log_offset} bytes are committed",
            )
        if marker.log_offset < self._log_offset:
            try:
                tail = self.oplog.read(marker.log_offset)
            except CorruptionError as e:
                raise RebuildRequiredError(path, f"cache offset is not a record boundary ({e.reason})") from e
            for entry_id in {op.entry_id for op in tail.operations}:
                entry = self._entries.get(entry_id)
                if entry is None:
                    self.index.remove_entry(entry_id)
                else:
                    self.index.index_entry(entry)
            self._index_dirty = True
            logger.debug("Caught index up with %d operations", len(tail.operations))

        live = {entry_id for entry_id, e in self._entries.items() if not e.tombstoned}
        unknown = sorted(self.index.entry_ids() - live)
        if unknown:
            raise RebuildRequiredError(
                path, f"cache references missing or deleted entries: {', '.join(unknown[:5])}"
            )

    def _save_index(self) -> None:
        save_index(self.index_path, self.index, IndexMarker(self._snapshot_id, self._log_offset))
        self._index_dirty = False

    # === Folding ===

    def _fold(self, op: Operation, reindex: bool = True) -> Outcome:
        ws = op.clock.workstation_id
        if op.clock.counter > self._counter:
            self._counter = op.clock.counter
        if op.clock.counter > self._seen.get(ws, 0):
            self._seen[ws] = op.clock.counter
        if op.merge is not None:
            self._superseded.update(op.merge.superseded)

        current = self._entries.get(op.entry_id)
        purged = self._purged.get(op.entry_id)
        if current is None and purged is not None and dominates(purged, op.context):
            outcome = Outcome.DOMINATED
        else:
            state, outcome = fold_operation(current, op)
            if state is not current:
                self._entries[op.entry_id] = state
                if reindex:
                    self.index.index_entry(state)
                    self._index_dirty = True

        self._ops.append(op)
        self._outcomes[op.clock] = outcome
        logger.debug("Folded %s: %s", op.describe(), outcome.value)
        return outcome

    def _snapshot_changed(self) -> bool:
        return self._stat_snapshot() != self._snapshot_stat

    def refresh(self) -> int:
        """Fold transactions committed by other handles since the last read.

        Lock-free. Returns the number of operations folded.
        """
        self._check_open()
        size = self.oplog.size()
        if self._snapshot_changed() or size < self._log_offset:
            logger.debug("Store %s was compacted elsewhere, reloading", self.home)
            self._load_state()
            self.index.index_all(self._entries.values())
            self._index_dirty = True
            return len(self._ops)
        if size == self._log_offset:
            return 0
        read = self.oplog.read(self._log_offset, self._log_lines)
        for op in read.operations:
            self._fold(op)
        self._log_offset = read.committed_offset
        self._log_lines = read.committed_lines
        return len(read.operations)

    # === Writing ===

    @contextmanager
    def writer(self) -> Iterator["EntryStore"]:
        """Hold the writer lock with state caught up to the end of the log.

        Re-entrant. On first entry any uncommitted tail left by a crashed
        writer is truncated.
        """
        self._check_open()
        outermost = self._writer_depth == 0
        self.lock.acquire()
        self._writer_depth += 1
        try:
            if outermost:
                self.refresh()
                size = self.oplog.size()
                if size > self._log_offset:
                    logger.warning(
                        "Rolling back %d uncommitted bytes at the end of %s",
                        size - self._log_offset,
                        self.oplog.path,
                    )
                    self.oplog.truncate(self._log_offset)
            yield self
        finally:
            self._writer_depth -= 1
            self.lock.release()

    def next_clock(self, after: int = 0) -> LogicalClock:
        """Reserve the next local clock. Call only while holding the writer lock."""
        self._counter = max(self._counter, after) + 1
        return LogicalClock(self.workstation_id, self._counter)

    def commit(self, operations: Sequence[Operation]) -> List[Outcome]:
        """Append operations as one transaction, then fold them into state."""
        if not operations:
            return []
        with self.writer():
            self._log_offset = self.oplog.append(operations)
            self._log_lines += len(operations)
            return [self._fold(op) for op in operations]

    @contextmanager
    def batch(self) -> Iterator[Batch]:
        """Stage writes; all of them commit on exit, or none if the block raises."""
        with self.writer():
            batch = Batch(self)
            yield batch
            self.commit(batch.operations)

    def put(self, entry: Entry, automated: bool = False) -> str:
        with self.batch() as batch:
            entry_id = batch.put(entry, automated=automated)
        return entry_id

    def delete(self, entry_id: str) -> bool:
        """Tombstone an entry. Returns False if it is unknown or already deleted."""
        with self.batch() as batch:
            deleted = batch.delete(entry_id)
        return deleted

    def touch(self, entry_id: str) -> bool:
        with self.batch() as batch:
            touched = batch.touch(entry_id)
        return touched

    # === Reading ===

    def get(self, entry_id: str, include_tombstoned: bool = False) -> Optional[Entry]:
        self.refresh()
        entry = self._entries.get(entry_id)
        if entry is None or (entry.tombstoned and not include_tombstoned):
            return None
        return entry.copy()

    def list(self, entry_filter: Optional[EntryFilter] = None) -> List[Entry]:
        """Entries matching `entry_filter`, most recently updated first."""
        self.refresh()
        entry_filter = entry_filter or EntryFilter()
        entries = [e for e in self._entries.values() if entry_filter.matches(e)]
        entries.sort(key=lambda e: e.id)
        entries.sort(key=lambda e: e.updated_at.timestamp() if e.updated_at else 0.0, reverse=True)
        return [e.copy() for e in entries]

    def view(self) -> Mapping[str, Entry]:
        """Read-only view of current state, including tombstones. Do not mutate."""
        self.refresh()
        return MappingProxyType(self._entries)

    def related(self, entry_id: str) -> List[Entry]:
        """Resolve `related_ids`, skipping unknown and deleted ids."""
        self.refresh()
        entry = self._entries.get(entry_id)
        if entry is None:
            return []
        related = []
        for other_id in sorted(entry.related_ids):
            other = self._entries.get(other_id)
            if other is not None and not other.tombstoned and other_id != entry_id:
                related.append(other.copy())
        return related

    def history(self, entry_id: str) -> List[HistoryItem]:
        """Operations on one entry still in the log or the outbox, oldest first."""
        self.refresh()
        items = []
        for op in self._outbox + self._ops:
            if op.entry_id != entry_id:
                continue
            if op.is_merge:
                status = "merge"
            elif op.clock in self._superseded:
                status = "superseded"
            else:
                status = "applied"
            items.append(HistoryItem(op, status))
        return items

    def outcome(self, clock: LogicalClock) -> Optional[Outcome]:
        return self._outcomes.get(clock)

    @property
    def seen(self) -> Context:
        """Highest counter folded per workstation."""
        return dict(self._seen)

    @property
    def counter(self) -> int:
        return self._counter

    @property
    def log_size(self) -> int:
        return len(self._ops)

    @property
    def outbox_size(self) -> int:
        return len(self._outbox)

    def local_operations(self, after_counter: int = 0) -> List[Operation]:
        """This workstation's operations with counter > `after_counter`.

        Covers both the log and the outbox that compaction moves unpushed
        operations into.
        """
        self.refresh()
        ops: Dict[LogicalClock, Operation] = {}
        for op in self._outbox + self._ops:
            if op.clock.workstation_id == self.workstation_id and op.clock.counter > after_counter:
                ops.setdefault(op.clock, op)
        return sorted(ops.values(), key=lambda op: op.clock.counter)

    def stats(self) -> Dict[str, Any]:
        self.refresh()
        entries = list(self._entries.values())
        return {
            "home": str(self.home),
            "workstation_id": self.workstation_id,
            "entries": sum(1 for e in entries if not e.tombstoned),
            "tombstoned": sum(1 for e in entries if e.tombstoned),
            "needs_review": sorted(e.id for e in entries if e.needs_review and not e.tombstoned),
            "log_ops": len(self._ops),
            "log_bytes": self._log_offset,
            "outbox_ops": len(self._outbox),
            "snapshot_id": self._snapshot_id or None,
            "counter": self._counter,
            "seen": dict(sorted(self._seen.items())),
            "indexed": len(self.index),
        }

    # === Maintenance ===

    def _write_snapshot(self) -> None:
        outbox_clocks = {op.clock for op in self._outbox}
        data = {
            "version": SNAPSHOT_FORMAT_VERSION,
            "snapshot_id": self._snapshot_id,
            "created_at": format_datetime(utc_now()),
            "workstation_id": self.workstation_id,
            "counter": self._counter,
            "seen": dict(sorted(self._seen.items())),
            "entries": [self._entries[k].to_dict() for k in sorted(self._entries)],
            "purged": {k: dict(sorted(v.items())) for k, v in sorted(self._purged.items())},
            "superseded": sorted(c.to_list() for c in self._superseded & outbox_clocks),
            "outbox": [operation_to_record(op) for op in self._outbox],
        }
        path = self.snapshot_path
        tmp = path.with_name(path.name + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, separators=(",", ":"))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError as e:
            raise IoFailureError(path, e) from e
        self._snapshot_stat = self._stat_snapshot()

    def compact(
        self, purge_tombstones: bool = False, pushed_through: Optional[int] = None
    ) -> CompactionStats:
        """Materialize a snapshot and empty the log.

        Local operations not yet pushed move into the snapshot's outbox, where
        push still finds them and replay never folds them again, so the log
        shrinks even on a store that has never synced.

        Tombstones older than the retention window are dropped only when
        `purge_tombstones` is set; their contexts are remembered so replayed
        older operations cannot resurrect them.
        """
        with self.writer():
            if pushed_through is None:
                pushed_through = SyncState.load(self.home).pushed_through
            outbox: Dict[LogicalClock, Operation] = {}
            for op in self._outbox + self._ops:
                if op.clock.workstation_id == self.workstation_id and op.clock.counter > pushed_through:
                    outbox.setdefault(op.clock, op)
            retained = sorted(outbox.values(), key=lambda op: op.clock.counter)
            stats = CompactionStats(
                dropped_ops=len(self._outbox) + len(self._ops) - len(retained),
                retained_ops=len(retained),
            )

            if purge_tombstones:
                cutoff = utc_now() - timedelta(days=self.config.tombstone_retention_days)
                pending = {op.entry_id for op in retained}
                for entry_id in sorted(self._entries):
                    entry = self._entries[entry_id]
                    if not entry.tombstoned or entry_id in pending:
                        continue
                    if entry.updated_at is not None and entry.updated_at < cutoff:
                        self._purged[entry_id] = dict(entry.causal_context)
                        del self._entries[entry_id]
                        stats.purged.append(entry_id)

            self._snapshot_id = uuid.uuid4().hex
            self._outbox = retained
            self._write_snapshot()
            self.oplog.rewrite([])
            self._superseded &= set(outbox)
            self._outcomes = {clock: self._outcomes.get(clock, Outcome.APPLIED) for clock in outbox}
            self._ops = []
            self._log_offset = self.oplog.size()
            self._log_lines = 0
            self._save_index()
            stats.snapshot_id = self._snapshot_id

        logger.info(
            "Compacted %s: dropped %d ops, moved %d unpushed to the outbox, purged %d tombstones",
            self.home,
            stats.dropped_ops,
            stats.retained_ops,
            len(stats.purged),
        )
        return stats

    def rebuild(self) -> int:
        """Replay snapshot and full log from disk and regenerate the index."""
        self._check_open()
        with self.writer():
            self._load_state()
            self.index.index_all(self._entries.values())
            self._save_index()
        logger.info("Rebuilt index for %s (%d entries)", self.home, len(self.index))
        return len(self.index)

    def _quarantine_path(self) -> Path:
        stamp = utc_now().strftime("%Y%m%dT%H%M%SZ")
        path = self.oplog.path.with_name(f"{self.oplog.path.name}.corrupt-{stamp}")
        suffix = 1
        while path.exists():
            path = self.oplog.path.with_name(f"{self.oplog.path.name}.corrupt-{stamp}-{suffix}")
            suffix += 1
        return path

    @classmethod
    def repair(
        cls,
        home: Path,
        workstation_id: Optional[str] = None,
        config: Optional[KodoConfig] = None,
    ) -> RepairReport:
        """Move the first corrupt log record and everything after it aside, then rebuild.

        The moved lines land in ``oplog.ndjson.corrupt-<timestamp>`` next to
        the log. Remote read offsets are reset so operations pulled from other
        workstations are fetched again on the next sync. Works on a store
        that `open()` refuses; a corrupt snapshot is not repaired.
        """
        home = Path(home)
        if workstation_id is None:
            workstation_id = resolve_workstation_id(home)
        store = cls(home, workstation_id, config)
        report = RepairReport()
        store.lock.reclaim_stale()
        with store.lock:
            store._read_snapshot()
            read = store.oplog.read(salvage=True)
            if read.corruption is not None:
                report.quarantine_path = store._quarantine_path()
                report.first_line = read.committed_lines + 1
                report.bad_line = read.corruption.line
                report.reason = read.corruption.reason
                moved = store.oplog.split_off(read.committed_offset, report.quarantine_path)
                report.moved_lines = len(moved)
                report.clocks = [c for c in map(salvage_clock, moved) if c is not None]
                logger.warning(
                    "Moved lines %d-%d of %s to %s (line %s: %s)",
                    report.first_line,
                    read.committed_lines + report.moved_lines,
                    store.oplog.path,
                    report.quarantine_path,
                    report.bad_line,
                    report.reason,
                )
                if report.clocks:
                    logger.warning("Moved clocks: %s", ", ".join(str(c) for c in report.clocks))
                state = SyncState.load(home)
                state.remote_offsets = {}
                state.save(home)
            else:
                logger.info("No corrupt records in %s", store.oplog.path)

            store._load_state()
            store.index.index_all(store._entries.values())
            store._index_dirty = True
            store._is_open = True
            try:
                floor = max(
                    [SyncState.load(home).pushed_through]
                    + [c.counter for c in report.clocks if c.workstation_id == workstation_id]
                )
                if floor > store._counter:
                    # Never reissue a counter the transport may already hold
                    store._counter = floor
                    store.compact()
                report.entries = len(store.index)
            finally:
                store.close()
        return report
