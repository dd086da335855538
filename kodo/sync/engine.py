"""Sync engine: reconcile operation logs across workstations.

Pull reads every other workstation's log suffix from the transport, drops
operations already folded (``counter <= seen[ws]``), orders the rest by
``(counter, workstation)`` and applies them in atomic batches. Each concurrent,
divergent pair is resolved once and followed by a synthetic merge operation
whose context dominates both parents. Offsets are saved after every committed
batch, so an interrupted sync resumes where it stopped.

Push appends this workstation's own operations past ``pushed_through``.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, TypeVar

from kodo.config import KodoConfig
from kodo.errors import ClockSkewError, ConflictUnresolvedError
from kodo.storage.causal import Context, dominates, join
from kodo.storage.store import EntryStore, Outcome, fold_operation
from kodo.storage.sync_state import SyncState
from kodo.sync.resolve import Resolution, Strategy, differing_fields, resolve_conflict
from kodo.sync.transport import Transport
from kodo.tasks import CancelToken, RetryPolicy, run_with_retry
from kodo.types import (
    Entry,
    LogicalClock,
    MergeInfo,
    Operation,
    OpKind,
    SyncConflict,
    SyncResult,
    format_datetime,
    utc_now,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Incoming:
    """A remote operation and its 1-based position in the source log."""

    workstation_id: str
    position: int
    operation: Operation

    @property
    def sort_key(self):
        return self.operation.clock.sort_key


@dataclass
class BatchPlan:
    operations: List[Operation]
    conflicts: List[SyncConflict]
    pulled: int = 0
    skipped: int = 0
    merge_ops: int = 0


def _chunks(items: Sequence[T], size: int) -> Iterable[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class SyncEngine:
    """Pull/push between one store and one transport."""

    def __init__(
        self,
        store: EntryStore,
        transport: Transport,
        config: Optional[KodoConfig] = None,
        sleep_fn: Optional[Callable[[float], None]] = None,
    ):
        self.store = store
        self.transport = transport
        self.config = config or store.config
        self.retry = RetryPolicy(
            attempts=self.config.sync_attempts,
            backoff=self.config.sync_backoff,
            max_backoff=self.config.sync_max_backoff,
        )
        self._sleep_kwargs = {"sleep_fn": sleep_fn} if sleep_fn else {}

    @property
    def workstation_id(self) -> str:
        return self.store.workstation_id

    def _call(self, fn: Callable[..., T], *args, cancel: Optional[CancelToken] = None, description: str = "") -> T:
        return run_with_retry(
            lambda: fn(*args),
            policy=self.retry,
            cancel=cancel,
            description=description or getattr(fn, "__name__", "transport call"),
            **self._sleep_kwargs,
        )

    # === Fetch ===

    def fetch(self, state: SyncState, cancel: Optional[CancelToken] = None) -> List[Incoming]:
        """Read every remote log suffix past the saved offsets, in causal order."""
        self._call(self.transport.prepare, cancel=cancel, description="transport prepare")
        incoming: List[Incoming] = []
        batch_size = self.config.sync_batch_size
        for ws in self._call(self.transport.workstations, cancel=cancel, description="list workstations"):
            if ws == self.workstation_id:
                continue
            offset = state.remote_offsets.get(ws, 0)
            while True:
                ops = self._call(
                    self.transport.read, ws, offset, batch_size, cancel=cancel, description=f"read {ws}"
                )
                for i, op in enumerate(ops, start=1):
                    if op.clock.workstation_id != ws:
                        logger.warning(
                            "Ignoring %s found in the log of %s (foreign clock)", op.describe(), ws
                        )
                        continue
                    incoming.append(Incoming(ws, offset + i, op))
                offset += len(ops)
                if len(ops) < batch_size:
                    break
            logger.debug("Fetched %s up to record %d", ws, offset)
        incoming.sort(key=lambda item: item.sort_key)
        return incoming

    def _check_skew(self, incoming: Sequence[Incoming]) -> None:
        limit = timedelta(hours=self.config.max_clock_skew_hours)
        horizon = utc_now() + limit
        for item in incoming:
            op = item.operation
            if op.timestamp > horizon:
                raise ClockSkewError(
                    op.entry_id, op.clock, format_datetime(op.timestamp), self.config.max_clock_skew_hours
                )

    # === Planning ===

    def _plan_batch(
        self,
        batch: Sequence[Incoming],
        later: Dict[str, List[Operation]],
        shadow: Dict[str, Optional[Entry]],
        seen: Context,
        counter: List[int],
        resolve: Callable[[SyncConflict], Optional[Resolution]],
    ) -> BatchPlan:
        """Decide what one batch appends, simulating its effect on `shadow`.

        `later` maps entry ids to incoming operations not yet planned, used to
        defer a conflict the remote side has already merged.
        """
        plan = BatchPlan(operations=[], conflicts=[])
        entries = self.store.view()
        for item in batch:
            op = item.operation
            ws = op.clock.workstation_id
            later[op.entry_id].pop(0)
            if op.clock.counter <= seen.get(ws, 0):
                plan.skipped += 1
                continue
            seen[ws] = op.clock.counter
            counter[0] = max(counter[0], op.clock.counter)

            if op.entry_id in shadow:
                current = shadow[op.entry_id]
            else:
                current = entries.get(op.entry_id)
            state, outcome = fold_operation(current, op)
            plan.operations.append(op)
            plan.pulled += 1

            if outcome is Outcome.CONCURRENT:
                if any(
                    dominates(nxt.context, op.context) and dominates(nxt.context, current.causal_context)
                    for nxt in later[op.entry_id]
                ):
                    logger.debug("Deferring %s to a later remote merge", op.describe())
                else:
                    conflict = SyncConflict(
                        entry_id=op.entry_id,
                        local_clock=current.clock,
                        remote_clock=op.clock,
                        local_version=current.copy(),
                        remote_version=op.payload.copy(),
                        fields=differing_fields(current, op.payload),
                    )
                    resolution = resolve(conflict)
                    if resolution is not None:
                        merge_op = self._merge_operation(conflict, resolution, current, op, counter)
                        plan.operations.append(merge_op)
                        plan.merge_ops += 1
                        state, _ = fold_operation(current, merge_op)
                    plan.conflicts.append(conflict)
            shadow[op.entry_id] = state
        return plan

    def _merge_operation(
        self,
        conflict: SyncConflict,
        resolution: Resolution,
        current: Entry,
        remote: Operation,
        counter: List[int],
    ) -> Operation:
        payload, superseded, strategy = resolve_conflict(conflict, resolution)
        counter[0] += 1
        clock = LogicalClock(self.workstation_id, counter[0])
        context = join(current.causal_context, remote.context, {clock.workstation_id: clock.counter})
        payload.clock = clock
        payload.causal_context = dict(context)
        conflict.resolution = strategy
        conflict.merge_clock = clock
        logger.debug(
            "Resolved %s (%s vs %s) with %s as %s",
            conflict.entry_id,
            conflict.local_clock,
            conflict.remote_clock,
            strategy,
            clock,
        )
        return Operation(
            kind=OpKind.TOMBSTONE if payload.tombstoned else OpKind.UPDATE,
            entry_id=conflict.entry_id,
            clock=clock,
            timestamp=utc_now(),
            payload=payload,
            context=context,
            merge=MergeInfo(
                parents=[conflict.local_clock, conflict.remote_clock],
                strategy=strategy,
                superseded=superseded,
            ),
        )

    def _later_index(self, incoming: Sequence[Incoming]) -> Dict[str, List[Operation]]:
        later: Dict[str, List[Operation]] = {}
        for item in incoming:
            later.setdefault(item.operation.entry_id, []).append(item.operation)
        return later

    def plan(self, cancel: Optional[CancelToken] = None) -> List[SyncConflict]:
        """Conflicts a pull would hit, without writing anything."""
        state = SyncState.load(self.store.home)
        incoming = self.fetch(state, cancel=cancel)
        self.store.refresh()
        plan = self._plan_batch(
            incoming,
            self._later_index(incoming),
            shadow={},
            seen=self.store.seen,
            counter=[self.store.counter],
            resolve=lambda conflict: None,
        )
        return plan.conflicts

    # === Pull / push ===

    def pull(
        self,
        strategy: "str | Strategy" = Strategy.MERGE,
        resolutions: Optional[Mapping[str, Resolution]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> SyncResult:
        """Apply unseen remote operations.

        With the interactive strategy every conflict needs an entry in
        `resolutions` (``"ours"``, ``"theirs"``, ``"merge"`` or an `Entry`);
        otherwise `ConflictUnresolvedError` is raised before anything is
        written.
        """
        strategy = Strategy(strategy)
        resolutions = dict(resolutions or {})
        result = SyncResult()
        state = SyncState.load(self.store.home)
        incoming = self.fetch(state, cancel=cancel)
        self._check_skew(incoming)
        if not incoming:
            logger.debug("Nothing to pull")
            return result

        def resolve(conflict: SyncConflict) -> Optional[Resolution]:
            if strategy is Strategy.INTERACTIVE:
                return resolutions.get(conflict.entry_id)
            return strategy

        with self.store.writer():
            if strategy is Strategy.INTERACTIVE:
                pending = self._plan_batch(
                    incoming,
                    self._later_index(incoming),
                    shadow={},
                    seen=self.store.seen,
                    counter=[self.store.counter],
                    resolve=lambda conflict: None,
                ).conflicts
                missing = [c for c in pending if c.entry_id not in resolutions]
                if missing:
                    raise ConflictUnresolvedError(missing)

            later = self._later_index(incoming)
            for batch in _chunks(incoming, self.config.sync_batch_size):
                if cancel is not None:
                    cancel.check()
                plan = self._plan_batch(
                    batch,
                    later,
                    shadow={},
                    seen=self.store.seen,
                    counter=[self.store.counter],
                    resolve=resolve,
                )
                unresolved = [c for c in plan.conflicts if c.resolution is None]
                if unresolved:
                    raise ConflictUnresolvedError(unresolved)
                self.store.commit(plan.operations)
                for item in batch:
                    previous = state.remote_offsets.get(item.workstation_id, 0)
                    state.remote_offsets[item.workstation_id] = max(previous, item.position)
                state.save(self.store.home)

                result.pulled += plan.pulled
                result.skipped += plan.skipped
                result.merge_ops += plan.merge_ops
                result.conflicts.extend(plan.conflicts)
                view = self.store.view()
                for conflict in plan.conflicts:
                    entry = view.get(conflict.entry_id)
                    if entry is not None and entry.needs_review and conflict.entry_id not in result.needs_review:
                        result.needs_review.append(conflict.entry_id)

        state.last_sync = format_datetime(utc_now())
        state.save(self.store.home)
        logger.info(
            "Pulled %d operation(s) (%d already applied), %d conflict(s) resolved with %s",
            result.pulled,
            result.skipped,
            result.conflict_count,
            strategy.value,
        )
        return result

    def push(self, cancel: Optional[CancelToken] = None) -> SyncResult:
        """Append local operations the transport has not seen yet."""
        result = SyncResult()
        state = SyncState.load(self.store.home)
        pending = self.store.local_operations(state.pushed_through)
        for chunk in _chunks(pending, self.config.sync_batch_size):
            if cancel is not None:
                cancel.check()
            self._call(
                self.transport.append,
                self.workstation_id,
                list(chunk),
                cancel=cancel,
                description=f"append {self.workstation_id}",
            )
            state.pushed_through = chunk[-1].clock.counter
            state.save(self.store.home)
            result.pushed += len(chunk)
        if result.pushed:
            self._call(self.transport.publish, cancel=cancel, description="transport publish")
            logger.info("Pushed %d operation(s) through counter %d", result.pushed, state.pushed_through)
        return result

    def sync(
        self,
        strategy: "str | Strategy" = Strategy.MERGE,
        resolutions: Optional[Mapping[str, Resolution]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> SyncResult:
        result = self.pull(strategy=strategy, resolutions=resolutions, cancel=cancel)
        result.extend(self.push(cancel=cancel))
        return result

    def status(self) -> Dict[str, object]:
        return self.status_for(self.store)

    @staticmethod
    def status_for(store: EntryStore) -> Dict[str, object]:
        """Sync bookkeeping of a store; needs no transport."""
        state = SyncState.load(store.home)
        return {
            "workstation_id": store.workstation_id,
            "pushed_through": state.pushed_through,
            "unpushed": len(store.local_operations(state.pushed_through)),
            "remote_offsets": dict(sorted(state.remote_offsets.items())),
            "last_sync": state.last_sync,
        }
