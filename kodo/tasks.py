"""Explicit, cancellable background work: sync and compaction.

Nothing here starts threads. A task is an object with a `run()` method, a
deadline and a cancel token; the caller decides where it runs.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, TypeVar

from kodo.errors import LockContentionError, NetworkFailureError, SyncCancelledError
from kodo.storage.store import CompactionStats
from kodo.types import SyncResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """Cooperative cancellation plus an optional deadline.

    Long-running work calls `check()` between units of work (sync batches).
    """

    def __init__(self, timeout: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self._event = threading.Event()
        self._clock = clock
        self.deadline = clock() + timeout if timeout else None
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and self._clock() >= self.deadline

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self._clock())

    def check(self) -> None:
        if self.cancelled:
            raise SyncCancelledError(f"Sync {self.reason}")
        if self.expired:
            raise SyncCancelledError("Sync timed out")


@dataclass
class RetryPolicy:
    attempts: int = 3
    backoff: float = 0.5  # first delay in seconds, doubled per retry
    max_backoff: float = 8.0

    def delays(self) -> List[float]:
        delays = []
        delay = self.backoff
        for _ in range(max(0, self.attempts - 1)):
            delays.append(min(delay, self.max_backoff))
            delay *= 2
        return delays


def run_with_retry(
    fn: Callable[[], T],
    policy: Optional[RetryPolicy] = None,
    cancel: Optional[CancelToken] = None,
    sleep_fn: Callable[[float], None] = time.sleep,
    description: str = "transport call",
) -> T:
    """Call `fn`, retrying retryable `NetworkFailureError`s with exponential backoff."""
    policy = policy or RetryPolicy()
    delays = policy.delays()
    attempt = 0
    while True:
        attempt += 1
        if cancel is not None:
            cancel.check()
        try:
            return fn()
        except NetworkFailureError as e:
            if not e.retryable or attempt > len(delays):
                raise
            delay = delays[attempt - 1]
            if cancel is not None and cancel.remaining() is not None:
                delay = min(delay, cancel.remaining())
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                description,
                attempt,
                policy.attempts,
                e,
                delay,
            )
            sleep_fn(delay)


@dataclass
class SyncTask:
    """One sync invocation with a deadline, a cancel token and retry counters."""

    engine: object  # kodo.sync.engine.SyncEngine
    pull: bool = True
    push: bool = True
    strategy: str = "merge"
    resolutions: Optional[dict] = None
    timeout: Optional[float] = None
    cancel: Optional[CancelToken] = None

    def __post_init__(self) -> None:
        if self.timeout is None:
            self.timeout = self.engine.config.sync_timeout
        if self.cancel is None:
            self.cancel = CancelToken(timeout=self.timeout or None)

    def run(self) -> SyncResult:
        """Pull then push. Each committed batch survives cancellation."""
        result = SyncResult()
        if self.pull:
            result.extend(
                self.engine.pull(strategy=self.strategy, resolutions=self.resolutions, cancel=self.cancel)
            )
        if self.push:
            result.extend(self.engine.push(cancel=self.cancel))
        logger.info(
            "Sync finished: pulled %d, pushed %d, skipped %d, %d conflict(s)",
            result.pulled,
            result.pushed,
            result.skipped,
            result.conflict_count,
        )
        return result


@dataclass
class CompactionTask:
    """Advisory compaction; skipped whenever it would have to wait."""

    store: object  # kodo.storage.store.EntryStore
    purge_tombstones: bool = False
    force: bool = False

    def due(self) -> bool:
        return self.force or self.store.log_size >= self.store.config.compact_after_ops

    def run(self) -> Optional[CompactionStats]:
        if not self.due():
            logger.debug("Compaction not due (%d ops in log)", self.store.log_size)
            return None
        lock = self.store.lock
        try:
            lock.acquire(timeout=0)
        except LockContentionError as e:
            logger.debug("Skipping compaction: %s", e)
            return None
        try:
            return self.store.compact(purge_tombstones=self.purge_tombstones)
        finally:
            lock.release()
