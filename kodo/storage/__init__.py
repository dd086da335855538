"""Kodo storage.

Append-only operation log, writer lock and the entry store built on them.
"""

from .lock import StoreLock
from .oplog import LogRead, OpLog
from .store import Batch, CompactionStats, EntryStore, HistoryItem, Outcome, fold_operation
from .sync_state import SyncState

__all__ = [
    "Batch",
    "CompactionStats",
    "EntryStore",
    "HistoryItem",
    "LogRead",
    "OpLog",
    "Outcome",
    "StoreLock",
    "SyncState",
    "fold_operation",
]
