"""Conflict resolution strategies.

Every strategy is a deterministic function of the two conflicting versions
and their clocks, so two workstations resolving the same pair reach the same
entry no matter which side they are on.
"""

import logging
from enum import Enum
from typing import List, Tuple, Union

from kodo.types import Confidence, Entry, LogicalClock, Origin, SyncConflict

logger = logging.getLogger(__name__)

CONFLICT_START = "<<<<<<<"
CONFLICT_SEPARATOR = "======="
CONFLICT_END = ">>>>>>>"

COMPARED_FIELDS = ("category", "title", "body", "confidence", "tags", "related_ids", "tombstoned")


class Strategy(str, Enum):
    MERGE = "merge"
    THEIRS = "theirs"
    OURS = "ours"
    INTERACTIVE = "interactive"


Resolution = Union[str, Strategy, Entry]


def differing_fields(a: Entry, b: Entry) -> List[str]:
    return [name for name in COMPARED_FIELDS if getattr(a, name) != getattr(b, name)]


def conflict_body(older: Tuple[Entry, LogicalClock], newer: Tuple[Entry, LogicalClock]) -> str:
    (old_entry, old_clock), (new_entry, new_clock) = older, newer
    return (
        f"{CONFLICT_START} {old_clock}\n{old_entry.body}\n{CONFLICT_SEPARATOR}\n"
        f"{new_entry.body}\n{CONFLICT_END} {new_clock}"
    )


def merge_entries(local: Entry, local_clock: LogicalClock, remote: Entry, remote_clock: LogicalClock) -> Entry:
    """Field-wise merge of two concurrent versions.

    Sets are unioned, confidence takes the max, scalar fields come from the
    version with the greater clock. Differing bodies are both kept between
    conflict markers and the entry is flagged for review. When one side
    deleted and the other edited, the edit survives.
    """
    older, newer = sorted([(local, local_clock), (remote, remote_clock)], key=lambda pair: pair[1].sort_key)
    base = newer[0]
    needs_review = local.needs_review or remote.needs_review

    if local.tombstoned != remote.tombstoned:
        survivor = remote if local.tombstoned else local
        logger.debug("Keeping edit of %s over concurrent deletion", survivor.id)
        base = survivor
        needs_review = True

    merged = base.copy()
    merged.tags = local.tags | remote.tags
    merged.related_ids = local.related_ids | remote.related_ids
    merged.confidence = Confidence.highest(local.confidence, remote.confidence)
    merged.origin = Origin.SYNC
    merged.tombstoned = local.tombstoned and remote.tombstoned
    created = [e.created_at for e in (local, remote) if e.created_at]
    updated = [e.updated_at for e in (local, remote) if e.updated_at]
    merged.created_at = min(created) if created else None
    merged.updated_at = max(updated) if updated else None

    if local.tombstoned == remote.tombstoned and local.body != remote.body:
        merged.body = conflict_body(older, newer)
        needs_review = True
    merged.needs_review = needs_review
    return merged


def resolve_conflict(conflict: SyncConflict, resolution: Resolution) -> Tuple[Entry, List[LogicalClock], str]:
    """Resolve one conflict.

    Returns the resolved payload, the clocks of the operations whose effect is
    discarded, and the strategy name recorded on the merge operation.
    """
    local, remote = conflict.local_version, conflict.remote_version
    if isinstance(resolution, Entry):
        if resolution.id != conflict.entry_id:
            raise ValueError(
                f"Resolution for {conflict.entry_id} carries entry id {resolution.id}"
            )
        return resolution.copy(), [conflict.local_clock, conflict.remote_clock], "manual"

    strategy = Strategy(resolution)
    updated = [e.updated_at for e in (local, remote) if e.updated_at]
    if strategy is Strategy.THEIRS:
        payload = remote.copy()
        superseded = [conflict.local_clock]
    elif strategy is Strategy.OURS:
        payload = local.copy()
        superseded = [conflict.remote_clock]
    elif strategy is Strategy.MERGE:
        payload = merge_entries(local, conflict.local_clock, remote, conflict.remote_clock)
        return payload, [], strategy.value
    else:
        raise ValueError("interactive conflicts need an explicit per-entry resolution")
    payload.updated_at = max(updated) if updated else payload.updated_at
    return payload, superseded, strategy.value
