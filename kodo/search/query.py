"""Query engine: ranks and filters entries against free text.

Per query token an entry collects 3 for an exact token match, or the best
fuzzy similarity otherwise, plus 0.5 when the token appears anywhere in the
body. The sum is multiplied by a recency boost in [1.0, 1.5] and a confidence
boost. Entries with an exact match on any token rank ahead of fuzzy-only
matches; ties fall back to ``updated_at`` (newest first) and then id.
"""

import base64
import binascii
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

from kodo.config import KodoConfig
from kodo.search.index import tokenize
from kodo.types import (
    Category,
    Confidence,
    Entry,
    EntryFilter,
    SearchHit,
    format_datetime,
    parse_datetime,
    utc_now,
)

logger = logging.getLogger(__name__)

EXACT_WEIGHT = 3.0
FUZZY_WEIGHT = 1.0
BODY_SUBSTRING_WEIGHT = 0.5
MAX_RECENCY_BOOST = 0.5

SortKey = Tuple[bool, float, float, str]


@dataclass
class Query:
    """Free text plus structured filters."""

    text: str = ""
    categories: Optional[Set[Category]] = None
    min_confidence: Optional[Confidence] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    tags: Optional[Set[str]] = None
    limit: Optional[int] = None
    cursor: Optional[str] = None

    def entry_filter(self) -> EntryFilter:
        return EntryFilter(
            categories=self.categories,
            min_confidence=self.min_confidence,
            since=self.since,
            until=self.until,
            tags=self.tags,
        )

    def fingerprint(self) -> str:
        """Stable digest of everything except paging, used to bind cursors."""
        parts = {
            "text": " ".join(tokenize(self.text)),
            "categories": sorted(Category(c).value for c in self.categories or ()),
            "min_confidence": Confidence.parse(self.min_confidence).value if self.min_confidence else None,
            "since": format_datetime(self.since),
            "until": format_datetime(self.until),
            "tags": sorted(self.tags or ()),
        }
        raw = json.dumps(parts, sort_keys=True).encode("utf-8")
        return hashlib.sha256(raw).hexdigest()[:16]


@dataclass
class QueryPage:
    hits: List[SearchHit] = field(default_factory=list)
    next_cursor: Optional[str] = None
    total: int = 0

    @property
    def entries(self) -> List[Entry]:
        return [hit.entry for hit in self.hits]


def encode_cursor(as_of: datetime, key: SortKey, fingerprint: str) -> str:
    data = {"as_of": format_datetime(as_of), "key": list(key), "q": fingerprint}
    raw = json.dumps(data, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(cursor: str, fingerprint: str) -> Tuple[datetime, SortKey]:
    """Decode a cursor, checking it was issued for the same query."""
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
        as_of = parse_datetime(data["as_of"])
        not_exact, neg_score, neg_updated, entry_id = data["key"]
        key: SortKey = (bool(not_exact), float(neg_score), float(neg_updated), str(entry_id))
    except (binascii.Error, UnicodeError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Invalid cursor: {cursor!r}") from e
    if as_of is None:
        raise ValueError(f"Invalid cursor: {cursor!r}")
    if data.get("q") != fingerprint:
        raise ValueError("Cursor was issued for a different query")
    return as_of, key


def recency_boost(updated_at: Optional[datetime], now: datetime, window_days: float) -> float:
    """1.0 for entries older than the window, rising linearly to 1.5 at `now`."""
    if updated_at is None:
        return 1.0
    window = timedelta(days=window_days).total_seconds()
    age_into_window = (updated_at - (now - timedelta(days=window_days))).total_seconds()
    return 1.0 + min(1.0, max(0.0, age_into_window / window)) * MAX_RECENCY_BOOST


class QueryEngine:
    """Reads the store and its index; never writes."""

    def __init__(self, store, config: Optional[KodoConfig] = None):
        self.store = store
        self.config = config or store.config

    def search(self, query: Query, now: Optional[datetime] = None) -> QueryPage:
        fingerprint = query.fingerprint()
        after: Optional[SortKey] = None
        if query.cursor:
            now, after = decode_cursor(query.cursor, fingerprint)
        now = now or utc_now()
        limit = query.limit or self.config.page_size
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")

        ranked = self.rank(query.text, query.entry_filter(), now)
        total = len(ranked)
        if after is not None:
            ranked = [item for item in ranked if item[0] > after]

        page = ranked[:limit]
        next_cursor = None
        if len(ranked) > limit:
            next_cursor = encode_cursor(now, page[-1][0], fingerprint)
        hits = [hit for _, hit in page]
        for hit in hits:
            hit.entry = hit.entry.copy()
        logger.debug("Query %r: %d hits, returning %d", query.text, total, len(hits))
        return QueryPage(hits=hits, next_cursor=next_cursor, total=total)

    def query(self, text: str = "", **kwargs: Any) -> QueryPage:
        """Convenience wrapper: `engine.query("jwt", categories={...})`."""
        now = kwargs.pop("now", None)
        return self.search(Query(text=text, **kwargs), now=now)

    def rank(self, text: str, entry_filter: EntryFilter, now: datetime) -> List[Tuple[SortKey, SearchHit]]:
        """All matching entries with their sort keys, best first."""
        entries = self.store.view()
        candidates = {eid: e for eid, e in entries.items() if entry_filter.matches(e)}
        tokens = list(dict.fromkeys(tokenize(text)))

        ranked: List[Tuple[SortKey, SearchHit]] = []
        if not tokens:
            for entry in candidates.values():
                hit = SearchHit(entry=entry, score=0.0)
                ranked.append(((False, 0.0, -_timestamp(entry), entry.id), hit))
            ranked.sort(key=lambda item: item[0])
            return ranked

        scores: Dict[str, float] = {}
        exact_ids: Set[str] = set()
        matched: Dict[str, List[str]] = {}
        for token in tokens:
            for entry_id, weight, is_exact in self._token_matches(token, candidates):
                scores[entry_id] = scores.get(entry_id, 0.0) + weight
                matched.setdefault(entry_id, []).append(token)
                if is_exact:
                    exact_ids.add(entry_id)

        window = self.config.recency_window_days
        for entry_id, base in scores.items():
            entry = candidates[entry_id]
            score = base * recency_boost(entry.updated_at, now, window) * entry.confidence.boost
            exact = entry_id in exact_ids
            hit = SearchHit(entry=entry, score=score, exact=exact, matched_tokens=matched[entry_id])
            # Tuple order: exact matches first, then higher score, newer, lower id.
            ranked.append(((not exact, -score, -_timestamp(entry), entry_id), hit))
        ranked.sort(key=lambda item: item[0])
        return ranked

    def _token_matches(self, token: str, candidates: Dict[str, Entry]) -> List[Tuple[str, float, bool]]:
        index = self.store.index
        weights: Dict[str, float] = {}
        exact: Set[str] = set()
        for entry_id in index.exact(token):
            if entry_id in candidates:
                weights[entry_id] = EXACT_WEIGHT
                exact.add(entry_id)
        for similar, similarity in index.fuzzy_tokens(token, self.config.fuzzy_threshold):
            for entry_id in index.exact(similar):
                if entry_id in candidates and entry_id not in exact:
                    weights[entry_id] = max(weights.get(entry_id, 0.0), FUZZY_WEIGHT * similarity)
        for entry_id, entry in candidates.items():
            if token in entry.body.lower():
                weights[entry_id] = weights.get(entry_id, 0.0) + BODY_SUBSTRING_WEIGHT
        return [(entry_id, weight, entry_id in exact) for entry_id, weight in weights.items()]

    def related(self, entry_id: str) -> List[Entry]:
        return self.store.related(entry_id)


def _timestamp(entry: Entry) -> float:
    return entry.updated_at.timestamp() if entry.updated_at else 0.0
