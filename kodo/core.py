"""
Kodo core.

The `Kodo` class is the primary interface: one explicit handle over an entry
store and the query, extraction, sync and routing components built on it.
Several handles on different homes can coexist in one process.
"""

import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from kodo.config import KodoConfig, get_kodo_home, load_config
from kodo.extraction import ExtractionEngine, ExtractionReport
from kodo.routing import RoutingResult, route
from kodo.search.query import Query, QueryEngine, QueryPage
from kodo.storage.store import CompactionStats, EntryStore, HistoryItem, RepairReport
from kodo.sync.engine import SyncEngine
from kodo.sync.resolve import Resolution
from kodo.sync.transport import Transport, build_transport
from kodo.tasks import CancelToken, CompactionTask, SyncTask
from kodo.types import Category, Confidence, Entry, Origin, SyncConflict, SyncResult, utc_now

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 500
MAX_BODY_LENGTH = 20000


class Kodo:
    """Main interface for kodo operations.

    Examples:
        with Kodo.open() as k:
            entry_id = k.add("Use JWT for auth", category="decisions", confidence="high")
            top = k.query("jwt").hits[0]
    """

    def __init__(self, store: EntryStore, transport: Optional[Transport] = None):
        self.store = store
        self.config: KodoConfig = store.config
        self.query_engine = QueryEngine(store)
        self.extraction = ExtractionEngine(store, self.query_engine)
        self._transport = transport

    @classmethod
    def open(
        cls,
        home: Optional[Path] = None,
        workstation_id: Optional[str] = None,
        config: Optional[KodoConfig] = None,
        transport: Optional[Transport] = None,
        use_index_cache: bool = True,
    ) -> "Kodo":
        """Open the store at `home` (resolved like the CLI's ``--home``)."""
        home = get_kodo_home(home)
        config = config or load_config(home)
        store = EntryStore.open(home, workstation_id, config, use_index_cache=use_index_cache)
        return cls(store, transport=transport)

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
        self.store.close()

    def __enter__(self) -> "Kodo":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def home(self) -> Path:
        return self.store.home

    @property
    def workstation_id(self) -> str:
        return self.store.workstation_id

    # === Validation ===

    @staticmethod
    def _validate_string_input(value: str, field_name: str, max_length: Optional[int] = MAX_TITLE_LENGTH) -> str:
        """Validate and sanitize string inputs."""
        if not isinstance(value, str):
            raise TypeError(f"{field_name} must be a string")
        if max_length is not None and len(value) > max_length:
            raise ValueError(f"{field_name} too long (max {max_length} characters)")
        return value.replace("\x00", "").replace("\r\n", "\n")

    @staticmethod
    def _clean_tags(tags: Optional[Iterable[str]]) -> set:
        return {t.strip() for t in tags or () if t and t.strip()}

    # === Curation ===

    def add(
        self,
        title: str,
        body: str = "",
        category: "str | Category" = Category.OBSERVATION,
        confidence: "str | Confidence" = Confidence.MEDIUM,
        tags: Optional[Iterable[str]] = None,
        related_ids: Optional[Iterable[str]] = None,
        origin: Origin = Origin.MANUAL,
    ) -> str:
        title = self._validate_string_input(title, "title").strip()
        if not title:
            raise ValueError("title must not be empty")
        entry = Entry(
            id="",
            category=Category(category),
            title=title,
            body=self._validate_string_input(body or "", "body", MAX_BODY_LENGTH),
            confidence=Confidence.parse(confidence),
            tags=self._clean_tags(tags),
            related_ids=set(related_ids or ()),
            origin=origin,
        )
        entry_id = self.store.put(entry)
        logger.debug("Added %s %r", entry_id, title)
        self.maybe_compact()
        return entry_id

    def edit(
        self,
        entry_id: str,
        title: Optional[str] = None,
        body: Optional[str] = None,
        category: "Optional[str | Category]" = None,
        confidence: "Optional[str | Confidence]" = None,
        tags: Optional[Iterable[str]] = None,
        add_tags: Optional[Iterable[str]] = None,
        remove_tags: Optional[Iterable[str]] = None,
        related_ids: Optional[Iterable[str]] = None,
    ) -> Entry:
        """Explicit user edit. May lower confidence; clears the review flag."""
        with self.store.batch() as batch:
            entry = batch.get(entry_id)
            if entry is None:
                raise ValueError(f"Entry {entry_id} not found")
            if title is not None:
                title = self._validate_string_input(title, "title").strip()
                if not title:
                    raise ValueError("title must not be empty")
                entry.title = title
            if body is not None:
                entry.body = self._validate_string_input(body, "body", MAX_BODY_LENGTH)
            if category is not None:
                entry.category = Category(category)
            if confidence is not None:
                entry.confidence = Confidence.parse(confidence)
            if tags is not None:
                entry.tags = self._clean_tags(tags)
            entry.tags |= self._clean_tags(add_tags)
            entry.tags -= self._clean_tags(remove_tags)
            if related_ids is not None:
                entry.related_ids = set(related_ids)
            entry.needs_review = False
            batch.put(entry)
        self.maybe_compact()
        return self.store.get(entry_id)

    def remove(self, entry_id: str) -> bool:
        removed = self.store.delete(entry_id)
        self.maybe_compact()
        return removed

    def get(self, entry_id: str) -> Optional[Entry]:
        return self.store.get(entry_id)

    def resolve_id(self, ref: str) -> str:
        """Expand a unique id prefix (as printed by the CLI) to a full entry id."""
        ref = ref.strip()
        if len(ref) < 4:
            raise ValueError(f"Entry id prefix too short: {ref!r}")
        view = self.store.view()
        if ref in view:
            return ref
        matches = sorted(entry_id for entry_id in view if entry_id.startswith(ref))
        if not matches:
            raise ValueError(f"Entry {ref} not found")
        if len(matches) > 1:
            raise ValueError(f"Entry id prefix {ref} is ambiguous ({len(matches)} matches)")
        return matches[0]

    def history(self, entry_id: str) -> List[HistoryItem]:
        return self.store.history(entry_id)

    def related(self, entry_id: str) -> List[Entry]:
        return self.query_engine.related(entry_id)

    # === Query ===

    def query(
        self,
        text: str = "",
        categories: Optional[Iterable["str | Category"]] = None,
        confidence: "Optional[str | Confidence]" = None,
        recent_days: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> QueryPage:
        """Rank entries against `text`; `recent_days` keeps entries updated since now - N days."""
        since = None
        if recent_days is not None:
            if recent_days <= 0:
                raise ValueError("recent must be a positive number of days")
            since = utc_now() - timedelta(days=recent_days)
        query = Query(
            text=text or "",
            categories={Category(c) for c in categories} if categories else None,
            min_confidence=Confidence.parse(confidence) if confidence else None,
            since=since,
            tags=set(tags) if tags else None,
            limit=limit,
            cursor=cursor,
        )
        return self.query_engine.search(query)

    # === Extraction ===

    def extract(self, path: Path, dry_run: bool = False, strict: bool = False) -> ExtractionReport:
        report = self.extraction.extract(path=path, dry_run=dry_run, strict=strict)
        if not dry_run:
            self.maybe_compact()
        return report

    def reflect(self, text: str, dry_run: bool = False) -> ExtractionReport:
        report = self.extraction.reflect(text, dry_run=dry_run)
        if not dry_run:
            self.maybe_compact()
        return report

    # === Routing ===

    @staticmethod
    def route(text: str, split: bool = False) -> RoutingResult:
        return route(text, split=split)

    # === Sync ===

    @property
    def transport(self) -> Transport:
        if self._transport is None:
            self._transport = build_transport(self.config.transport, timeout=self.config.sync_timeout)
        return self._transport

    @transport.setter
    def transport(self, transport: Transport) -> None:
        if self._transport is not None and self._transport is not transport:
            self._transport.close()
        self._transport = transport

    def sync_engine(self) -> SyncEngine:
        return SyncEngine(self.store, self.transport, self.config)

    def sync(
        self,
        pull: bool = True,
        push: bool = True,
        strategy: str = "merge",
        resolutions: Optional[Mapping[str, Resolution]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> SyncResult:
        task = SyncTask(
            self.sync_engine(),
            pull=pull,
            push=push,
            strategy=strategy,
            resolutions=dict(resolutions) if resolutions else None,
            cancel=cancel,
        )
        result = task.run()
        self.maybe_compact()
        return result

    def plan_sync(self) -> List[SyncConflict]:
        """Conflicts a pull would surface, without writing."""
        return self.sync_engine().plan()

    # === Maintenance ===

    def compact(self, purge_tombstones: bool = False) -> CompactionStats:
        """Compact now, waiting for the writer lock like any other write."""
        return self.store.compact(purge_tombstones=purge_tombstones)

    def maybe_compact(self) -> Optional[CompactionStats]:
        """Compact only when the log has grown past `compact_after_ops` and the lock is free.

        Called after every write and every sync.
        """
        return CompactionTask(self.store).run()

    def rebuild(self) -> int:
        return self.store.rebuild()

    @staticmethod
    def repair(
        home: Optional[Path] = None,
        workstation_id: Optional[str] = None,
        config: Optional[KodoConfig] = None,
    ) -> RepairReport:
        """Move a corrupt log tail aside and rebuild. Needs no open handle."""
        home = get_kodo_home(home)
        config = config or load_config(home)
        return EntryStore.repair(home, workstation_id, config)

    def status(self) -> Dict[str, Any]:
        status = self.store.stats()
        status["sync"] = SyncEngine.status_for(self.store)
        return status
