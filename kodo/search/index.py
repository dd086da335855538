"""Inverted and trigram index over store contents.

The inverted index maps token -> entry id -> posting (term frequency and
token positions). The trigram index maps each 3-character substring to the
indexed tokens containing it, for fuzzy matching by Jaccard similarity.

The store updates the index synchronously inside the same commit as the log
write. A copy is cached in ``index.json`` with the log position it reflects.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from kodo.errors import IoFailureError, RebuildRequiredError
from kodo.types import Entry

logger = logging.getLogger(__name__)

INDEX_FORMAT_VERSION = 1
MIN_TRIGRAM_LENGTH = 3

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def tokenize(text: str) -> List[str]:
    """Lowercase alphanumeric tokens."""
    return _TOKEN_RE.findall((text or "").lower())


def trigrams(token: str) -> Set[str]:
    if len(token) < MIN_TRIGRAM_LENGTH:
        return set()
    return {token[i : i + 3] for i in range(len(token) - 2)}


def jaccard(a: Set[str], b: Set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


@dataclass
class Posting:
    """Occurrences of one token in one entry."""

    tf: int = 0
    positions: List[int] = field(default_factory=list)
    in_title: bool = False

    def to_list(self) -> List[Any]:
        return [self.tf, self.positions, self.in_title]

    @classmethod
    def from_list(cls, data: List[Any]) -> "Posting":
        tf, positions, in_title = data
        return cls(tf=int(tf), positions=[int(p) for p in positions], in_title=bool(in_title))


def entry_tokens(entry: Entry) -> List[Tuple[str, bool]]:
    """Token stream for an entry: (token, in_title) in position order."""
    stream = [(t, True) for t in tokenize(entry.title)]
    stream.extend((t, False) for t in tokenize(entry.body))
    for tag in sorted(entry.tags):
        stream.extend((t, False) for t in tokenize(tag))
    return stream


class Indexer:
    """In-memory inverted + trigram index."""

    def __init__(self, fuzzy_threshold: float = 0.5):
        self.fuzzy_threshold = fuzzy_threshold
        self.postings: Dict[str, Dict[str, Posting]] = {}
        self._trigram_index: Dict[str, Set[str]] = {}
        self._token_trigrams: Dict[str, Set[str]] = {}
        self._doc_tokens: Dict[str, Set[str]] = {}

    # === Maintenance ===

    def __len__(self) -> int:
        return len(self._doc_tokens)

    def __contains__(self, entry_id: str) -> bool:
        return entry_id in self._doc_tokens

    @property
    def vocabulary(self) -> Set[str]:
        return set(self.postings)

    def clear(self) -> None:
        self.postings.clear()
        self._trigram_index.clear()
        self._token_trigrams.clear()
        self._doc_tokens.clear()

    def index_entry(self, entry: Entry) -> None:
        """Replace whatever is indexed for this entry. Tombstones are removed."""
        self.remove_entry(entry.id)
        if entry.tombstoned:
            return
        doc: Dict[str, Posting] = {}
        for position, (token, in_title) in enumerate(entry_tokens(entry)):
            posting = doc.setdefault(token, Posting())
            posting.tf += 1
            posting.positions.append(position)
            posting.in_title = posting.in_title or in_title
        for token, posting in doc.items():
            self._add_posting(token, entry.id, posting)
        self._doc_tokens[entry.id] = set(doc)

    def remove_entry(self, entry_id: str) -> None:
        tokens = self._doc_tokens.pop(entry_id, None)
        if not tokens:
            return
        for token in tokens:
            bucket = self.postings.get(token)
            if bucket is None:
                continue
            bucket.pop(entry_id, None)
            if not bucket:
                self._drop_token(token)

    def index_all(self, entries: Iterable[Entry]) -> None:
        self.clear()
        for entry in entries:
            self.index_entry(entry)

    def _add_posting(self, token: str, entry_id: str, posting: Posting) -> None:
        bucket = self.postings.get(token)
        if bucket is None:
            bucket = self.postings[token] = {}
            grams = trigrams(token)
            self._token_trigrams[token] = grams
            for gram in grams:
                self._trigram_index.setdefault(gram, set()).add(token)
        bucket[entry_id] = posting

    def _drop_token(self, token: str) -> None:
        self.postings.pop(token, None)
        for gram in self._token_trigrams.pop(token, set()):
            tokens = self._trigram_index.get(gram)
            if tokens is not None:
                tokens.discard(token)
                if not tokens:
                    del self._trigram_index[gram]

    # === Lookup ===

    def exact(self, token: str) -> Dict[str, Posting]:
        return dict(self.postings.get(token, {}))

    def fuzzy_tokens(self, token: str, threshold: Optional[float] = None) -> List[Tuple[str, float]]:
        """Indexed tokens similar to `token`, excluding an exact match.

        Tokens shorter than the trigram length fall back to substring
        matching; the similarity is the share of the indexed token covered.
        """
        threshold = self.fuzzy_threshold if threshold is None else threshold
        if len(token) < MIN_TRIGRAM_LENGTH:
            matches = [
                (candidate, len(token) / len(candidate))
                for candidate in self.postings
                if candidate != token and token in candidate
            ]
            return sorted(matches, key=lambda m: (-m[1], m[0]))

        query_grams = trigrams(token)
        candidates: Set[str] = set()
        for gram in query_grams:
            candidates |= self._trigram_index.get(gram, set())
        candidates.discard(token)

        matches = []
        for candidate in candidates:
            similarity = jaccard(query_grams, self._token_trigrams.get(candidate, set()))
            if similarity >= threshold:
                matches.append((candidate, similarity))
        return sorted(matches, key=lambda m: (-m[1], m[0]))

    def entry_ids(self) -> Set[str]:
        return set(self._doc_tokens)

    def tokens_for(self, entry_id: str) -> Set[str]:
        return set(self._doc_tokens.get(entry_id, set()))

    # === Persistence ===

    def to_dict(self) -> Dict[str, Any]:
        return {
            token: {entry_id: posting.to_list() for entry_id, posting in sorted(bucket.items())}
            for token, bucket in sorted(self.postings.items())
        }

    def load_dict(self, data: Dict[str, Any]) -> None:
        self.clear()
        for token, bucket in data.items():
            for entry_id, raw in bucket.items():
                self._add_posting(token, entry_id, Posting.from_list(raw))
                self._doc_tokens.setdefault(entry_id, set()).add(token)


@dataclass
class IndexMarker:
    """Log position an index cache reflects."""

    snapshot_id: str
    log_offset: int


def save_index(path: Path, indexer: Indexer, marker: IndexMarker) -> None:
    data = {
        "version": INDEX_FORMAT_VERSION,
        "snapshot_id": marker.snapshot_id,
        "log_offset": marker.log_offset,
        "postings": indexer.to_dict(),
    }
    tmp = path.with_name(f"{path.name}.{os.getpid()}.tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, separators=(",", ":"))
        os.replace(tmp, path)
    except OSError as e:
        raise IoFailureError(path, e) from e


def load_index(path: Path, indexer: Indexer) -> Optional[IndexMarker]:
    """Load a cached index into `indexer`. Returns None when there is no cache."""
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except json.JSONDecodeError as e:
        raise RebuildRequiredError(path, f"unreadable index cache ({e.msg})") from e
    except OSError as e:
        raise IoFailureError(path, e) from e

    if not isinstance(data, dict) or data.get("version") != INDEX_FORMAT_VERSION:
        raise RebuildRequiredError(path, "unknown index format")
    try:
        marker = IndexMarker(str(data["snapshot_id"]), int(data["log_offset"]))
        indexer.load_dict(data["postings"])
    except (KeyError, TypeError, ValueError) as e:
        indexer.clear()
        raise RebuildRequiredError(path, f"malformed index cache ({e})") from e
    logger.debug("Loaded index cache %s (%d entries)", path, len(indexer))
    return marker
