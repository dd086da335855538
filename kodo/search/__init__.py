"""Full-text search over the entry store."""

from .index import Indexer, tokenize, trigrams
from .query import Query, QueryEngine, QueryPage

__all__ = ["Indexer", "Query", "QueryEngine", "QueryPage", "tokenize", "trigrams"]
