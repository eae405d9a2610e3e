"""
Cache layer: entries, two-tier store, fuzzy index and query deduplication.
"""

from search_cache.dedup import QueryDeduplicator, QueryGroup, QueryRecord, levenshtein
from search_cache.entry import CACHE_SEED, CacheEntry, make_cache_key
from search_cache.index import CacheIndex, IndexRecord
from search_cache.store import CacheStore

__all__ = [
    "CACHE_SEED",
    "CacheEntry",
    "CacheIndex",
    "CacheStore",
    "IndexRecord",
    "QueryDeduplicator",
    "QueryGroup",
    "QueryRecord",
    "levenshtein",
    "make_cache_key",
]
