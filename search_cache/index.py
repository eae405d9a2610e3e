"""
Token index over cached queries for fuzzy candidate lookup.

The index is derived data: it can be thrown away and rebuilt from the store
at any time. Rebuilds run in the background and build a complete new
snapshot before swapping the reference readers use, so lookups never wait
for a rebuild. Entries written between rebuilds go into a small overlay so
they are fuzzy-findable immediately.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set

from common.concurrency import PeriodicWorker
from search_cache.entry import CacheEntry, options_signature
from search_cache.store import CacheStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexRecord:
    """What the index knows about one cache entry."""
    key: str
    normalized_query: str
    location: str
    cache_type: str
    expires_at: float
    options: str = "{}"

    @classmethod
    def from_entry(cls, entry: CacheEntry) -> "IndexRecord":
        return cls(
            key=entry.key,
            normalized_query=entry.normalized_query,
            location=entry.location,
            cache_type=entry.cache_type,
            expires_at=entry.expires_at,
            options=options_signature(entry.options),
        )


@dataclass(frozen=True)
class _Snapshot:
    records: Dict[str, IndexRecord] = field(default_factory=dict)
    tokens: Dict[str, FrozenSet[str]] = field(default_factory=dict)
    built_at: float = 0.0


def tokenize(normalized_query: str) -> Set[str]:
    """
    Padded character trigrams.

    One edit touches at most three trigrams, so two strings whose edit
    similarity is at least ~0.7 always share a token even when no whole word
    matches ("coffeeshop" / "coffeeshops").
    """
    padded = f"  {normalized_query} "
    return {padded[i:i + 3] for i in range(len(padded) - 2)}


class CacheIndex:
    """Immutable token→keys snapshot plus a locked overlay of recent writes."""

    def __init__(
        self,
        store: CacheStore,
        rebuild_interval_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.rebuild_interval_seconds = rebuild_interval_seconds
        self._clock = clock
        self._snapshot = _Snapshot()
        self._recent: Dict[str, IndexRecord] = {}
        self._lock = threading.Lock()
        self._rebuild_lock = threading.Lock()
        self._worker: Optional[PeriodicWorker] = None
        self.rebuilds = 0
        self.last_corrupt_dropped = 0

    def add(self, entry: CacheEntry) -> None:
        """Make a freshly stored entry visible before the next rebuild."""
        with self._lock:
            self._recent[entry.key] = IndexRecord.from_entry(entry)

    def candidates(
        self,
        normalized_query: str,
        cache_type: Optional[str] = None,
        include_expired: bool = False,
        options: Optional[Dict[str, Any]] = None,
    ) -> List[IndexRecord]:
        """
        Records sharing at least one token with ``normalized_query``.

        Results are filtered by cache type, by key options when given, and
        (unless asked otherwise) by expiry, and sorted by key so callers see
        a stable order.
        """
        snapshot = self._snapshot
        query_tokens = tokenize(normalized_query)
        found: Dict[str, IndexRecord] = {}

        for token in query_tokens:
            for key in snapshot.tokens.get(token, ()):
                found[key] = snapshot.records[key]

        with self._lock:
            recent = list(self._recent.values())
        for record in recent:
            if query_tokens & tokenize(record.normalized_query):
                found[record.key] = record

        now = self._clock()
        wanted_type = str(cache_type) if cache_type is not None else None
        wanted_options = options_signature(options) if options is not None else None
        results = [
            r for r in found.values()
            if (wanted_type is None or r.cache_type == wanted_type)
            and (wanted_options is None or r.options == wanted_options)
            and (include_expired or now <= r.expires_at)
        ]
        results.sort(key=lambda r: r.key)
        return results

    def rebuild_index(self) -> int:
        """
        Build a new snapshot from the store and swap it in.

        Expired entries are left out; entries that fail to deserialize are
        removed from the store by the scan. Returns the number indexed.
        """
        with self._rebuild_lock:
            started = time.monotonic()
            corrupt_before = self.store.corrupt
            now = self._clock()
            # The scan below sees every write made before this point.
            with self._lock:
                pending = dict(self._recent)

            records: Dict[str, IndexRecord] = {}
            tokens: Dict[str, Set[str]] = {}
            for entry in self.store.iter_entries():
                if entry.is_expired(now):
                    continue
                record = IndexRecord.from_entry(entry)
                records[record.key] = record
                for token in tokenize(record.normalized_query):
                    tokens.setdefault(token, set()).add(record.key)

            snapshot = _Snapshot(
                records=records,
                tokens={t: frozenset(keys) for t, keys in tokens.items()},
                built_at=now,
            )

            with self._lock:
                self._snapshot = snapshot
                stale = [
                    k for k, r in self._recent.items()
                    if pending.get(k) is r or records.get(k) == r or r.expires_at < now
                ]
                for key in stale:
                    del self._recent[key]

            self.rebuilds += 1
            self.last_corrupt_dropped = self.store.corrupt - corrupt_before
            elapsed_ms = (time.monotonic() - started) * 1000
            logger.info(
                f"[cache_index] Rebuilt index: {len(records)} entries, {len(tokens)} tokens, "
                f"{self.last_corrupt_dropped} corrupt dropped in {elapsed_ms:.1f}ms"
            )
            return len(records)

    def start(self) -> None:
        """Rebuild now and then every ``rebuild_interval_seconds`` in the background."""
        if self._worker is None:
            self._worker = PeriodicWorker(
                name="cache-index-rebuild",
                task=self.rebuild_index,
                interval=self.rebuild_interval_seconds,
                run_immediately=True,
            )
        self._worker.start()

    def stop(self) -> None:
        if self._worker is not None:
            self._worker.stop()

    def stats(self) -> Dict[str, float]:
        snapshot = self._snapshot
        with self._lock:
            recent = len(self._recent)
        return {
            "indexed": len(snapshot.records),
            "tokens": len(snapshot.tokens),
            "recent": recent,
            "built_at": snapshot.built_at,
            "rebuilds": self.rebuilds,
        }


__all__ = ["CacheIndex", "IndexRecord", "tokenize"]
