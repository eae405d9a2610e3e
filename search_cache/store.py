"""
Search Cache Store - two-tier (memory LRU + JSON files) cache with per-entry expiry.

The memory tier is a bounded OrderedDict evicted least-recently-used first.
Every write also goes to the durable tier (one JSON file per key, replaced
atomically), so entries pushed out of memory are still served from disk and
promoted back on the next read. Without a cache_dir the store is memory-only.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
import time
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Union

from search_cache.entry import CacheEntry
from tools.search.errors import CorruptCacheEntry

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_\-]{1,128}$")


class CacheStore:
    """
    Thread-safe two-tier cache store.

    Features:
    - Expired entries are never returned by get() and are evicted on access
    - LRU eviction of the memory tier when capacity is exceeded
    - Atomic per-key file writes (no cross-key transactions)
    - Corrupt files are treated as misses and deleted
    """

    def __init__(
        self,
        cache_dir: Optional[Union[str, Path]] = None,
        max_memory_entries: int = 1024,
        clock: Callable[[], float] = time.time,
    ):
        self.max_memory_entries = max(1, int(max_memory_entries))
        self.cache_dir = Path(cache_dir) if cache_dir else None
        self._clock = clock
        self._memory: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.RLock()

        if self.cache_dir is not None:
            self.cache_dir.mkdir(parents=True, exist_ok=True)

        # Stats
        self.memory_hits = 0
        self.disk_hits = 0
        self.misses = 0
        self.expired = 0
        self.corrupt = 0
        self.evictions = 0

    # ------------------------------------------------------------------
    # Disk tier
    # ------------------------------------------------------------------

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise ValueError(f"unsafe cache key: {key!r}")
        return self.cache_dir / f"{key}.json"

    def _read_disk(self, key: str) -> Optional[CacheEntry]:
        if self.cache_dir is None:
            return None
        path = self._path(key)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return CacheEntry.from_dict(data)
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError, json.JSONDecodeError, CorruptCacheEntry) as e:
            self._drop_corrupt(key, path, e)
            return None

    def _drop_corrupt(self, key: str, path: Path, error: Exception) -> None:
        with self._lock:
            self.corrupt += 1
            self._memory.pop(key, None)
        logger.warning(f"[cache_store] Dropping corrupt entry {key}: {error}")
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"[cache_store] Could not remove corrupt file {path}: {e}")

    def _write_disk(self, entry: CacheEntry) -> None:
        if self.cache_dir is None:
            return
        path = self._path(entry.key)
        fd, tmp_name = tempfile.mkstemp(dir=self.cache_dir, prefix=f".{entry.key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(entry.to_dict(), f, ensure_ascii=False)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def _delete_disk(self, key: str) -> bool:
        if self.cache_dir is None:
            return False
        try:
            self._path(key).unlink()
            return True
        except FileNotFoundError:
            return False

    # ------------------------------------------------------------------
    # Memory tier
    # ------------------------------------------------------------------

    def _remember(self, entry: CacheEntry) -> None:
        with self._lock:
            self._memory[entry.key] = entry
            self._memory.move_to_end(entry.key)
            while len(self._memory) > self.max_memory_entries:
                evicted_key, _ = self._memory.popitem(last=False)
                self.evictions += 1
                logger.debug(f"[cache_store] LRU evicted {evicted_key} from memory")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[CacheEntry]:
        """
        Return a fresh entry for ``key`` or None.

        An expired entry is removed from both tiers as a side effect.
        """
        now = self._clock()
        with self._lock:
            entry = self._memory.get(key)
            if entry is not None:
                if entry.is_expired(now):
                    self._expire(key)
                    return None
                self._memory.move_to_end(key)
                entry.hit_count += 1
                self.memory_hits += 1
                return entry

        entry = self._read_disk(key)
        if entry is None:
            with self._lock:
                self.misses += 1
            return None
        if entry.is_expired(now):
            self._expire(key)
            return None

        entry.hit_count += 1
        self._remember(entry)
        with self._lock:
            self.disk_hits += 1
        return entry

    def _expire(self, key: str) -> None:
        with self._lock:
            self._memory.pop(key, None)
            self.expired += 1
            self.misses += 1
        self._delete_disk(key)
        logger.debug(f"[cache_store] Expired entry {key} evicted on access")

    def now(self) -> float:
        return self._clock()

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Return the stored entry even if expired; no LRU or expiry side effects."""
        with self._lock:
            entry = self._memory.get(key)
        if entry is not None:
            return entry
        return self._read_disk(key)

    def put(self, entry: CacheEntry, ttl: Optional[float] = None) -> CacheEntry:
        """Store ``entry``; when ``ttl`` is given its lifetime starts now."""
        if ttl is not None:
            entry = entry.with_ttl(ttl, now=self._clock())
        self._write_disk(entry)
        self._remember(entry)
        return entry

    def delete(self, key: str) -> bool:
        with self._lock:
            in_memory = self._memory.pop(key, None) is not None
        on_disk = self._delete_disk(key)
        return in_memory or on_disk

    def evict_expired(self) -> int:
        """Remove all expired entries from both tiers. Returns count removed."""
        now = self._clock()
        removed = set()
        with self._lock:
            for key in [k for k, v in self._memory.items() if v.is_expired(now)]:
                del self._memory[key]
                removed.add(key)

        for entry in self.iter_entries(include_memory=False):
            if entry.is_expired(now):
                removed.add(entry.key)
        for key in removed:
            self._delete_disk(key)

        if removed:
            logger.info(f"[cache_store] Evicted {len(removed)} expired entries")
        return len(removed)

    def iter_entries(self, include_memory: bool = True) -> Iterator[CacheEntry]:
        """
        Yield every stored entry (expired included).

        Files that fail to deserialize are removed from the store and skipped.
        """
        seen = set()
        if self.cache_dir is not None:
            for path in sorted(self.cache_dir.glob("*.json")):
                key = path.stem
                if not _SAFE_KEY.match(key):
                    continue
                entry = self._read_disk(key)
                if entry is None:
                    continue
                seen.add(key)
                yield entry
        if include_memory:
            with self._lock:
                memory_only = [e for k, e in self._memory.items() if k not in seen]
            for entry in memory_only:
                yield entry

    def clear(self) -> None:
        with self._lock:
            self._memory.clear()
        if self.cache_dir is not None:
            for path in self.cache_dir.glob("*.json"):
                try:
                    path.unlink()
                except FileNotFoundError:
                    pass

    def __len__(self) -> int:
        return sum(1 for _ in self.iter_entries())

    def stats(self) -> Dict[str, Any]:
        """Get store statistics."""
        with self._lock:
            lookups = self.memory_hits + self.disk_hits + self.misses
            return {
                "memory_size": len(self._memory),
                "max_memory_entries": self.max_memory_entries,
                "memory_hits": self.memory_hits,
                "disk_hits": self.disk_hits,
                "misses": self.misses,
                "expired": self.expired,
                "corrupt": self.corrupt,
                "evictions": self.evictions,
                "hit_rate": round((self.memory_hits + self.disk_hits) / max(lookups, 1), 3),
            }


__all__ = ["CacheStore"]
