"""
Cache entry model and canonical key derivation.
"""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from tools.search.errors import CorruptCacheEntry

CACHE_SEED = "cache-seed"

_REQUIRED_FIELDS = (
    "key",
    "normalized_query",
    "location",
    "cache_type",
    "payload",
    "source_provider",
    "cost",
    "created_at",
    "expires_at",
)


def make_cache_key(
    normalized_query: str,
    location: str = "",
    cache_type: str = "general",
    options: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Deterministic key for (normalized query, location, cache type, options).

    Only options that change what a provider returns belong in ``options``.
    """
    canonical = json.dumps(
        {
            "q": normalized_query,
            "loc": location or "",
            "type": str(cache_type),
            "opts": options or {},
        },
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]


def options_signature(options: Optional[Dict[str, Any]]) -> str:
    """Canonical form of key options; equal signatures mean interchangeable payloads."""
    return json.dumps(options or {}, sort_keys=True, separators=(",", ":"))


@dataclass
class CacheEntry:
    """A cached, normalized provider response."""
    key: str
    normalized_query: str
    location: str
    cache_type: str
    payload: List[Dict[str, Any]]
    source_provider: str
    cost: float
    created_at: float
    expires_at: float
    hit_count: int = 0
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        key: str,
        normalized_query: str,
        location: str,
        cache_type: str,
        payload: List[Dict[str, Any]],
        source_provider: str,
        cost: float,
        ttl_seconds: float,
        options: Optional[Dict[str, Any]] = None,
        now: Optional[float] = None,
    ) -> "CacheEntry":
        created = time.time() if now is None else now
        return cls(
            key=key,
            normalized_query=normalized_query,
            location=location or "",
            cache_type=str(cache_type),
            payload=list(payload),
            source_provider=source_provider,
            cost=float(cost),
            created_at=created,
            expires_at=created + float(ttl_seconds),
            options=dict(options or {}),
        )

    def is_expired(self, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        return current > self.expires_at

    def with_ttl(self, ttl_seconds: float, now: Optional[float] = None) -> "CacheEntry":
        """Copy of this entry whose lifetime starts at ``now``."""
        created = time.time() if now is None else now
        data = self.to_dict()
        data["created_at"] = created
        data["expires_at"] = created + float(ttl_seconds)
        return CacheEntry.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> "CacheEntry":
        """Rebuild an entry; raises CorruptCacheEntry on any malformed input."""
        key = data.get("key", "?") if isinstance(data, dict) else "?"
        if not isinstance(data, dict):
            raise CorruptCacheEntry(key, "not a mapping")
        missing = [f for f in _REQUIRED_FIELDS if f not in data]
        if missing:
            raise CorruptCacheEntry(key, f"missing fields: {', '.join(missing)}")
        if not isinstance(data["payload"], list):
            raise CorruptCacheEntry(key, "payload is not a list")
        try:
            return cls(
                key=str(data["key"]),
                normalized_query=str(data["normalized_query"]),
                location=str(data["location"] or ""),
                cache_type=str(data["cache_type"]),
                payload=data["payload"],
                source_provider=str(data["source_provider"]),
                cost=float(data["cost"]),
                created_at=float(data["created_at"]),
                expires_at=float(data["expires_at"]),
                hit_count=int(data.get("hit_count", 0)),
                options=dict(data.get("options") or {}),
            )
        except (TypeError, ValueError) as e:
            raise CorruptCacheEntry(key, str(e)) from e


__all__ = ["CACHE_SEED", "CacheEntry", "make_cache_key", "options_signature"]
