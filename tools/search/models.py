"""
Request, response and result shapes shared by providers and the orchestrator.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from tools.search.errors import ValidationError
from tools.search.policy import CacheType


class Outcome(str, Enum):
    """How a lookup was served."""
    EXACT_HIT = "exact_hit"
    FUZZY_HIT = "fuzzy_hit"
    MISS_SUCCESS = "miss_success"
    MISS_ERROR = "miss_error"


@dataclass
class SearchResult:
    """Normalized search result from any provider."""
    title: str
    url: str
    snippet: str
    content: str = ""
    score: float = 0.0
    published_date: Optional[str] = None
    provider: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "title": self.title,
            "url": self.url,
            "snippet": self.snippet,
            "content": self.content,
            "score": self.score,
            "published_date": self.published_date,
            "provider": self.provider,
        }
        if self.extra:
            data["extra"] = dict(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], provider: str = "") -> "SearchResult":
        return cls(
            title=str(data.get("title") or ""),
            url=str(data.get("url") or data.get("link") or ""),
            snippet=str(data.get("snippet") or data.get("description") or ""),
            content=str(data.get("content") or ""),
            score=float(data.get("score") or 0.0),
            published_date=data.get("published_date"),
            provider=str(data.get("provider") or provider),
            extra=dict(data.get("extra") or {}),
        )


@dataclass
class ProviderResponse:
    """
    What a provider adapter hands back.

    ``cost`` is the provider-reported spend for this call; None means the
    adapter cannot tell and the router's per-request price is used.
    """
    items: List[SearchResult]
    cost: Optional[float] = None


@dataclass
class SearchOptions:
    """Per-request options."""
    fuzzy_match: bool = False
    cache_type: CacheType = CacheType.GENERAL
    max_provider_attempts: Optional[int] = None  # None = policy default
    max_results: int = 10

    def __post_init__(self):
        self.cache_type = CacheType.parse(self.cache_type)
        if not isinstance(self.max_results, int) or self.max_results < 1:
            raise ValidationError(f"max_results must be a positive integer, got {self.max_results!r}")
        if self.max_provider_attempts is not None and (
            not isinstance(self.max_provider_attempts, int) or self.max_provider_attempts < 1
        ):
            raise ValidationError(
                f"max_provider_attempts must be a positive integer, got {self.max_provider_attempts!r}"
            )

    def key_options(self) -> Dict[str, Any]:
        """Options that change what a provider returns (part of the cache key)."""
        return {"max_results": self.max_results}


@dataclass
class SearchRequest:
    """One entry of a batch submission."""
    query: str
    location: Optional[str] = None
    options: SearchOptions = field(default_factory=SearchOptions)


@dataclass
class SearchResponse:
    """Normalized response returned to callers."""
    items: List[Dict[str, Any]]
    source_provider: str
    cached: bool
    cost: float
    degraded: bool = False
    query: str = ""
    cache_key: str = ""
    outcome: Outcome = Outcome.MISS_SUCCESS
    error: Optional[str] = None  # set when no data could be served

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": self.items,
            "source_provider": self.source_provider,
            "cached": self.cached,
            "cost": self.cost,
            "degraded": self.degraded,
            "query": self.query,
            "cache_key": self.cache_key,
            "outcome": self.outcome.value,
            "error": self.error,
        }


__all__ = [
    "Outcome",
    "ProviderResponse",
    "SearchOptions",
    "SearchRequest",
    "SearchResponse",
    "SearchResult",
]
