"""
Policy configuration consumed by the cache, router and metrics.

Policy values arrive as plain data (a dict decoded from whatever file or
service a deployment uses) and are validated into these models. Nothing here
reads files.
"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from tools.search.errors import ValidationError

DAY_SECONDS = 24 * 60 * 60


class CacheType(str, Enum):
    """Kind of lookup; drives TTL, fuzzy threshold and provider capability."""
    VENUE = "venue"
    NEWS = "news"
    RESEARCH = "research"
    EVENTS = "events"
    GENERAL = "general"

    @classmethod
    def parse(cls, value) -> "CacheType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(c.value for c in cls)
            raise ValidationError(f"invalid cache type {value!r}; expected one of: {allowed}") from None


class CacheTypePolicy(BaseModel):
    """Per cache type: TTL, fuzzy threshold, savings estimate, capability."""

    ttl_seconds: float = Field(gt=0)
    similarity_threshold: float = Field(ge=0.0, le=1.0)
    avg_cost: float = Field(default=0.0, ge=0.0)  # used for estimated savings
    capability: str = "web_search"


class ProviderPolicy(BaseModel):
    """Per provider: pricing, quota limits and fallback priority."""

    provider_id: str
    cost_per_request: float = Field(ge=0.0)
    free_quota_per_month: int = Field(default=0, ge=0)
    daily_limit: int = Field(ge=0)
    monthly_limit: int = Field(ge=0)
    priority: int = 100  # tie-breaker on equal cost; lower wins
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    capabilities: List[str] = Field(default_factory=lambda: ["web_search"])
    cache_types: List[CacheType] = Field(default_factory=list)  # empty = all

    @field_validator("provider_id")
    @classmethod
    def _strip_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("provider_id must not be empty")
        return v

    def serves(self, capability: str, cache_type: CacheType) -> bool:
        if capability not in self.capabilities:
            return False
        return not self.cache_types or cache_type in self.cache_types


class SearchPolicy(BaseModel):
    """Deployment policy: cache types, providers and global budget."""

    cache_types: Dict[CacheType, CacheTypePolicy] = Field(default_factory=dict)
    providers: List[ProviderPolicy] = Field(default_factory=list)
    daily_budget: Optional[float] = Field(default=None, ge=0.0)  # None = no ceiling
    monthly_budget: Optional[float] = Field(default=None, ge=0.0)
    budget_race_tolerance: float = Field(default=0.0, ge=0.0)
    max_provider_attempts: int = Field(default=3, ge=1)
    location_similarity_threshold: float = Field(default=0.95, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _fill_and_check(self) -> "SearchPolicy":
        for cache_type, default in DEFAULT_CACHE_TYPES.items():
            self.cache_types.setdefault(cache_type, default.model_copy())
        seen = set()
        for provider in self.providers:
            if provider.provider_id in seen:
                raise ValueError(f"duplicate provider_id: {provider.provider_id}")
            seen.add(provider.provider_id)
        return self

    def for_cache_type(self, cache_type) -> CacheTypePolicy:
        return self.cache_types[CacheType.parse(cache_type)]

    def provider(self, provider_id: str) -> Optional[ProviderPolicy]:
        for p in self.providers:
            if p.provider_id == provider_id:
                return p
        return None

    def thresholds(self) -> Dict[CacheType, float]:
        return {ct: p.similarity_threshold for ct, p in self.cache_types.items()}


DEFAULT_CACHE_TYPES: Dict[CacheType, CacheTypePolicy] = {
    CacheType.VENUE: CacheTypePolicy(
        ttl_seconds=30 * DAY_SECONDS, similarity_threshold=0.85, avg_cost=0.01, capability="places"
    ),
    CacheType.NEWS: CacheTypePolicy(
        ttl_seconds=1 * DAY_SECONDS, similarity_threshold=0.90, avg_cost=0.01, capability="news"
    ),
    CacheType.RESEARCH: CacheTypePolicy(
        ttl_seconds=90 * DAY_SECONDS, similarity_threshold=0.80, avg_cost=0.05, capability="research"
    ),
    CacheType.EVENTS: CacheTypePolicy(
        ttl_seconds=7 * DAY_SECONDS, similarity_threshold=0.85, avg_cost=0.01, capability="events"
    ),
    CacheType.GENERAL: CacheTypePolicy(
        ttl_seconds=1 * DAY_SECONDS, similarity_threshold=0.90, avg_cost=0.01, capability="web_search"
    ),
}


def default_policy() -> SearchPolicy:
    """Policy for the bundled adapters (Tavily, Serper, Brave)."""
    return SearchPolicy(
        providers=[
            ProviderPolicy(
                provider_id="serper",
                cost_per_request=0.001,
                free_quota_per_month=2500,
                daily_limit=1000,
                monthly_limit=20000,
                priority=10,
                timeout_seconds=20.0,
                capabilities=["web_search", "places", "news", "events"],
            ),
            ProviderPolicy(
                provider_id="brave",
                cost_per_request=0.005,
                free_quota_per_month=2000,
                daily_limit=1000,
                monthly_limit=15000,
                priority=20,
                timeout_seconds=15.0,
                capabilities=["web_search", "news"],
            ),
            ProviderPolicy(
                provider_id="tavily",
                cost_per_request=0.008,
                free_quota_per_month=1000,
                daily_limit=500,
                monthly_limit=10000,
                priority=30,
                timeout_seconds=30.0,
                capabilities=["web_search", "news", "research", "events"],
            ),
        ],
        daily_budget=5.0,
        monthly_budget=100.0,
    )


__all__ = [
    "CacheType",
    "CacheTypePolicy",
    "ProviderPolicy",
    "SearchPolicy",
    "DEFAULT_CACHE_TYPES",
    "default_policy",
]
