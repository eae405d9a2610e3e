"""
Error taxonomy for the cache-first search layer.

Only ValidationError reaches callers as an exception. Transient, quota and
corrupt-entry conditions are handled where they occur; budget exhaustion and
provider unavailability surface as degraded responses.
"""

from concurrent.futures import Future
from typing import Optional


class SearchCacheError(Exception):
    """Base class for all search cache errors."""


class ValidationError(SearchCacheError, ValueError):
    """Malformed input (empty query, unknown cache type, bad options)."""


class CorruptCacheEntry(SearchCacheError):
    """A stored cache entry could not be deserialized."""

    def __init__(self, key: str, reason: str = ""):
        super().__init__(f"corrupt cache entry {key}: {reason}" if reason else f"corrupt cache entry {key}")
        self.key = key
        self.reason = reason


class ProviderError(SearchCacheError):
    """A provider call failed."""

    permanent = False

    def __init__(self, message: str, provider_id: Optional[str] = None):
        super().__init__(message)
        self.provider_id = provider_id


class ProviderTransientError(ProviderError):
    """Network, timeout or rate-limit failure; eligible for fallback."""


class ProviderTimeoutError(ProviderTransientError):
    """The call outlived its timeout; ``pending`` is the call that may still finish."""

    def __init__(self, message: str, provider_id: Optional[str] = None, pending: Optional[Future] = None):
        super().__init__(message, provider_id=provider_id)
        self.pending = pending


class ProviderPermanentError(ProviderError):
    """Failure that will not succeed on retry (bad request, bad credentials)."""

    permanent = True


class QuotaExceeded(SearchCacheError):
    """A provider's daily or monthly call limit is saturated."""

    def __init__(self, provider_id: str, period: str):
        super().__init__(f"provider {provider_id} exhausted its {period} quota")
        self.provider_id = provider_id
        self.period = period


class RoutingError(SearchCacheError):
    """No provider call can be dispatched for this request."""

    reason = "routing_error"


class NoProviderAvailable(RoutingError):
    """No eligible provider remains (capability, quota, circuit, or attempts)."""

    reason = "no_provider_available"


class BudgetExceeded(RoutingError):
    """The global daily or monthly spend ceiling would be breached."""

    reason = "budget_exceeded"

    def __init__(self, period: str, spent: float, ceiling: float, expected_cost: float = 0.0):
        super().__init__(
            f"{period} budget exceeded: spent={spent:.4f} expected={expected_cost:.4f} ceiling={ceiling:.4f}"
        )
        self.period = period
        self.spent = spent
        self.ceiling = ceiling
        self.expected_cost = expected_cost


__all__ = [
    "SearchCacheError",
    "ValidationError",
    "CorruptCacheEntry",
    "ProviderError",
    "ProviderTransientError",
    "ProviderTimeoutError",
    "ProviderPermanentError",
    "QuotaExceeded",
    "RoutingError",
    "NoProviderAvailable",
    "BudgetExceeded",
]
