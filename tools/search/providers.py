"""
Provider adapters.

Each adapter translates a provider's native response into SearchResult items
at the boundary, so nothing past this module knows provider response shapes.
Adapters signal failures by raising: ProviderPermanentError for requests that
cannot succeed on retry (bad credentials, malformed request), anything else
is treated as transient by the router.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import requests
from tavily import TavilyClient
from tavily.errors import (
    BadRequestError,
    ForbiddenError,
    InvalidAPIKeyError,
    MissingAPIKeyError,
    UsageLimitExceededError,
)
from tavily.errors import TimeoutError as TavilyTimeoutError

from common.config import Settings, settings as default_settings
from tools.search.errors import ProviderPermanentError, ProviderTransientError
from tools.search.models import ProviderResponse, SearchOptions, SearchResult
from tools.search.policy import CacheType

logger = logging.getLogger(__name__)

# Tavily client errors that a retry will not fix.
_TAVILY_PERMANENT = (BadRequestError, ForbiddenError, InvalidAPIKeyError, MissingAPIKeyError)


DEFAULT_TIMEOUT_S = 20


def _is_valid_api_key(api_key: str) -> bool:
    if not api_key or not isinstance(api_key, str):
        return False
    api_key = api_key.strip()
    if len(api_key) < 10:
        return False
    if api_key.lower() in {"test", "demo", "example", "your_api_key_here", "xxx"}:
        return False
    return True


def _sanitize_error_message(error: str) -> str:
    sanitized = str(error)
    sanitized = re.sub(r"https?://[^\s]+", "[URL_REDACTED]", sanitized)
    sanitized = re.sub(r"\b[A-Za-z0-9]{32,}\b", "[KEY_REDACTED]", sanitized)
    sanitized = re.sub(
        r"api[_\-]?key[\s=:]+[\w\-]+",
        "api_key=[REDACTED]",
        sanitized,
        flags=re.IGNORECASE,
    )
    sanitized = re.sub(r"bearer\s+[\w\-\.]+", "Bearer [REDACTED]", sanitized, flags=re.IGNORECASE)
    if len(sanitized) > 300:
        sanitized = sanitized[:300] + "..."
    return sanitized


def _safe_json(resp: requests.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return None


def _check_response(resp: requests.Response, provider: str) -> None:
    """Map HTTP status to transient (429 / 5xx) or permanent (other 4xx) errors."""
    if resp.status_code == 200:
        return
    msg = _sanitize_error_message(resp.text)
    error = f"{provider} API error ({resp.status_code}): {msg}"
    if resp.status_code == 429 or resp.status_code >= 500:
        raise ProviderTransientError(error, provider_id=provider)
    raise ProviderPermanentError(error, provider_id=provider)


def _query_with_location(query: str, location: str) -> str:
    return f"{query} near {location}" if location else query


class SearchProvider(ABC):
    """Abstract base class for search providers."""

    capabilities: tuple = ("web_search",)

    def __init__(self, name: str, api_key: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT_S):
        self.name = name
        self.api_key = api_key
        self.timeout = timeout

    @abstractmethod
    def search(self, query: str, location: str, options: SearchOptions) -> ProviderResponse:
        """Execute a search and return normalized results."""

    def is_available(self) -> bool:
        """Whether the provider is usable (API key configured, etc.)."""
        return _is_valid_api_key(self.api_key or "")

    def _require_key(self) -> str:
        if not self.is_available():
            raise ProviderPermanentError(f"{self.name} API key is not configured", provider_id=self.name)
        return (self.api_key or "").strip()


class TavilyProvider(SearchProvider):
    """Tavily search (web, news, research)."""

    capabilities = ("web_search", "news", "research", "events")

    def __init__(self, api_key: Optional[str] = None, client: Optional[TavilyClient] = None):
        super().__init__("tavily", api_key if api_key is not None else default_settings.tavily_api_key)
        self._client = client

    def is_available(self) -> bool:
        return self._client is not None or super().is_available()

    def _get_client(self) -> TavilyClient:
        if self._client is None:
            self._client = TavilyClient(api_key=self._require_key())
        return self._client

    def search(self, query: str, location: str, options: SearchOptions) -> ProviderResponse:
        client = self._get_client()
        params: Dict[str, Any] = {
            "query": _query_with_location(query, location),
            "max_results": options.max_results,
            "search_depth": "advanced" if options.cache_type == CacheType.RESEARCH else "basic",
        }
        if options.cache_type == CacheType.NEWS:
            params["topic"] = "news"

        try:
            response = client.search(**params)
        except _TAVILY_PERMANENT as e:
            raise ProviderPermanentError(_sanitize_error_message(str(e)), provider_id=self.name) from e
        except (requests.RequestException, UsageLimitExceededError, TavilyTimeoutError) as e:
            raise ProviderTransientError(_sanitize_error_message(str(e)), provider_id=self.name) from e

        results = []
        seen_urls = set()
        for r in response.get("results", []) or []:
            url = r.get("url", "")
            if not url or url in seen_urls:
                continue
            seen_urls.add(url)
            results.append(SearchResult(
                title=r.get("title", "") or "",
                url=url,
                snippet=(r.get("content", "") or "")[:500],
                content=r.get("raw_content", "") or "",
                score=float(r.get("score", 0.5) or 0.0),
                published_date=r.get("published_date"),
                provider=self.name,
            ))
        return ProviderResponse(items=results[: options.max_results])


class SerperProvider(SearchProvider):
    """Serper.dev Google Search (web, places, news)."""

    capabilities = ("web_search", "places", "news", "events")

    _ENDPOINTS = {
        CacheType.VENUE: ("https://google.serper.dev/places", "places"),
        CacheType.NEWS: ("https://google.serper.dev/news", "news"),
    }
    _DEFAULT_ENDPOINT = ("https://google.serper.dev/search", "organic")

    def __init__(self, api_key: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT_S):
        super().__init__(
            "serper",
            api_key if api_key is not None else default_settings.serper_api_key,
            timeout=timeout,
        )

    def search(self, query: str, location: str, options: SearchOptions) -> ProviderResponse:
        api_key = self._require_key()
        url, result_field = self._ENDPOINTS.get(options.cache_type, self._DEFAULT_ENDPOINT)
        headers = {"X-API-KEY": api_key, "Content-Type": "application/json"}
        payload: Dict[str, Any] = {"q": query, "num": int(options.max_results)}
        if location:
            payload["location"] = location

        try:
            resp = requests.post(url, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise ProviderTransientError(_sanitize_error_message(str(e)), provider_id=self.name) from e
        _check_response(resp, self.name)

        data = _safe_json(resp) or {}
        results: List[SearchResult] = []
        items = data.get(result_field) or []
        if isinstance(items, list):
            for idx, item in enumerate(items, 1):
                if not isinstance(item, dict):
                    continue
                if result_field == "places":
                    results.append(SearchResult(
                        title=item.get("title", "") or "",
                        url=item.get("website", "") or "",
                        snippet=item.get("address", "") or "",
                        score=float(item.get("rating") or 0.0) / 5.0,
                        provider=self.name,
                        extra={
                            "address": item.get("address"),
                            "latitude": item.get("latitude"),
                            "longitude": item.get("longitude"),
                            "category": item.get("category"),
                            "position": int(item.get("position") or idx),
                        },
                    ))
                else:
                    results.append(SearchResult(
                        title=item.get("title", "") or "",
                        url=item.get("link", "") or "",
                        snippet=item.get("snippet", "") or "",
                        published_date=item.get("date"),
                        provider=self.name,
                        extra={"position": int(item.get("position") or idx)},
                    ))

        return ProviderResponse(items=results[: options.max_results])


class BraveProvider(SearchProvider):
    """Brave Search (web, news)."""

    capabilities = ("web_search", "news")

    def __init__(self, api_key: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT_S):
        super().__init__(
            "brave",
            api_key if api_key is not None else default_settings.brave_api_key,
            timeout=timeout,
        )

    def search(self, query: str, location: str, options: SearchOptions) -> ProviderResponse:
        api_key = self._require_key()
        if options.cache_type == CacheType.NEWS:
            url, result_path = "https://api.search.brave.com/res/v1/news/search", ("results",)
        else:
            url, result_path = "https://api.search.brave.com/res/v1/web/search", ("web", "results")

        headers = {"Accept": "application/json", "X-Subscription-Token": api_key}
        params = {"q": _query_with_location(query, location), "count": options.max_results}

        try:
            resp = requests.get(url, headers=headers, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise ProviderTransientError(_sanitize_error_message(str(e)), provider_id=self.name) from e
        _check_response(resp, self.name)

        data: Any = _safe_json(resp) or {}
        for part in result_path:
            data = data.get(part, {}) if isinstance(data, dict) else {}

        results = []
        for r in data if isinstance(data, list) else []:
            if not isinstance(r, dict):
                continue
            results.append(SearchResult(
                title=r.get("title", "") or "",
                url=r.get("url", "") or "",
                snippet=r.get("description", "") or "",
                published_date=r.get("age"),
                provider=self.name,
            ))
        return ProviderResponse(items=results[: options.max_results])


ProviderFn = Callable[[str, str, SearchOptions], Union[ProviderResponse, Dict[str, Any], List[Any]]]


class CallableProvider(SearchProvider):
    """
    Wrap a plain function as a provider.

    The function may return a ProviderResponse, a ``{"items": [...], "cost": x}``
    dict, or a bare list of items (dicts or SearchResult).
    """

    def __init__(self, name: str, fn: ProviderFn, capabilities: Iterable[str] = ("web_search",)):
        super().__init__(name)
        self.fn = fn
        self.capabilities = tuple(capabilities)

    def is_available(self) -> bool:
        return True

    def search(self, query: str, location: str, options: SearchOptions) -> ProviderResponse:
        raw = self.fn(query, location, options)
        if isinstance(raw, ProviderResponse):
            return raw
        cost = None
        if isinstance(raw, dict):
            cost = raw.get("cost")
            raw = raw.get("items") or []
        items = [
            r if isinstance(r, SearchResult) else SearchResult.from_dict(r, provider=self.name)
            for r in raw
        ]
        return ProviderResponse(items=items, cost=None if cost is None else float(cost))


_ADAPTERS: Dict[str, Callable[[Settings], SearchProvider]] = {
    "tavily": lambda s: TavilyProvider(api_key=s.tavily_api_key),
    "serper": lambda s: SerperProvider(api_key=s.serper_api_key),
    "brave": lambda s: BraveProvider(api_key=s.brave_api_key),
}


def default_providers(config: Optional[Settings] = None) -> Dict[str, SearchProvider]:
    """Build the configured adapters that have credentials."""
    config = config or default_settings
    providers: Dict[str, SearchProvider] = {}
    for name in config.search_engines_list:
        factory = _ADAPTERS.get(name)
        if factory is None:
            logger.warning(f"Unknown search engine '{name}', skipping")
            continue
        provider = factory(config)
        if not provider.is_available():
            logger.info(f"[providers] {name} has no API key configured, skipping")
            continue
        providers[name] = provider
    return providers


__all__ = [
    "SearchProvider",
    "TavilyProvider",
    "SerperProvider",
    "BraveProvider",
    "CallableProvider",
    "default_providers",
]
