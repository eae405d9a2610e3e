"""
Cache-first search orchestration.

Per request:

    START -> EXACT_CHECK -> FUZZY_CHECK -> ROUTE -> PROVIDER_CALL -> STORE -> METRICS -> DONE
                                             |            |
                                             +-> ERROR <--+

A hit at EXACT_CHECK or FUZZY_CHECK goes straight to METRICS. The miss path
runs under a per-key singleflight so concurrent identical requests share one
provider call. PROVIDER_CALL loops back to ROUTE for the next-cheapest
provider on transient failure. ERROR serves stale or near-match cache data
flagged as degraded when any exists.

Batch submissions are grouped by the deduplicator first; each group's
representative goes through the single-request path once and its result is
fanned out to every member in submission order.
"""

import asyncio
import logging
import time
import uuid
from concurrent.futures import Future
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from common.concurrency import ConcurrencyController, PeriodicWorker, SingleFlight
from common.config import Settings, settings as default_settings
from common.metrics import MetricEvent, MetricsRecorder
from search_cache.dedup import QueryDeduplicator, QueryRecord
from search_cache.entry import CACHE_SEED, CacheEntry, make_cache_key
from search_cache.index import CacheIndex
from search_cache.store import CacheStore
from tools.search.errors import (
    NoProviderAvailable,
    ProviderError,
    ProviderPermanentError,
    ProviderTimeoutError,
    ProviderTransientError,
    RoutingError,
    SearchCacheError,
    ValidationError,
)
from tools.search.models import (
    Outcome,
    ProviderResponse,
    SearchOptions,
    SearchRequest,
    SearchResponse,
)
from tools.search.policy import SearchPolicy, default_policy
from tools.search.providers import SearchProvider, default_providers
from tools.search.reliability import ProviderReliabilityManager, ReliabilityPolicy
from tools.search.router import CostAwareRouter, Reservation

logger = logging.getLogger(__name__)


class RequestState(str, Enum):
    START = "start"
    EXACT_CHECK = "exact_check"
    FUZZY_CHECK = "fuzzy_check"
    ROUTE = "route"
    PROVIDER_CALL = "provider_call"
    STORE = "store"
    METRICS = "metrics"
    DONE = "done"
    ERROR = "error"


@dataclass
class RequestContext:
    """Per-request working state; discarded when the request finishes."""
    request_id: str
    query: str
    normalized_query: str
    location: str
    options: SearchOptions
    cache_key: str
    started: float = field(default_factory=time.monotonic)
    state: RequestState = RequestState.START
    history: List[RequestState] = field(default_factory=lambda: [RequestState.START])
    stale_entry: Optional[CacheEntry] = None

    def transition(self, state: RequestState) -> None:
        self.state = state
        self.history.append(state)

    @property
    def latency_ms(self) -> float:
        return (time.monotonic() - self.started) * 1000

    @property
    def log_extra(self) -> Dict[str, str]:
        return {
            "request_id": self.request_id,
            "cache_key": self.cache_key,
            "cache_type": self.options.cache_type.value,
        }


class SearchOrchestrator:
    """
    Public entry point of the cache-first search layer.

    Owns no persistent state itself; it wires together the store, index,
    deduplicator, router, reliability manager and metrics recorder, each of
    which can be injected for tests. Call start() to launch the background
    workers (index rebuild, quota reset, cache maintenance) and close() to
    stop them.

    Usage:
        with SearchOrchestrator(default_providers()) as search:
            response = search.search("coffee shops", "Minneapolis", cache_type="venue")
    """

    def __init__(
        self,
        providers: Union[Dict[str, SearchProvider], Iterable[SearchProvider]],
        policy: Optional[SearchPolicy] = None,
        store: Optional[CacheStore] = None,
        index: Optional[CacheIndex] = None,
        deduplicator: Optional[QueryDeduplicator] = None,
        router: Optional[CostAwareRouter] = None,
        metrics: Optional[MetricsRecorder] = None,
        reliability: Optional[ProviderReliabilityManager] = None,
        config: Optional[Settings] = None,
    ):
        config = config or default_settings
        if not isinstance(providers, dict):
            providers = {p.name: p for p in providers}
        self.providers: Dict[str, SearchProvider] = dict(providers)

        policy = policy or default_policy()
        routable = [p for p in policy.providers if p.provider_id in self.providers]
        for p in policy.providers:
            if p.provider_id not in self.providers:
                logger.warning(f"[orchestrator] provider {p.provider_id} has a policy but no adapter; ignored")
        for name in self.providers:
            if policy.provider(name) is None:
                logger.warning(f"[orchestrator] provider {name} has no policy entry; it will never be routed")
        self.policy = policy.model_copy(update={"providers": routable})

        self.store = store or CacheStore(
            cache_dir=config.cache_dir,
            max_memory_entries=config.memory_max_entries,
        )
        self.index = index or CacheIndex(
            self.store,
            rebuild_interval_seconds=config.index_rebuild_interval_seconds,
        )
        self.dedup = deduplicator or QueryDeduplicator(
            thresholds=self.policy.thresholds(),
            location_threshold=self.policy.location_similarity_threshold,
            max_query_length=config.max_query_length,
        )
        self.reliability = reliability or ProviderReliabilityManager(
            ReliabilityPolicy(
                default_timeout_seconds=config.provider_timeout_seconds,
                circuit_breaker_failures=config.circuit_breaker_failures,
                circuit_breaker_reset_seconds=config.circuit_breaker_reset_seconds,
                max_workers=config.provider_max_workers,
            )
        )
        self.router = router or CostAwareRouter(
            self.policy,
            is_open=self.reliability.is_open,
            state_path=config.quota_state_file,
            attempt_id_history=config.quota_attempt_id_history,
        )
        self.metrics = metrics or MetricsRecorder(
            avg_costs={ct.value: p.avg_cost for ct, p in self.policy.cache_types.items()},
            retention_days=config.metrics_retention_days,
            events_path=config.metrics_events_path or None,
            history_path=config.metrics_history_path or None,
        )
        self.controller = ConcurrencyController(max_concurrency=config.max_concurrency)
        self._flight: SingleFlight[SearchResponse] = SingleFlight()
        self._maintenance = PeriodicWorker(
            name="cache-maintenance",
            task=self.run_maintenance,
            interval=config.index_rebuild_interval_seconds,
        )

    @classmethod
    def from_settings(
        cls, config: Optional[Settings] = None, policy: Optional[SearchPolicy] = None
    ) -> "SearchOrchestrator":
        """Orchestrator over the bundled adapters that have API keys configured."""
        config = config or default_settings
        return cls(default_providers(config), policy=policy, config=config)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> "SearchOrchestrator":
        self.index.start()
        self.router.start()
        self._maintenance.start()
        logger.info(f"[orchestrator] started with providers: {', '.join(self.providers) or 'none'}")
        return self

    def close(self) -> None:
        self._maintenance.stop()
        self.index.stop()
        self.router.stop()
        self.reliability.shutdown()
        logger.info("[orchestrator] stopped")

    def __enter__(self) -> "SearchOrchestrator":
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def run_maintenance(self) -> Dict[str, int]:
        """Evict expired cache entries and prune old metric events."""
        evicted = self.store.evict_expired()
        pruned = self.metrics.prune()
        return {"evicted": evicted, "pruned": pruned}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def search(
        self,
        query: str,
        location: Optional[str] = None,
        options: Optional[SearchOptions] = None,
        **option_kwargs: Any,
    ) -> SearchResponse:
        """
        Serve one query cache-first.

        Raises ValidationError for malformed input; every other condition
        is reported through the response (``degraded`` / ``error``).
        """
        ctx = self._prepare(query, location, self._options(options, option_kwargs))
        return self._resolve(ctx)

    def search_batch(self, requests: Sequence[Union[SearchRequest, str]]) -> List[SearchResponse]:
        """
        Serve a batch, merging near-duplicate queries before any provider call.

        Responses come back in submission order. All inputs are validated
        before any cache or provider work starts.
        """
        contexts = []
        for req in requests:
            if isinstance(req, str):
                req = SearchRequest(query=req)
            contexts.append(self._prepare(req.query, req.location, req.options or SearchOptions()))
        if not contexts:
            return []

        records = [
            QueryRecord(
                raw_query=ctx.query,
                normalized_query=ctx.normalized_query,
                location=ctx.location,
                cache_type=ctx.options.cache_type,
                max_results=ctx.options.max_results,
                index=i,
            )
            for i, ctx in enumerate(contexts)
        ]
        groups = self.dedup.group_batch(records)
        representatives = [contexts[g.representative.index] for g in groups]
        logger.info(f"[orchestrator] batch of {len(contexts)} queries resolved as {len(groups)} groups")

        results = self.controller.map_with_limit(self._resolve, representatives)

        responses: List[Optional[SearchResponse]] = [None] * len(contexts)
        for group, rep_response in zip(groups, results):
            rep = group.representative
            for member in group.members:
                if member.index == rep.index:
                    responses[member.index] = rep_response
                    continue
                responses[member.index] = self._fan_out(
                    contexts[member.index], contexts[rep.index], rep_response
                )
        return responses

    async def asearch(
        self,
        query: str,
        location: Optional[str] = None,
        options: Optional[SearchOptions] = None,
        **option_kwargs: Any,
    ) -> SearchResponse:
        return await asyncio.to_thread(self.search, query, location, options, **option_kwargs)

    async def asearch_batch(self, requests: Sequence[Union[SearchRequest, str]]) -> List[SearchResponse]:
        return await asyncio.to_thread(self.search_batch, requests)

    def cache_key_for(
        self,
        query: str,
        location: Optional[str] = None,
        options: Optional[SearchOptions] = None,
        **option_kwargs: Any,
    ) -> str:
        return self._prepare(query, location, self._options(options, option_kwargs)).cache_key

    def stats(self) -> Dict[str, Any]:
        return {
            "store": self.store.stats(),
            "index": self.index.stats(),
            "router": self.router.snapshot(),
            "metrics": self.metrics.summary().to_dict(),
        }

    # ------------------------------------------------------------------
    # Request preparation
    # ------------------------------------------------------------------

    @staticmethod
    def _options(options: Optional[SearchOptions], option_kwargs: Dict[str, Any]) -> SearchOptions:
        if options is not None and option_kwargs:
            raise ValidationError("pass either options or option keyword arguments, not both")
        if options is not None:
            return options
        try:
            return SearchOptions(**option_kwargs)
        except TypeError as e:
            raise ValidationError(str(e)) from e

    def _prepare(self, query: str, location: Optional[str], options: SearchOptions) -> RequestContext:
        if not isinstance(options, SearchOptions):
            raise ValidationError(f"options must be SearchOptions, got {type(options).__name__}")
        normalized = self.dedup.normalize(query)
        norm_location = self.dedup.normalize_location(location)
        key = make_cache_key(normalized, norm_location, options.cache_type.value, options.key_options())
        return RequestContext(
            request_id=uuid.uuid4().hex,
            query=query[: self.dedup.max_query_length].strip(),
            normalized_query=normalized,
            location=norm_location,
            options=options,
            cache_key=key,
        )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _resolve(self, ctx: RequestContext) -> SearchResponse:
        ctx.transition(RequestState.EXACT_CHECK)
        ctx.stale_entry = self.store.peek(ctx.cache_key)
        entry = self.store.get(ctx.cache_key)
        if entry is not None:
            return self._finish_hit(ctx, entry, Outcome.EXACT_HIT)

        if ctx.options.fuzzy_match:
            ctx.transition(RequestState.FUZZY_CHECK)
            entry = self._fuzzy_lookup(ctx)
            if entry is not None:
                return self._finish_hit(ctx, entry, Outcome.FUZZY_HIT)

        response, leader = self._flight.do(ctx.cache_key, lambda: self._resolve_miss(ctx))
        if not leader:
            ok = response.ok and not response.degraded
            self._record(
                ctx,
                Outcome.EXACT_HIT if ok else Outcome.MISS_ERROR,
                cost=0.0,
                provider_id=response.source_provider or None,
                degraded=response.degraded,
            )
            logger.debug(f"[orchestrator] joined in-flight call for {ctx.cache_key}", extra=ctx.log_extra)
        return response

    def _resolve_miss(self, ctx: RequestContext) -> SearchResponse:
        # Another flight may have stored the entry since our exact check.
        entry = self.store.get(ctx.cache_key)
        if entry is not None:
            return self._finish_hit(ctx, entry, Outcome.EXACT_HIT)

        options = ctx.options
        cache_policy = self.policy.for_cache_type(options.cache_type)
        attempts = options.max_provider_attempts or self.policy.max_provider_attempts
        tried: List[str] = []
        last_error: Optional[SearchCacheError] = None

        for attempt in range(attempts):
            ctx.transition(RequestState.ROUTE)
            try:
                reservation = self.router.reserve(cache_policy.capability, options.cache_type, exclude=tried)
            except RoutingError as e:
                last_error = e
                break

            provider_id = reservation.provider_id
            tried.append(provider_id)
            provider = self.providers[provider_id]

            ctx.transition(RequestState.PROVIDER_CALL)
            try:
                result = self.reliability.call(
                    provider_id,
                    lambda: provider.search(ctx.query, ctx.location, options),
                    timeout=reservation.timeout_seconds,
                )
                if not isinstance(result, ProviderResponse):
                    raise ProviderPermanentError(
                        f"adapter returned {type(result).__name__}, expected ProviderResponse",
                        provider_id=provider_id,
                    )
            except ProviderPermanentError as e:
                self.router.release(reservation)
                last_error = e
                break
            except ProviderTimeoutError as e:
                if e.pending is not None:
                    self._hold_until_done(reservation, e.pending)
                else:
                    self.router.release(reservation)
                last_error = e
                logger.info(
                    f"[orchestrator] attempt {attempt + 1}/{attempts} via {provider_id} timed out",
                    extra=ctx.log_extra,
                )
                continue
            except ProviderTransientError as e:
                self.router.release(reservation)
                last_error = e
                logger.info(
                    f"[orchestrator] attempt {attempt + 1}/{attempts} via {provider_id} failed: {e}",
                    extra=ctx.log_extra,
                )
                continue

            self.router.record_usage(provider_id, result.cost, attempt_id=reservation.attempt_id)
            cost = reservation.expected_cost if result.cost is None else max(0.0, float(result.cost))

            ctx.transition(RequestState.STORE)
            entry = CacheEntry.create(
                key=ctx.cache_key,
                normalized_query=ctx.normalized_query,
                location=ctx.location,
                cache_type=options.cache_type.value,
                payload=[item.to_dict() for item in result.items],
                source_provider=provider_id,
                cost=cost,
                ttl_seconds=cache_policy.ttl_seconds,
                options=options.key_options(),
                now=self.store.now(),
            )
            entry = self.store.put(entry)
            self.index.add(entry)

            ctx.transition(RequestState.METRICS)
            self._record(ctx, Outcome.MISS_SUCCESS, cost=cost, provider_id=provider_id)
            ctx.transition(RequestState.DONE)
            logger.info(
                f"[orchestrator] miss served by {provider_id} ({len(entry.payload)} items, ${cost:.4f})",
                extra=ctx.log_extra,
            )
            return SearchResponse(
                items=[dict(i) for i in entry.payload],
                source_provider=provider_id,
                cached=False,
                cost=cost,
                query=ctx.query,
                cache_key=ctx.cache_key,
                outcome=Outcome.MISS_SUCCESS,
            )

        if last_error is None or isinstance(last_error, ProviderError) and not last_error.permanent:
            last_error = NoProviderAvailable(f"all {attempts} provider attempts failed: {last_error}")
        return self._degraded(ctx, last_error)

    def _hold_until_done(self, reservation: Reservation, pending: Future) -> None:
        """
        Keep a timed-out call's quota slot until its worker thread finishes.

        Providers bill calls that complete after we stop waiting, so a late
        success is committed as usage; a late failure or a call cancelled
        before it started gives the slot back. Late results are not cached.
        """

        def settle(done: Future) -> None:
            if done.cancelled() or done.exception() is not None:
                self.router.release(reservation)
                return
            result = done.result()
            cost = result.cost if isinstance(result, ProviderResponse) else None
            self.router.record_usage(reservation.provider_id, cost, attempt_id=reservation.attempt_id)
            logger.info(
                f"[orchestrator] late response from {reservation.provider_id} counted as usage "
                f"(attempt={reservation.attempt_id})"
            )

        pending.add_done_callback(settle)

    def _fuzzy_lookup(self, ctx: RequestContext) -> Optional[CacheEntry]:
        candidates = [
            c for c in self.index.candidates(
                ctx.normalized_query, ctx.options.cache_type.value, options=ctx.options.key_options()
            )
            if c.key != ctx.cache_key
        ]
        while candidates:
            match = self.dedup.best_match(
                ctx.normalized_query, ctx.location, ctx.options.cache_type, candidates
            )
            if match is None:
                return None
            record, score = match
            entry = self.store.get(record.key)
            if entry is not None:
                logger.debug(
                    f"[orchestrator] fuzzy hit {record.normalized_query!r} (score={score:.3f})",
                    extra=ctx.log_extra,
                )
                self._seed(ctx, entry)
                return entry
            candidates.remove(record)
        return None

    def _stale_fallback(self, ctx: RequestContext) -> Optional[CacheEntry]:
        if ctx.stale_entry is not None:
            return ctx.stale_entry
        candidates = self.index.candidates(
            ctx.normalized_query,
            ctx.options.cache_type.value,
            include_expired=True,
            options=ctx.options.key_options(),
        )
        match = self.dedup.best_match(ctx.normalized_query, ctx.location, ctx.options.cache_type, candidates)
        if match is None:
            return None
        return self.store.peek(match[0].key)

    def _degraded(self, ctx: RequestContext, error: SearchCacheError) -> SearchResponse:
        ctx.transition(RequestState.ERROR)
        reason = getattr(error, "reason", None) or ("provider_failed" if isinstance(error, ProviderError) else "error")
        fallback = self._stale_fallback(ctx)

        if fallback is not None:
            logger.warning(
                f"[orchestrator] serving degraded cache data ({reason}): {error}", extra=ctx.log_extra
            )
            response = SearchResponse(
                items=[dict(i) for i in fallback.payload],
                source_provider=fallback.source_provider,
                cached=True,
                cost=0.0,
                degraded=True,
                query=ctx.query,
                cache_key=ctx.cache_key,
                outcome=Outcome.MISS_ERROR,
            )
        else:
            logger.warning(f"[orchestrator] search unavailable ({reason}): {error}", extra=ctx.log_extra)
            response = SearchResponse(
                items=[],
                source_provider="",
                cached=False,
                cost=0.0,
                degraded=True,
                query=ctx.query,
                cache_key=ctx.cache_key,
                outcome=Outcome.MISS_ERROR,
                error=reason,
            )

        self._record(ctx, Outcome.MISS_ERROR, cost=0.0, degraded=True)
        return response

    def _finish_hit(self, ctx: RequestContext, entry: CacheEntry, outcome: Outcome) -> SearchResponse:
        ctx.transition(RequestState.METRICS)
        self._record(ctx, outcome, cost=0.0, provider_id=entry.source_provider)
        ctx.transition(RequestState.DONE)
        return SearchResponse(
            items=[dict(i) for i in entry.payload],
            source_provider=entry.source_provider,
            cached=True,
            cost=0.0,
            query=ctx.query,
            cache_key=ctx.cache_key,
            outcome=outcome,
        )

    def _fan_out(
        self, ctx: RequestContext, rep_ctx: RequestContext, rep_response: SearchResponse
    ) -> SearchResponse:
        """Hand a representative's result to another member of its batch group."""
        if not rep_response.ok or rep_response.degraded:
            self._record(ctx, Outcome.MISS_ERROR, cost=0.0, degraded=True)
            return replace(rep_response, query=ctx.query, cache_key=ctx.cache_key, cost=0.0)

        identical = ctx.cache_key == rep_ctx.cache_key
        outcome = Outcome.EXACT_HIT if identical else Outcome.FUZZY_HIT
        if not identical:
            source = self.store.peek(rep_ctx.cache_key)
            if source is not None:
                self._seed(ctx, source)
        self._record(ctx, outcome, cost=0.0, provider_id=rep_response.source_provider or None)
        return replace(
            rep_response,
            items=[dict(i) for i in rep_response.items],
            cached=True,
            cost=0.0,
            query=ctx.query,
            cache_key=ctx.cache_key,
            outcome=outcome,
        )

    def _seed(self, ctx: RequestContext, source: CacheEntry) -> None:
        """Store a zero-cost copy under this request's own key, expiring with its source."""
        now = self.store.now()
        if source.key == ctx.cache_key or source.is_expired(now):
            return
        seed = CacheEntry(
            key=ctx.cache_key,
            normalized_query=ctx.normalized_query,
            location=ctx.location,
            cache_type=ctx.options.cache_type.value,
            payload=list(source.payload),
            source_provider=CACHE_SEED,
            cost=0.0,
            created_at=now,
            expires_at=source.expires_at,
            options=ctx.options.key_options(),
        )
        self.store.put(seed)
        self.index.add(seed)

    def _record(
        self,
        ctx: RequestContext,
        outcome: Outcome,
        cost: float,
        provider_id: Optional[str] = None,
        degraded: bool = False,
    ) -> None:
        self.metrics.record(
            MetricEvent(
                outcome=outcome.value,
                cache_type=ctx.options.cache_type.value,
                latency_ms=ctx.latency_ms,
                cost=cost,
                provider_id=provider_id,
                request_id=ctx.request_id,
                degraded=degraded,
            )
        )


__all__ = ["RequestContext", "RequestState", "SearchOrchestrator"]
