"""
Reliability helpers for provider calls.

Runs each provider call on a worker pool with a timeout, classifies failures
as transient or permanent, and keeps a simple per-provider circuit breaker so
the router can skip backends that keep failing.
"""

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Set

from tools.search.errors import (
    ProviderError,
    ProviderPermanentError,
    ProviderTimeoutError,
    ProviderTransientError,
)

logger = logging.getLogger(__name__)


@dataclass
class ReliabilityPolicy:
    """Runtime policy for timeouts and circuit breaker behavior."""

    default_timeout_seconds: float = 20.0
    circuit_breaker_failures: int = 3
    circuit_breaker_reset_seconds: float = 60.0
    max_workers: int = 8


@dataclass
class _ProviderReliabilityState:
    consecutive_failures: int = 0
    opened_at: Optional[float] = None


class ProviderReliabilityManager:
    """
    Wrap provider calls with a timeout and circuit-breaker safeguards.

    `call()` raises ProviderTransientError for timeouts (ProviderTimeoutError) and unclassified
    exceptions, and lets ProviderPermanentError through unchanged. It never
    retries; fallback to another provider is the router's job.
    """

    def __init__(
        self,
        policy: Optional[ReliabilityPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.policy = policy or ReliabilityPolicy()
        self._clock = clock
        self._states: Dict[str, _ProviderReliabilityState] = {}
        self._lock = threading.Lock()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, int(self.policy.max_workers)),
            thread_name_prefix="provider-call",
        )

    def _state(self, provider_id: str) -> _ProviderReliabilityState:
        with self._lock:
            if provider_id not in self._states:
                self._states[provider_id] = _ProviderReliabilityState()
            return self._states[provider_id]

    def _record_success(self, provider_id: str) -> None:
        state = self._state(provider_id)
        with self._lock:
            state.consecutive_failures = 0
            state.opened_at = None

    def _record_failure(self, provider_id: str) -> None:
        state = self._state(provider_id)
        with self._lock:
            state.consecutive_failures += 1
            threshold = max(1, int(self.policy.circuit_breaker_failures))
            if state.consecutive_failures >= threshold and state.opened_at is None:
                state.opened_at = self._clock()
                logger.warning(
                    f"[reliability] opened circuit for provider={provider_id} "
                    f"after {state.consecutive_failures} failures"
                )

    def _reset_if_expired(self, provider_id: str) -> None:
        state = self._state(provider_id)
        with self._lock:
            if state.opened_at is None:
                return
            reset_after = max(0.0, float(self.policy.circuit_breaker_reset_seconds))
            if reset_after == 0.0 or (self._clock() - state.opened_at) >= reset_after:
                state.opened_at = None
                state.consecutive_failures = 0

    def is_open(self, provider_id: str) -> bool:
        """Return whether provider circuit is currently open."""
        self._reset_if_expired(provider_id)
        state = self._state(provider_id)
        with self._lock:
            return state.opened_at is not None

    def open_providers(self, provider_ids: Iterable[str]) -> Set[str]:
        return {p for p in provider_ids if self.is_open(p)}

    def call(self, provider_id: str, fn: Callable[[], Any], timeout: Optional[float] = None) -> Any:
        """Execute ``fn`` with a timeout, updating the provider's circuit."""
        if self.is_open(provider_id):
            raise ProviderTransientError(f"circuit open for provider={provider_id}", provider_id=provider_id)

        timeout = timeout if timeout is not None else self.policy.default_timeout_seconds
        future = self._executor.submit(fn)
        try:
            result = future.result(timeout=timeout)
        except concurrent.futures.TimeoutError as e:
            # A call that already started cannot be cancelled; callers settle it via `pending`.
            future.cancel()
            self._record_failure(provider_id)
            logger.warning(f"[reliability] provider={provider_id} timed out after {timeout}s")
            raise ProviderTimeoutError(
                f"provider {provider_id} timed out after {timeout}s", provider_id=provider_id, pending=future
            ) from e
        except ProviderPermanentError as e:
            e.provider_id = e.provider_id or provider_id
            logger.warning(f"[reliability] provider={provider_id} permanent failure: {e}")
            raise
        except ProviderError as e:
            self._record_failure(provider_id)
            e.provider_id = e.provider_id or provider_id
            logger.warning(f"[reliability] provider={provider_id} transient failure: {e}")
            raise
        except Exception as e:
            self._record_failure(provider_id)
            logger.warning(f"[reliability] provider={provider_id} failed: {e}")
            raise ProviderTransientError(str(e), provider_id=provider_id) from e

        self._record_success(provider_id)
        return result

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)
