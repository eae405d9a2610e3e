"""
Cost-aware provider routing.

Picks the cheapest provider that can serve a capability and still has daily
and monthly quota, enforces global spend ceilings, and owns every quota
counter. Selection, budget check and slot reservation happen under one lock,
so concurrent requests cannot jointly overshoot a provider's limit or the
budget beyond the configured ``budget_race_tolerance``.

Counters reset at UTC day / month boundaries from a scheduled worker only.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import uuid
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from common.concurrency import PeriodicWorker
from tools.search.errors import BudgetExceeded, NoProviderAvailable, QuotaExceeded
from tools.search.policy import CacheType, ProviderPolicy, SearchPolicy

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProviderQuota:
    """Quota and pricing state for one provider."""
    provider_id: str
    cost_per_request: float
    free_quota_per_month: int
    daily_limit: int
    monthly_limit: int
    priority: int = 100
    used_today: int = 0
    used_this_month: int = 0
    in_flight: int = 0

    @classmethod
    def from_policy(cls, policy: ProviderPolicy) -> "ProviderQuota":
        return cls(
            provider_id=policy.provider_id,
            cost_per_request=policy.cost_per_request,
            free_quota_per_month=policy.free_quota_per_month,
            daily_limit=policy.daily_limit,
            monthly_limit=policy.monthly_limit,
            priority=policy.priority,
        )

    def exhausted_period(self) -> Optional[str]:
        if self.used_today + self.in_flight >= self.daily_limit:
            return "daily"
        if self.used_this_month + self.in_flight >= self.monthly_limit:
            return "monthly"
        return None

    def expected_cost(self) -> float:
        """Zero while the monthly free quota lasts, else the per-request price."""
        if self.used_this_month + self.in_flight < self.free_quota_per_month:
            return 0.0
        return self.cost_per_request

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Reservation:
    """A provider slot held for one dispatch attempt."""
    attempt_id: str
    provider_id: str
    expected_cost: float
    timeout_seconds: Optional[float] = None
    reserved_at: datetime = field(default_factory=utc_now)


class CostAwareRouter:
    """
    Selects providers, reserves quota, records usage and enforces budgets.

    Usage:
        router = CostAwareRouter(policy)
        reservation = router.reserve("places", CacheType.VENUE)
        ...call the provider...
        router.record_usage(reservation.provider_id, cost, attempt_id=reservation.attempt_id)
        # or on failure
        router.release(reservation)
    """

    def __init__(
        self,
        policy: SearchPolicy,
        clock: Callable[[], datetime] = utc_now,
        is_open: Optional[Callable[[str], bool]] = None,
        state_path: Optional[Union[str, Path]] = None,
        attempt_id_history: int = 10000,
    ):
        self.policy = policy
        self._clock = clock
        self._is_open = is_open
        self.state_path = Path(state_path) if state_path else None
        self.attempt_id_history = max(1, int(attempt_id_history))

        self._lock = threading.Lock()
        self._policies: Dict[str, ProviderPolicy] = {p.provider_id: p for p in policy.providers}
        self._quotas: Dict[str, ProviderQuota] = {
            p.provider_id: ProviderQuota.from_policy(p) for p in policy.providers
        }
        self._reservations: Dict[str, Reservation] = {}
        self._committed: "OrderedDict[str, None]" = OrderedDict()
        self._reserved_spend = 0.0
        self.spent_today = 0.0
        self.spent_this_month = 0.0

        now = self._clock()
        self._day: date = now.date()
        self._month: Tuple[int, int] = (now.year, now.month)
        self._worker: Optional[PeriodicWorker] = None

        if self.state_path is not None:
            self._load_state()
        self.reset_counters(now)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _eligible(self, capability: str, cache_type: CacheType, exclude: Iterable[str]) -> List[ProviderQuota]:
        excluded = set(exclude)
        eligible = []
        for provider_id, quota in self._quotas.items():
            if provider_id in excluded:
                continue
            if not self._policies[provider_id].serves(capability, cache_type):
                continue
            if self._is_open is not None and self._is_open(provider_id):
                logger.debug(f"[router] skipping {provider_id}: circuit open")
                continue
            period = quota.exhausted_period()
            if period is not None:
                logger.debug(f"[router] skipping: {QuotaExceeded(provider_id, period)}")
                continue
            eligible.append(quota)
        eligible.sort(key=lambda q: (q.cost_per_request, q.priority, q.provider_id))
        return eligible

    def select_provider(self, capability: str, cache_type, exclude: Iterable[str] = ()) -> str:
        """Cheapest eligible provider id; raises NoProviderAvailable."""
        cache_type = CacheType.parse(cache_type)
        with self._lock:
            eligible = self._eligible(capability, cache_type, exclude)
        if not eligible:
            raise NoProviderAvailable(
                f"no provider with capability={capability} cache_type={cache_type.value} has capacity"
            )
        return eligible[0].provider_id

    # ------------------------------------------------------------------
    # Budget
    # ------------------------------------------------------------------

    def _check_budget_locked(self, expected_cost: float) -> None:
        tolerance = self.policy.budget_race_tolerance
        for period, spent, ceiling in (
            ("daily", self.spent_today, self.policy.daily_budget),
            ("monthly", self.spent_this_month, self.policy.monthly_budget),
        ):
            if ceiling is None:
                continue
            committed = spent + self._reserved_spend
            if spent >= ceiling or committed + expected_cost > ceiling + tolerance:
                raise BudgetExceeded(period, committed, ceiling, expected_cost)

    def check_budget(self, expected_cost: float = 0.0) -> None:
        """Raise BudgetExceeded if a call costing ``expected_cost`` would breach a ceiling."""
        with self._lock:
            self._check_budget_locked(expected_cost)

    # ------------------------------------------------------------------
    # Reservation lifecycle
    # ------------------------------------------------------------------

    def reserve(
        self,
        capability: str,
        cache_type,
        exclude: Iterable[str] = (),
        attempt_id: Optional[str] = None,
    ) -> Reservation:
        """
        Atomically select a provider, check the budget and hold one slot.

        Raises NoProviderAvailable or BudgetExceeded. The slot counts against
        quota and budget until record_usage() or release().
        """
        cache_type = CacheType.parse(cache_type)
        with self._lock:
            eligible = self._eligible(capability, cache_type, exclude)
            if not eligible:
                raise NoProviderAvailable(
                    f"no provider with capability={capability} cache_type={cache_type.value} has capacity"
                )
            quota = eligible[0]
            expected = quota.expected_cost()
            self._check_budget_locked(expected)

            quota.in_flight += 1
            self._reserved_spend += expected
            reservation = Reservation(
                attempt_id=attempt_id or uuid.uuid4().hex,
                provider_id=quota.provider_id,
                expected_cost=expected,
                timeout_seconds=self._policies[quota.provider_id].timeout_seconds,
                reserved_at=self._clock(),
            )
            self._reservations[reservation.attempt_id] = reservation

        logger.debug(
            f"[router] reserved {reservation.provider_id} for {cache_type.value} "
            f"(expected_cost={expected:.4f}, attempt={reservation.attempt_id})"
        )
        return reservation

    def _drop_reservation_locked(self, attempt_id: str) -> Optional[Reservation]:
        reservation = self._reservations.pop(attempt_id, None)
        if reservation is None:
            return None
        quota = self._quotas.get(reservation.provider_id)
        if quota is not None:
            quota.in_flight = max(0, quota.in_flight - 1)
        self._reserved_spend = max(0.0, self._reserved_spend - reservation.expected_cost)
        return reservation

    def release(self, reservation: Reservation) -> None:
        """Give back a slot whose call failed."""
        with self._lock:
            self._drop_reservation_locked(reservation.attempt_id)

    def record_usage(self, provider_id: str, cost: Optional[float] = None, attempt_id: Optional[str] = None) -> bool:
        """
        Commit one completed provider call.

        Idempotent per ``attempt_id``: a repeat returns False and changes
        nothing. ``cost`` None means the provider's expected price. Returns
        True when counters advanced.
        """
        with self._lock:
            if attempt_id is not None and attempt_id in self._committed:
                logger.debug(f"[router] usage for attempt {attempt_id} already recorded")
                return False

            quota = self._quotas.get(provider_id)
            if quota is None:
                raise ValueError(f"unknown provider: {provider_id}")

            reservation = self._drop_reservation_locked(attempt_id) if attempt_id is not None else None
            if reservation is None:
                period = quota.exhausted_period()
                if period is not None:
                    raise QuotaExceeded(provider_id, period)
                expected = quota.expected_cost()
            else:
                expected = reservation.expected_cost

            charged = expected if cost is None else max(0.0, float(cost))
            quota.used_today += 1
            quota.used_this_month += 1
            self.spent_today += charged
            self.spent_this_month += charged

            if attempt_id is not None:
                self._committed[attempt_id] = None
                while len(self._committed) > self.attempt_id_history:
                    self._committed.popitem(last=False)

            self._persist_locked()

        logger.debug(
            f"[router] recorded usage provider={provider_id} cost={charged:.4f} "
            f"used_today={quota.used_today}/{quota.daily_limit}"
        )
        return True

    # ------------------------------------------------------------------
    # Period resets
    # ------------------------------------------------------------------

    def reset_counters(self, now: Optional[datetime] = None) -> bool:
        """
        Zero daily counters on a new UTC day and monthly ones on a new month.

        Returns True if anything was reset.
        """
        now = (now or self._clock()).astimezone(timezone.utc)
        today = now.date()
        month = (now.year, now.month)
        reset = False
        with self._lock:
            if today != self._day:
                for quota in self._quotas.values():
                    quota.used_today = 0
                self.spent_today = 0.0
                self._day = today
                reset = True
                logger.info(f"[router] daily quota counters reset for {today.isoformat()}")
            if month != self._month:
                for quota in self._quotas.values():
                    quota.used_this_month = 0
                self.spent_this_month = 0.0
                self._month = month
                reset = True
                logger.info(f"[router] monthly quota counters reset for {month[0]}-{month[1]:02d}")
            if reset:
                self._persist_locked()
        return reset

    def seconds_until_next_reset(self, now: Optional[datetime] = None) -> float:
        now = (now or self._clock()).astimezone(timezone.utc)
        midnight = datetime(now.year, now.month, now.day, tzinfo=timezone.utc) + timedelta(days=1)
        return max(1.0, (midnight - now).total_seconds() + 1.0)

    def start(self) -> None:
        """Run reset_counters now and after every UTC midnight."""
        if self._worker is None:
            self._worker = PeriodicWorker(
                name="quota-reset",
                task=self.reset_counters,
                interval=self.seconds_until_next_reset,
                run_immediately=True,
            )
        self._worker.start()

    def stop(self) -> None:
        if self._worker is not None:
            self._worker.stop()

    # ------------------------------------------------------------------
    # Introspection / persistence
    # ------------------------------------------------------------------

    def quota(self, provider_id: str) -> ProviderQuota:
        with self._lock:
            return ProviderQuota(**self._quotas[provider_id].to_dict())

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "day": self._day.isoformat(),
                "month": f"{self._month[0]}-{self._month[1]:02d}",
                "spent_today": round(self.spent_today, 6),
                "spent_this_month": round(self.spent_this_month, 6),
                "reserved_spend": round(self._reserved_spend, 6),
                "daily_budget": self.policy.daily_budget,
                "monthly_budget": self.policy.monthly_budget,
                "providers": {pid: q.to_dict() for pid, q in self._quotas.items()},
            }

    def _persist_locked(self) -> None:
        if self.state_path is None:
            return
        state = {
            "day": self._day.isoformat(),
            "month": [self._month[0], self._month[1]],
            "spent_today": self.spent_today,
            "spent_this_month": self.spent_this_month,
            "providers": {
                pid: {"used_today": q.used_today, "used_this_month": q.used_this_month}
                for pid, q in self._quotas.items()
            },
        }
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.state_path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state, f)
            os.replace(tmp_name, self.state_path)
        except OSError as e:
            logger.error(f"[router] failed to persist quota state to {self.state_path}: {e}")
            try:
                os.unlink(tmp_name)
            except OSError:
                pass

    def _load_state(self) -> None:
        try:
            with open(self.state_path, "r", encoding="utf-8") as f:
                state = json.load(f)
            self._day = date.fromisoformat(state["day"])
            self._month = (int(state["month"][0]), int(state["month"][1]))
            self.spent_today = max(0.0, float(state.get("spent_today", 0.0)))
            self.spent_this_month = max(0.0, float(state.get("spent_this_month", 0.0)))
            for pid, counters in (state.get("providers") or {}).items():
                quota = self._quotas.get(pid)
                if quota is None:
                    continue
                quota.used_today = min(quota.daily_limit, max(0, int(counters.get("used_today", 0))))
                quota.used_this_month = min(
                    quota.monthly_limit, max(0, int(counters.get("used_this_month", 0)))
                )
            logger.info(f"[router] loaded quota state from {self.state_path}")
        except FileNotFoundError:
            return
        except (OSError, ValueError, KeyError, TypeError, IndexError) as e:
            logger.warning(f"[router] ignoring unreadable quota state {self.state_path}: {e}")


__all__ = ["CostAwareRouter", "ProviderQuota", "Reservation", "utc_now"]
