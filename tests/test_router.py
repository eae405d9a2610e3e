import threading
from datetime import datetime, timedelta, timezone

import pytest

from tools.search.errors import BudgetExceeded, NoProviderAvailable, QuotaExceeded
from tools.search.policy import CacheType, SearchPolicy
from tools.search.router import CostAwareRouter

NOON = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class _Now:
    def __init__(self, value: datetime = NOON):
        self.value = value

    def __call__(self) -> datetime:
        return self.value


def _router(providers, **policy_kwargs) -> CostAwareRouter:
    return CostAwareRouter(SearchPolicy(providers=providers, **policy_kwargs), clock=_Now())


def test_selects_cheapest_capable_provider(provider_policy):
    router = _router([
        provider_policy("tavily", cost_per_request=0.008),
        provider_policy("serper", cost_per_request=0.001),
        provider_policy("brave", cost_per_request=0.005, capabilities=["web_search"]),
    ])

    assert router.select_provider("web_search", "general") == "serper"
    assert router.select_provider("web_search", "general", exclude=["serper"]) == "brave"
    assert router.select_provider("places", "venue", exclude=["serper"]) == "tavily"


def test_equal_cost_ties_break_on_priority_then_id(provider_policy):
    router = _router([
        provider_policy("b", priority=5),
        provider_policy("a", priority=5),
        provider_policy("c", priority=1),
    ])

    assert router.select_provider("web_search", "general") == "c"
    assert router.select_provider("web_search", "general", exclude=["c"]) == "a"


def test_cache_type_restrictions_are_honored(provider_policy):
    router = _router([provider_policy("newsonly", cache_types=[CacheType.NEWS])])

    assert router.select_provider("web_search", "news") == "newsonly"
    with pytest.raises(NoProviderAvailable):
        router.select_provider("web_search", "general")


def test_exhausted_daily_quota_routes_to_next_provider(provider_policy):
    router = _router([
        provider_policy("a", cost_per_request=0.001, daily_limit=1),
        provider_policy("b", cost_per_request=0.002),
    ])
    router.record_usage("a")

    assert router.quota("a").used_today == 1
    assert router.select_provider("web_search", "general") == "b"


def test_reserve_counts_in_flight_against_quota(provider_policy):
    router = _router([provider_policy("a", daily_limit=2)])

    first = router.reserve("web_search", "general")
    second = router.reserve("web_search", "general")
    with pytest.raises(NoProviderAvailable):
        router.reserve("web_search", "general")

    router.release(second)
    router.record_usage("a", attempt_id=first.attempt_id)

    quota = router.quota("a")
    assert quota.used_today == 1
    assert quota.in_flight == 0
    assert router.reserve("web_search", "general").provider_id == "a"


def test_concurrent_reservations_never_exceed_daily_limit(provider_policy):
    router = _router([provider_policy("a", daily_limit=5)])
    granted = []
    lock = threading.Lock()

    def worker():
        try:
            reservation = router.reserve("web_search", "general")
        except NoProviderAvailable:
            return
        router.record_usage(reservation.provider_id, attempt_id=reservation.attempt_id)
        with lock:
            granted.append(reservation.attempt_id)

    threads = [threading.Thread(target=worker) for _ in range(25)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(granted) == 5
    assert router.quota("a").used_today == 5


def test_record_usage_is_idempotent_per_attempt(provider_policy):
    router = _router([provider_policy("a", cost_per_request=0.01)])
    reservation = router.reserve("web_search", "general")

    assert router.record_usage("a", 0.01, attempt_id=reservation.attempt_id) is True
    assert router.record_usage("a", 0.01, attempt_id=reservation.attempt_id) is False

    assert router.quota("a").used_today == 1
    assert router.spent_today == pytest.approx(0.01)


def test_record_usage_without_reservation_rejects_saturated_quota(provider_policy):
    router = _router([provider_policy("a", daily_limit=1)])
    router.record_usage("a")

    with pytest.raises(QuotaExceeded):
        router.record_usage("a")
    with pytest.raises(ValueError):
        router.record_usage("unknown")


def test_free_quota_makes_expected_cost_zero(provider_policy):
    router = _router([provider_policy("a", cost_per_request=0.01, free_quota_per_month=1)])

    first = router.reserve("web_search", "general")
    assert first.expected_cost == 0.0
    router.record_usage("a", attempt_id=first.attempt_id)

    second = router.reserve("web_search", "general")
    assert second.expected_cost == 0.01


def test_budget_ceiling_blocks_paid_calls(provider_policy):
    router = _router([provider_policy("a", cost_per_request=0.01)], daily_budget=0.02)

    for _ in range(2):
        r = router.reserve("web_search", "general")
        router.record_usage("a", attempt_id=r.attempt_id)

    with pytest.raises(BudgetExceeded) as exc:
        router.reserve("web_search", "general")
    assert exc.value.period == "daily"
    assert exc.value.reason == "budget_exceeded"


def test_reserved_spend_counts_against_budget(provider_policy):
    router = _router([provider_policy("a", cost_per_request=0.01)], daily_budget=0.01)

    router.reserve("web_search", "general")
    with pytest.raises(BudgetExceeded):
        router.reserve("web_search", "general")


def test_race_tolerance_allows_bounded_overshoot(provider_policy):
    router = _router(
        [provider_policy("a", cost_per_request=0.01)],
        daily_budget=0.01,
        budget_race_tolerance=0.01,
    )

    router.reserve("web_search", "general")
    router.reserve("web_search", "general")
    with pytest.raises(BudgetExceeded):
        router.reserve("web_search", "general")


def test_reset_counters_on_utc_day_and_month_boundaries(provider_policy):
    router = _router([provider_policy("a", cost_per_request=0.01)])
    router.record_usage("a")

    assert router.reset_counters(NOON + timedelta(hours=1)) is False
    assert router.reset_counters(NOON + timedelta(days=1)) is True

    quota = router.quota("a")
    assert quota.used_today == 0
    assert quota.used_this_month == 1
    assert router.spent_today == 0.0

    assert router.reset_counters(datetime(2026, 4, 1, 0, 0, 1, tzinfo=timezone.utc)) is True
    assert router.quota("a").used_this_month == 0
    assert router.spent_this_month == 0.0


def test_seconds_until_next_reset_targets_utc_midnight(provider_policy):
    router = _router([provider_policy("a")])
    assert router.seconds_until_next_reset(NOON) == pytest.approx(12 * 3600 + 1)


def test_quota_state_survives_restart(tmp_path, provider_policy):
    policy = SearchPolicy(providers=[provider_policy("a", cost_per_request=0.01)])
    path = tmp_path / "quota.json"

    router = CostAwareRouter(policy, clock=_Now(), state_path=path)
    r = router.reserve("web_search", "general")
    router.record_usage("a", attempt_id=r.attempt_id)

    restored = CostAwareRouter(policy, clock=_Now(), state_path=path)
    assert restored.quota("a").used_today == 1
    assert restored.spent_today == pytest.approx(0.01)

    next_day = CostAwareRouter(policy, clock=_Now(NOON + timedelta(days=1)), state_path=path)
    assert next_day.quota("a").used_today == 0
    assert next_day.quota("a").used_this_month == 1


def test_open_circuit_providers_are_skipped(provider_policy):
    policy = SearchPolicy(providers=[provider_policy("a", cost_per_request=0.001), provider_policy("b")])
    router = CostAwareRouter(policy, clock=_Now(), is_open=lambda pid: pid == "a")

    assert router.select_provider("web_search", "general") == "b"


def test_check_budget_reports_which_ceiling(provider_policy):
    router = _router([provider_policy("a")], daily_budget=1.0, monthly_budget=0.5)

    router.check_budget(0.1)
    with pytest.raises(BudgetExceeded) as exc:
        router.check_budget(0.6)
    assert exc.value.period == "monthly"
