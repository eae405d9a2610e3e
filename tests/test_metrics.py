import json
from datetime import datetime, timedelta, timezone

import pytest

from common.metrics import MetricEvent, MetricsRecorder

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _event(outcome, request_id, cache_type="venue", cost=0.0, provider_id=None, latency_ms=10.0,
           age=timedelta(0), degraded=False):
    return MetricEvent(
        outcome=outcome,
        cache_type=cache_type,
        latency_ms=latency_ms,
        cost=cost,
        provider_id=provider_id,
        timestamp=NOW - age,
        request_id=request_id,
        degraded=degraded,
    )


def _recorder(**kwargs):
    return MetricsRecorder(avg_costs={"venue": 0.01, "research": 0.05}, clock=lambda: NOW, **kwargs)


def test_unknown_outcome_is_rejected():
    with pytest.raises(ValueError):
        MetricEvent(outcome="maybe", cache_type="venue", latency_ms=1.0)


def test_duplicate_request_ids_are_recorded_once():
    recorder = _recorder()

    assert recorder.record(_event("exact_hit", "r1")) is True
    assert recorder.record(_event("exact_hit", "r1")) is False
    assert len(recorder.events()) == 1


def test_summary_rates_costs_and_savings():
    recorder = _recorder()
    recorder.record(_event("miss_success", "r1", cost=0.01, provider_id="serper", latency_ms=200.0))
    recorder.record(_event("exact_hit", "r2", latency_ms=2.0))
    recorder.record(_event("exact_hit", "r3", latency_ms=4.0))
    recorder.record(_event("fuzzy_hit", "r4", cache_type="research", latency_ms=8.0))
    recorder.record(_event("miss_error", "r5", latency_ms=50.0, degraded=True))

    s = recorder.summary()

    assert s.total_requests == 5
    assert s.hit_rate == pytest.approx(2 / 5)
    assert s.fuzzy_hit_rate == pytest.approx(1 / 5)
    assert s.cache_hit_rate == pytest.approx(3 / 5)
    assert s.error_rate == pytest.approx(1 / 5)
    assert s.total_cost == pytest.approx(0.01)
    assert s.estimated_savings == pytest.approx(0.01 + 0.01 + 0.05)
    assert s.avg_latency_by_outcome["exact_hit"] == pytest.approx(3.0)
    assert s.p95_latency_ms == 200.0
    assert s.degraded_count == 1
    assert s.cost_by_provider == {"serper": pytest.approx(0.01)}


def test_summary_window_excludes_older_events():
    recorder = _recorder()
    recorder.record(_event("exact_hit", "old", age=timedelta(days=2)))
    recorder.record(_event("exact_hit", "new", age=timedelta(minutes=5)))

    assert recorder.summary(timedelta(days=1)).total_requests == 1
    assert recorder.summary().total_requests == 2


def test_empty_summary_has_zero_rates():
    s = _recorder().summary(timedelta(hours=1))

    assert s.total_requests == 0
    assert s.hit_rate == 0.0
    assert s.p95_latency_ms == 0.0


def test_report_is_human_readable():
    recorder = _recorder()
    recorder.record(_event("miss_success", "r1", cost=0.01, provider_id="serper"))

    report = recorder.report(timedelta(days=1))

    assert "requests:          1" in report
    assert "cost serper: $0.0100" in report


def test_prune_respects_retention_and_keeps_history(tmp_path):
    recorder = _recorder(retention_days=30, history_path=tmp_path / "history.jsonl")
    recorder.record(_event("exact_hit", "ancient", age=timedelta(days=45)))
    recorder.record(_event("exact_hit", "recent", age=timedelta(days=1)))
    recorder.snapshot()

    assert recorder.prune() == 1
    assert [e.request_id for e in recorder.events()] == ["recent"]
    assert len(recorder.history) == 1
    assert recorder.history[0].total_requests == 2
    lines = (tmp_path / "history.jsonl").read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[0])["total_requests"] == 2


def test_event_log_is_reloaded_and_rewritten_on_prune(tmp_path):
    path = tmp_path / "events.jsonl"
    recorder = _recorder(events_path=path)
    recorder.record(_event("exact_hit", "ancient", age=timedelta(days=45)))
    recorder.record(_event("miss_success", "recent", cost=0.01, provider_id="serper"))
    with open(path, "a", encoding="utf-8") as f:
        f.write("not json\n")

    reloaded = _recorder(events_path=path)
    assert [e.request_id for e in reloaded.events()] == ["ancient", "recent"]
    assert reloaded.record(_event("exact_hit", "recent")) is False

    reloaded.prune()
    again = _recorder(events_path=path)
    assert [e.request_id for e in again.events()] == ["recent"]
