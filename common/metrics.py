"""
Lookup metrics: an append-only event log with windowed aggregation.

Every logical search request records exactly one MetricEvent; the recorder
ignores a second event carrying the same request_id.
"""

import json
import logging
import math
import os
import tempfile
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

OUTCOMES = ("exact_hit", "fuzzy_hit", "miss_success", "miss_error")
HIT_OUTCOMES = ("exact_hit", "fuzzy_hit")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MetricEvent:
    """One lookup outcome. Immutable once recorded."""

    outcome: str
    cache_type: str
    latency_ms: float
    cost: float = 0.0
    provider_id: Optional[str] = None
    timestamp: datetime = field(default_factory=_utc_now)
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    degraded: bool = False

    def __post_init__(self):
        if self.outcome not in OUTCOMES:
            raise ValueError(f"unknown outcome: {self.outcome}")

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "MetricEvent":
        return cls(
            outcome=str(data["outcome"]),
            cache_type=str(data["cache_type"]),
            latency_ms=float(data["latency_ms"]),
            cost=float(data.get("cost", 0.0)),
            provider_id=data.get("provider_id"),
            timestamp=datetime.fromisoformat(str(data["timestamp"])),
            request_id=str(data["request_id"]),
            degraded=bool(data.get("degraded", False)),
        )


@dataclass
class MetricsSummary:
    """Aggregates over a window of events."""

    window_start: Optional[datetime]
    window_end: datetime
    total_requests: int = 0
    counts: Dict[str, int] = field(default_factory=dict)
    hit_rate: float = 0.0
    fuzzy_hit_rate: float = 0.0
    cache_hit_rate: float = 0.0
    error_rate: float = 0.0
    total_cost: float = 0.0
    estimated_savings: float = 0.0
    avg_latency_by_outcome: Dict[str, float] = field(default_factory=dict)
    p95_latency_ms: float = 0.0
    degraded_count: int = 0
    cost_by_provider: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["window_start"] = self.window_start.isoformat() if self.window_start else None
        data["window_end"] = self.window_end.isoformat()
        return data


def _p95(values: List[float]) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = max(0, math.ceil(0.95 * len(ordered)) - 1)
    return ordered[rank]


class MetricsRecorder:
    """
    Thread-safe metrics recorder.

    ``avg_costs`` maps cache type to the average provider price used for
    estimated savings. Events older than ``retention_days`` are dropped by
    prune(); summaries persisted with snapshot() are kept separately and are
    never touched by pruning.
    """

    def __init__(
        self,
        avg_costs: Optional[Dict[str, float]] = None,
        retention_days: int = 30,
        events_path: Optional[Union[str, Path]] = None,
        history_path: Optional[Union[str, Path]] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.avg_costs = {str(k): float(v) for k, v in (avg_costs or {}).items()}
        self.retention = timedelta(days=retention_days)
        self.events_path = Path(events_path) if events_path else None
        self.history_path = Path(history_path) if history_path else None
        self._clock = clock
        self._events: List[MetricEvent] = []
        self._request_ids = set()
        self.history: List[MetricsSummary] = []
        self._lock = threading.Lock()

        if self.events_path is not None:
            self._load_events()

    def record(self, event: MetricEvent) -> bool:
        """Append an event. Returns False if its request was already recorded."""
        with self._lock:
            if event.request_id in self._request_ids:
                logger.debug(f"[metrics] duplicate event for request {event.request_id} ignored")
                return False
            self._request_ids.add(event.request_id)
            self._events.append(event)
            if self.events_path is not None:
                self._append_line(self.events_path, event.to_dict())
        return True

    def events(self) -> List[MetricEvent]:
        with self._lock:
            return list(self._events)

    def summary(self, window: Optional[timedelta] = None) -> MetricsSummary:
        """Aggregate events newer than ``now - window`` (all retained events if None)."""
        end = self._clock()
        start = end - window if window is not None else None
        with self._lock:
            events = [e for e in self._events if start is None or e.timestamp >= start]

        counts = {o: 0 for o in OUTCOMES}
        latencies: Dict[str, List[float]] = {o: [] for o in OUTCOMES}
        cost_by_provider: Dict[str, float] = {}
        total_cost = 0.0
        savings = 0.0
        degraded = 0
        for e in events:
            counts[e.outcome] += 1
            latencies[e.outcome].append(e.latency_ms)
            total_cost += e.cost
            if e.cost and e.provider_id:
                cost_by_provider[e.provider_id] = cost_by_provider.get(e.provider_id, 0.0) + e.cost
            if e.outcome in HIT_OUTCOMES:
                savings += self.avg_costs.get(e.cache_type, 0.0)
            if e.degraded:
                degraded += 1

        total = len(events)
        denom = max(total, 1)
        return MetricsSummary(
            window_start=start,
            window_end=end,
            total_requests=total,
            counts=counts,
            hit_rate=counts["exact_hit"] / denom,
            fuzzy_hit_rate=counts["fuzzy_hit"] / denom,
            cache_hit_rate=(counts["exact_hit"] + counts["fuzzy_hit"]) / denom,
            error_rate=counts["miss_error"] / denom,
            total_cost=round(total_cost, 6),
            estimated_savings=round(savings, 6),
            avg_latency_by_outcome={
                o: (sum(v) / len(v)) for o, v in latencies.items() if v
            },
            p95_latency_ms=_p95([e.latency_ms for e in events]),
            degraded_count=degraded,
            cost_by_provider={k: round(v, 6) for k, v in cost_by_provider.items()},
        )

    def report(self, window: Optional[timedelta] = None) -> str:
        """Human-readable summary."""
        s = self.summary(window)
        since = s.window_start.isoformat() if s.window_start else "start of retention"
        lines = [
            f"Search cache report ({since} -> {s.window_end.isoformat()})",
            f"  requests:          {s.total_requests}",
            f"  exact hits:        {s.counts['exact_hit']} ({s.hit_rate:.1%})",
            f"  fuzzy hits:        {s.counts['fuzzy_hit']} ({s.fuzzy_hit_rate:.1%})",
            f"  provider calls:    {s.counts['miss_success']}",
            f"  errors:            {s.counts['miss_error']} ({s.error_rate:.1%}, {s.degraded_count} degraded)",
            f"  total cost:        ${s.total_cost:.4f}",
            f"  estimated savings: ${s.estimated_savings:.4f}",
            f"  p95 latency:       {s.p95_latency_ms:.1f}ms",
        ]
        for outcome, avg in sorted(s.avg_latency_by_outcome.items()):
            lines.append(f"  avg latency {outcome}: {avg:.1f}ms")
        for provider, cost in sorted(s.cost_by_provider.items()):
            lines.append(f"  cost {provider}: ${cost:.4f}")
        return "\n".join(lines)

    def snapshot(self, window: Optional[timedelta] = None) -> MetricsSummary:
        """Compute a summary and keep it in the history (and history file)."""
        summary = self.summary(window)
        with self._lock:
            self.history.append(summary)
            if self.history_path is not None:
                self._append_line(self.history_path, summary.to_dict())
        return summary

    def prune(self, now: Optional[datetime] = None) -> int:
        """Drop events older than the retention period. Returns count removed."""
        cutoff = (now or self._clock()) - self.retention
        with self._lock:
            kept = [e for e in self._events if e.timestamp >= cutoff]
            removed = len(self._events) - len(kept)
            if removed:
                self._events = kept
                self._request_ids = {e.request_id for e in kept}
                if self.events_path is not None:
                    self._rewrite_events()
        if removed:
            logger.info(f"[metrics] pruned {removed} events older than {cutoff.isoformat()}")
        return removed

    # ------------------------------------------------------------------
    # JSONL persistence
    # ------------------------------------------------------------------

    @staticmethod
    def _append_line(path: Path, data: Dict[str, object]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(data, ensure_ascii=False) + "\n")
        except OSError as e:
            logger.error(f"[metrics] failed to append to {path}: {e}")

    def _rewrite_events(self) -> None:
        self.events_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.events_path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                for e in self._events:
                    f.write(json.dumps(e.to_dict(), ensure_ascii=False) + "\n")
            os.replace(tmp_name, self.events_path)
        except OSError as e:
            logger.error(f"[metrics] failed to rewrite {self.events_path}: {e}")
            try:
                os.unlink(tmp_name)
            except OSError:
                pass

    def _load_events(self) -> None:
        try:
            with open(self.events_path, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except FileNotFoundError:
            return
        skipped = 0
        for line in lines:
            if not line.strip():
                continue
            try:
                event = MetricEvent.from_dict(json.loads(line))
            except (ValueError, KeyError, TypeError):
                skipped += 1
                continue
            if event.request_id not in self._request_ids:
                self._request_ids.add(event.request_id)
                self._events.append(event)
        if skipped:
            logger.warning(f"[metrics] skipped {skipped} unreadable lines in {self.events_path}")
        logger.info(f"[metrics] loaded {len(self._events)} events from {self.events_path}")


__all__ = ["MetricEvent", "MetricsRecorder", "MetricsSummary", "OUTCOMES"]
