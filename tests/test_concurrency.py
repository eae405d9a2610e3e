import threading
import time

import pytest

from common.concurrency import ConcurrencyController, PeriodicWorker, SingleFlight


def test_singleflight_runs_one_call_for_concurrent_callers():
    flight = SingleFlight()
    started = threading.Event()
    release = threading.Event()
    calls = {"n": 0}
    results = []
    lock = threading.Lock()

    def slow():
        calls["n"] += 1
        started.set()
        release.wait(2.0)
        return "value"

    def caller():
        value, leader = flight.do("key", slow)
        with lock:
            results.append((value, leader))

    first = threading.Thread(target=caller)
    first.start()
    started.wait(2.0)
    others = [threading.Thread(target=caller) for _ in range(4)]
    for t in others:
        t.start()
    time.sleep(0.1)
    release.set()
    for t in [first] + others:
        t.join()

    assert calls["n"] == 1
    assert [v for v, _ in results] == ["value"] * 5
    assert sum(1 for _, leader in results if leader) == 1
    assert len(flight) == 0


def test_singleflight_shares_leader_exception_and_releases_key():
    flight = SingleFlight()

    with pytest.raises(KeyError):
        flight.do("key", lambda: {}["missing"])

    assert not flight.in_flight("key")
    assert flight.do("key", lambda: 1) == (1, True)


def test_map_with_limit_preserves_order_and_bounds_parallelism():
    controller = ConcurrencyController(max_concurrency=2)
    active = {"now": 0, "peak": 0}
    lock = threading.Lock()

    def work(x):
        with lock:
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
        time.sleep(0.02)
        with lock:
            active["now"] -= 1
        return x * 10

    assert controller.map_with_limit(work, [3, 1, 2, 5]) == [30, 10, 20, 50]
    assert active["peak"] <= 2


def test_map_with_limit_can_return_exceptions():
    controller = ConcurrencyController(max_concurrency=3)

    def work(x):
        if x == 2:
            raise ValueError("bad item")
        return x

    results = controller.map_with_limit(work, [1, 2, 3], return_exceptions=True)

    assert results[0] == 1
    assert isinstance(results[1], ValueError)
    assert results[2] == 3
    with pytest.raises(ValueError):
        controller.map_with_limit(work, [1, 2, 3])


def test_periodic_worker_survives_task_errors():
    runs = {"n": 0}

    def task():
        runs["n"] += 1
        raise RuntimeError("ignored")

    worker = PeriodicWorker(name="test-worker", task=task, interval=0.01, run_immediately=True)
    worker.start()
    try:
        deadline = time.monotonic() + 2.0
        while worker.runs < 3 and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        worker.stop()

    assert worker.runs >= 3
    assert not worker.is_running
