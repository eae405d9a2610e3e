"""
Concurrency helpers for the search layer.

- SingleFlight: one in-flight call per key, concurrent callers share its result
- ConcurrencyController: bounded thread fan-out with results in input order
- PeriodicWorker: background thread running a callback on a schedule
"""

import concurrent.futures
import logging
import threading
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """
    Request coalescing keyed by string.

    The first caller for a key (the leader) runs ``fn``; callers arriving
    while it runs wait on the same Future and observe the same result or
    exception. The key is released once the leader finishes, so a later
    call starts a new flight.

    Usage:
        flight = SingleFlight()
        value, leader = flight.do(cache_key, lambda: provider_call())
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._calls: Dict[str, "concurrent.futures.Future[T]"] = {}

    def do(self, key: str, fn: Callable[[], T]) -> Tuple[T, bool]:
        """Run or join the flight for ``key``. Returns (result, was_leader)."""
        with self._lock:
            future = self._calls.get(key)
            leader = future is None
            if leader:
                future = concurrent.futures.Future()
                self._calls[key] = future

        if not leader:
            return future.result(), False

        try:
            result = fn()
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result, True
        finally:
            with self._lock:
                self._calls.pop(key, None)

    def in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._calls

    def __len__(self) -> int:
        with self._lock:
            return len(self._calls)


class ConcurrencyController:
    """
    Bounded fan-out over a thread pool.

    Usage:
        controller = ConcurrencyController(max_concurrency=5)
        results = controller.map_with_limit(resolve, groups)
    """

    def __init__(self, max_concurrency: int = 5):
        self.max_concurrency = max(1, int(max_concurrency))
        logger.debug(f"ConcurrencyController initialized: max_concurrency={self.max_concurrency}")

    def map_with_limit(
        self,
        func: Callable[[Any], T],
        items: List[Any],
        return_exceptions: bool = False,
    ) -> List[Union[T, BaseException]]:
        """
        Apply ``func`` to every item, at most ``max_concurrency`` at a time.

        Results keep input order. With ``return_exceptions`` a failing item
        yields its exception instead of aborting the whole map.
        """
        if not items:
            return []
        if len(items) == 1 or self.max_concurrency == 1:
            return [self._run_one(func, item, return_exceptions) for item in items]

        workers = min(self.max_concurrency, len(items))
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(func, item) for item in items]
            results: List[Union[T, BaseException]] = []
            for future in futures:
                try:
                    results.append(future.result())
                except Exception as e:
                    if not return_exceptions:
                        raise
                    results.append(e)

        failed = sum(1 for r in results if isinstance(r, BaseException))
        logger.debug(f"Completed: {len(items) - failed}/{len(items)} successful")
        return results

    @staticmethod
    def _run_one(func, item, return_exceptions: bool):
        try:
            return func(item)
        except Exception as e:
            if not return_exceptions:
                raise
            return e


class PeriodicWorker:
    """
    Daemon thread that calls ``task`` repeatedly.

    ``interval`` is either a number of seconds or a callable returning the
    seconds to wait before the next run (used for wall-clock aligned jobs
    such as midnight resets). Exceptions from ``task`` are logged and the
    worker keeps going.
    """

    def __init__(
        self,
        name: str,
        task: Callable[[], Any],
        interval: Union[float, Callable[[], float]],
        run_immediately: bool = False,
    ):
        self.name = name
        self.task = task
        self.interval = interval
        self.run_immediately = run_immediately
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0

    def _next_delay(self) -> float:
        delay = self.interval() if callable(self.interval) else self.interval
        return max(0.0, float(delay))

    def _run_task(self) -> None:
        try:
            self.task()
        except Exception:
            logger.exception(f"[worker:{self.name}] task failed")
        finally:
            self.runs += 1

    def _loop(self) -> None:
        if self.run_immediately:
            self._run_task()
        while not self._stop.wait(self._next_delay()):
            self._run_task()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.debug(f"[worker:{self.name}] started")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


__all__ = ["SingleFlight", "ConcurrencyController", "PeriodicWorker"]
