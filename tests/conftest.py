import pytest

from common.config import Settings
from search_cache.index import CacheIndex
from search_cache.store import CacheStore
from tools.search.orchestrator import SearchOrchestrator
from tools.search.policy import ProviderPolicy, SearchPolicy

pytest_plugins = ["pytest_asyncio"]


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_760_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider_policy():
    """Build a ProviderPolicy with test-friendly defaults."""

    def _make(provider_id: str, **overrides) -> ProviderPolicy:
        values = {
            "provider_id": provider_id,
            "cost_per_request": 0.01,
            "free_quota_per_month": 0,
            "daily_limit": 100,
            "monthly_limit": 1000,
            "capabilities": ["web_search", "places", "news", "research", "events"],
        }
        values.update(overrides)
        return ProviderPolicy(**values)

    return _make


@pytest.fixture
def make_orchestrator(tmp_path, clock):
    """Orchestrator over a disk-backed store in tmp_path with the fake clock."""
    created = []

    def _make(providers, policy: SearchPolicy, **kwargs) -> SearchOrchestrator:
        config = Settings(
            _env_file=None,
            cache_dir=str(tmp_path / "cache"),
            provider_timeout_seconds=2.0,
            max_concurrency=4,
        )
        store = kwargs.pop("store", None) or CacheStore(cache_dir=tmp_path / "cache", clock=clock)
        index = kwargs.pop("index", None) or CacheIndex(store, clock=clock)
        orchestrator = SearchOrchestrator(
            providers, policy=policy, store=store, index=index, config=config, **kwargs
        )
        created.append(orchestrator)
        return orchestrator

    yield _make

    for orchestrator in created:
        orchestrator.close()
