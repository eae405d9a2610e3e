import time

from search_cache.entry import CacheEntry
from search_cache.index import CacheIndex, tokenize
from search_cache.store import CacheStore


def _entry(key, query, clock, cache_type="venue", ttl=3600.0):
    return CacheEntry.create(
        key=key,
        normalized_query=query,
        location="",
        cache_type=cache_type,
        payload=[],
        source_provider="serper",
        cost=0.0,
        ttl_seconds=ttl,
        now=clock(),
    )


def test_tokenize_shares_trigrams_between_near_duplicates():
    assert tokenize("coffeeshop") & tokenize("coffeeshops")
    assert "  c" in tokenize("cafe")


def test_added_entries_are_candidates_before_any_rebuild(clock):
    store = CacheStore(clock=clock)
    index = CacheIndex(store, clock=clock)
    entry = store.put(_entry("k1", "coffee shops near minneapolis", clock))
    index.add(entry)

    found = index.candidates("coffee houses near minneapolis", "venue")

    assert [r.key for r in found] == ["k1"]
    assert index.candidates("coffee houses near minneapolis", "news") == []


def test_rebuild_indexes_store_contents_and_clears_overlay(tmp_path, clock):
    store = CacheStore(cache_dir=tmp_path, clock=clock)
    for key, query in (("k1", "coffee shops"), ("k2", "tea rooms"), ("k3", "coffee bars")):
        index_entry = store.put(_entry(key, query, clock))
    index = CacheIndex(store, clock=clock)
    index.add(index_entry)

    count = index.rebuild_index()

    assert count == 3
    assert index.stats()["recent"] == 0
    assert [r.key for r in index.candidates("coffee shop")] == ["k1", "k3"]


def test_rebuild_skips_expired_and_drops_corrupt_entries(tmp_path, clock):
    store = CacheStore(cache_dir=tmp_path, clock=clock)
    store.put(_entry("fresh", "coffee shops", clock, ttl=3600))
    store.put(_entry("stale", "coffee shops", clock, ttl=10))
    (tmp_path / "corrupt.json").write_text("garbage", encoding="utf-8")
    clock.advance(60)
    index = CacheIndex(store, clock=clock)

    assert index.rebuild_index() == 1
    assert index.last_corrupt_dropped == 1
    assert not (tmp_path / "corrupt.json").exists()
    assert [r.key for r in index.candidates("coffee shops")] == ["fresh"]


def test_candidates_can_include_expired_records(clock):
    store = CacheStore(clock=clock)
    index = CacheIndex(store, clock=clock)
    index.add(store.put(_entry("k1", "coffee shops", clock, ttl=10)))
    clock.advance(60)

    assert index.candidates("coffee shops") == []
    assert [r.key for r in index.candidates("coffee shops", include_expired=True)] == ["k1"]


def test_background_worker_rebuilds_on_start(clock):
    store = CacheStore(clock=clock)
    store.put(_entry("k1", "coffee shops", clock))
    index = CacheIndex(store, rebuild_interval_seconds=60, clock=clock)

    index.start()
    try:
        deadline = time.monotonic() + 2.0
        while index.rebuilds == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        index.stop()

    assert index.rebuilds >= 1
    assert index.stats()["indexed"] == 1


def test_candidates_filter_on_key_options(clock):
    store = CacheStore(clock=clock)
    index = CacheIndex(store, clock=clock)
    entry = _entry("k2", "coffee shops", clock)
    entry.options = {"max_results": 2}
    index.add(store.put(entry))

    assert [r.key for r in index.candidates("coffee shop", options={"max_results": 2})] == ["k2"]
    assert index.candidates("coffee shop", options={"max_results": 10}) == []
    assert [r.key for r in index.candidates("coffee shop")] == ["k2"]


def test_rebuild_drops_overlay_records_for_deleted_or_expired_entries(clock):
    store = CacheStore(clock=clock)
    index = CacheIndex(store, clock=clock)
    index.add(store.put(_entry("gone", "coffee shops", clock)))
    index.add(store.put(_entry("short", "tea rooms", clock, ttl=10)))
    store.delete("gone")
    clock.advance(60)

    assert index.rebuild_index() == 0

    assert index.stats()["recent"] == 0
    assert index.candidates("coffee shops", include_expired=True) == []
