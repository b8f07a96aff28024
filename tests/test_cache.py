import json

from tuner.cache import CACHE_NAMESPACE, JsonFileStore, ResultCache, cache_namespace
from tuner.metrics import Metrics
from tuner.space import DEFAULT_SPACE


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _metrics(pnl: float = 10.0) -> Metrics:
    return Metrics(token_count=150, pnl_percent=pnl, win_rate=60.0)


def test_key_is_order_independent():
    cache = ResultCache()
    assert cache.key({"a": {"x": 1, "y": 2}}) == cache.key({"a": {"y": 2, "x": 1}})
    assert cache.key({"a": {"x": 1}, "b": {"z": 3}}) == cache.key({"b": {"z": 3}, "a": {"x": 1}})
    assert cache.key({"a": {"x": 1}}) != cache.key({"a": {"x": 2}})


def test_key_ignores_fields_outside_the_space():
    cache = ResultCache(space=DEFAULT_SPACE)
    noisy = {"basic": {"Max MCAP (USD)": 50000.0, "Label": "ui"}, "ui": {"theme": "dark"}}
    clean = {"basic": {"Max MCAP (USD)": 50000}}
    assert cache.key(noisy) == cache.key(clean)


def test_lru_evicts_least_recently_inserted():
    cache = ResultCache(capacity=3)
    configs = [{"s": {"v": index}} for index in range(4)]
    for config in configs:
        cache.put(config, _metrics())

    assert len(cache) == 3
    assert cache.get(configs[0]) is None
    assert all(cache.get(config) is not None for config in configs[1:])


def test_lru_access_refreshes_recency():
    cache = ResultCache(capacity=3)
    a, b, c, d = ({"s": {"v": index}} for index in range(4))
    for config in (a, b, c):
        cache.put(config, _metrics())

    assert cache.get(a) is not None
    cache.put(d, _metrics())

    assert b not in cache
    assert a in cache and c in cache and d in cache


def test_counters_are_driven_by_caller():
    cache = ResultCache()
    config = {"s": {"v": 1}}
    cache.put(config, _metrics())
    cache.get(config)
    assert cache.hits == 0 and cache.misses == 0

    cache.record_miss()
    cache.record_hit()
    cache.record_hit()
    stats = cache.stats()
    assert stats["hits"] == 2
    assert stats["misses"] == 1
    assert stats["api_calls_saved"] == 2
    assert stats["hit_rate"] == 2 / 3


def test_persistence_round_trip(tmp_path):
    clock = FakeClock()
    store = JsonFileStore(tmp_path)
    cache = ResultCache(space=DEFAULT_SPACE, store=store, clock=clock)
    config = {"basic": {"Max MCAP (USD)": 40000}}
    cache.put(config, _metrics(21.5))
    cache.record_miss()
    cache.record_hit()
    assert cache.save()

    payload = json.loads(store.get(CACHE_NAMESPACE))
    assert set(payload) == {"entries", "hits", "misses", "apiCallsSaved", "timestamp"}

    clock.now += 3600
    restored = ResultCache(space=DEFAULT_SPACE, store=store, clock=clock)
    assert restored.load()
    assert restored.get(config) == Metrics(token_count=150, pnl_percent=21.5, win_rate=60.0)
    assert (restored.hits, restored.misses, restored.api_calls_saved) == (1, 1, 1)


def test_stale_cache_is_discarded(tmp_path):
    clock = FakeClock()
    store = JsonFileStore(tmp_path)
    cache = ResultCache(store=store, clock=clock)
    cache.put({"s": {"v": 1}}, _metrics())
    cache.save()

    clock.now += 25 * 3600
    restored = ResultCache(store=store, clock=clock)
    assert not restored.load()
    assert len(restored) == 0
    assert store.get(CACHE_NAMESPACE) is None


def test_corrupt_or_missing_cache_falls_back_to_empty(tmp_path):
    clock = FakeClock()
    store = JsonFileStore(tmp_path)
    cache = ResultCache(store=store, clock=clock)
    assert not cache.load()

    store.set(CACHE_NAMESPACE, "{not json")
    assert not cache.load()
    store.set(CACHE_NAMESPACE, json.dumps({"entries": [["k", {"pnlPercent": 1}]], "timestamp": clock.now}))
    assert not cache.load()
    assert len(cache) == 0


def test_autosave_after_configured_puts(tmp_path):
    store = JsonFileStore(tmp_path)
    cache = ResultCache(store=store, autosave_every=2)
    cache.put({"s": {"v": 1}}, _metrics())
    assert store.get(CACHE_NAMESPACE) is None
    cache.put({"s": {"v": 2}}, _metrics())
    assert len(json.loads(store.get(CACHE_NAMESPACE))["entries"]) == 2


def test_cache_holds_metrics_not_scores(tmp_path):
    store = JsonFileStore(tmp_path)
    cache = ResultCache(store=store)
    cache.put({"s": {"v": 1}}, Metrics(token_count=90, pnl_percent=40.0, win_rate=55.0, extras={"avgPnl": 2.5}))
    cache.save()

    entry = json.loads(store.get(CACHE_NAMESPACE))["entries"][0][1]
    assert entry == {"tokenCount": 90, "pnlPercent": 40.0, "winRate": 55.0, "avgPnl": 2.5}
    restored = ResultCache(store=store)
    assert restored.load()
    assert restored.get({"s": {"v": 1}}).extras == {"avgPnl": 2.5}


def test_namespace_separates_oracle_request_parameters():
    assert cache_namespace() == CACHE_NAMESPACE
    week = cache_namespace({"url": "https://oracle.test", "params": {"fromDate": "2024-01-01", "toDate": "2024-01-07"}})
    same = cache_namespace({"params": {"toDate": "2024-01-07", "fromDate": "2024-01-01"}, "url": "https://oracle.test"})
    month = cache_namespace({"url": "https://oracle.test", "params": {"fromDate": "2024-01-01", "toDate": "2024-01-31"}})

    assert week == same
    assert week != month
    assert week.startswith(CACHE_NAMESPACE + ".")
