from agent_engine.storage.cache import TTLCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_cache_hit_miss_and_expiry() -> None:
    clock = FakeClock()
    cache = TTLCache(ttl_s=10.0, clock=clock)

    assert cache.get("a") is None
    cache.set("a", 1)
    assert cache.get("a") == 1
    assert cache.has("a")

    clock.now = 10.5
    assert cache.get("a") is None
    assert not cache.has("a")

    stats = cache.stats()
    assert stats.hits == 1
    assert stats.misses == 2
    assert stats.size == 0
    assert stats.hit_rate == 1 / 3


def test_cache_evicts_least_recently_used_tenth_when_full() -> None:
    clock = FakeClock()
    cache = TTLCache(ttl_s=100.0, max_entries=20, clock=clock)
    for index in range(20):
        clock.now = float(index)
        cache.set(f"k{index}", index)

    clock.now = 50.0
    cache.set("new", "value")

    assert len(cache) == 19
    assert cache.get("k0") is None
    assert cache.get("k1") is None
    assert cache.get("k2") == 2
    assert cache.get("new") == "value"


def test_cache_read_protects_entry_from_eviction() -> None:
    cache = TTLCache(max_entries=3)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("c", 3)
    assert cache.get("a") == 1

    cache.set("d", 4)

    assert cache.get("a") == 1
    assert cache.get("b") is None
    assert cache.get("d") == 4


def test_cache_evicts_at_least_one_entry() -> None:
    cache = TTLCache(max_entries=2)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("c", 3)

    assert len(cache) == 2
    assert cache.get("c") == 3


def test_cache_invalidate_prefix_and_get_or_compute() -> None:
    cache = TTLCache()
    cache.set("tool:calculate:1", "x")
    cache.set("tool:calculate:2", "y")
    cache.set("tool:http_get:1", "z")

    assert cache.invalidate_prefix("tool:calculate:") == 2
    assert cache.get("tool:http_get:1") == "z"

    calls: list[int] = []

    def compute() -> str:
        calls.append(1)
        return "computed"

    assert cache.get_or_compute("key", compute) == "computed"
    assert cache.get_or_compute("key", compute) == "computed"
    assert len(calls) == 1


def test_cache_clear_resets_stats() -> None:
    cache = TTLCache()
    cache.set("a", 1)
    cache.get("a")
    cache.get("missing")
    cache.clear()

    stats = cache.stats()
    assert (stats.hits, stats.misses, stats.size) == (0, 0, 0)
    assert stats.hit_rate == 0.0
