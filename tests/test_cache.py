from noteindex.search.cache import SearchCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_lru_eviction_and_stats():
    cache = SearchCache(max_entries=2, ttl_seconds=60)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.get("a") == 1
    cache.set("c", 3)
    assert cache.get("b") is None
    assert cache.get("a") == 1
    stats = cache.stats()
    assert stats["entries"] == 2
    assert stats["evictions"] == 1
    assert stats["hits"] == 2
    assert stats["misses"] == 1


def test_entries_expire():
    clock = FakeClock()
    cache = SearchCache(ttl_seconds=10, clock=clock)
    cache.set("q", [1.0])
    clock.now = 5
    assert cache.get("q") == [1.0]
    clock.now = 11
    assert cache.get("q") is None
    assert len(cache) == 0


def test_zero_capacity_disables_cache():
    cache = SearchCache(max_entries=0)
    cache.set("a", 1)
    assert cache.get("a") is None
