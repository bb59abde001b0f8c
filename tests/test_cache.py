"""Tests for the TTL cache."""

from phasegraph.cache import TTLCache


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestTTLCache:
    """Tests for lazy expiry and counters."""

    def test_get_and_set(self):
        cache = TTLCache(10, clock=FakeClock())
        cache.set("a", 1)
        assert cache.get("a") == 1
        assert cache.hits == 1

    def test_expiry_is_lazy(self):
        clock = FakeClock()
        cache = TTLCache(10, clock=clock)
        cache.set("a", 1)
        clock.now += 11

        # Still held until the next read
        assert "a" in cache
        assert cache.get("a") is None
        assert "a" not in cache
        assert cache.misses == 1

    def test_entry_valid_at_ttl_boundary(self):
        clock = FakeClock()
        cache = TTLCache(10, clock=clock)
        cache.set("a", 1)
        clock.now += 10
        assert cache.get("a") == 1

    def test_instances_are_isolated(self):
        first = TTLCache(10)
        second = TTLCache(10)
        first.set("a", 1)
        assert second.get("a") is None

    def test_invalidate_where(self):
        cache = TTLCache(10)
        cache.set(("p1", "x"), 1)
        cache.set(("p1", "y"), 2)
        cache.set(("p2", "x"), 3)
        assert cache.invalidate_where(lambda key: key[0] == "p1") == 2
        assert len(cache) == 1

    def test_invalidate_and_clear(self):
        cache = TTLCache(10)
        cache.set("a", 1)
        assert cache.invalidate("a") is True
        assert cache.invalidate("a") is False
        cache.set("b", 2)
        cache.clear()
        assert len(cache) == 0

    def test_hit_rate(self):
        cache = TTLCache(10)
        assert cache.hit_rate == 0.0
        cache.set("a", 1)
        cache.get("a")
        cache.get("b")
        assert cache.hit_rate == 0.5
