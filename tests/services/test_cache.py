# tests/services/test_cache.py
"""
Tests for the TTL cache owned by each price service.

This module tests:
- Freshness and expiry (expired entries are kept as stale data)
- Superseded writes after invalidate() / clear()
- Diagnostics
"""

from valuation_engine.services.cache import TTLCache


class TestTTLCacheFreshness:
    """Tests for get / get_fresh."""

    def test_fresh_within_ttl(self, clock):
        """Should return the value while younger than the TTL."""
        cache = TTLCache("test", ttl_seconds=300, clock=clock)
        cache.put("k", 1)

        clock.advance(299)

        assert cache.get_fresh("k") == 1
        assert cache.is_fresh("k") is True

    def test_expired_entry_kept(self, clock):
        """An expired entry should still be readable with get()."""
        cache = TTLCache("test", ttl_seconds=300, clock=clock)
        cache.put("k", 1)

        clock.advance(300)

        assert cache.get_fresh("k") is None
        entry = cache.get("k")
        assert entry is not None
        assert entry.value == 1
        assert entry.age(clock()) == 300

    def test_missing_key(self, clock):
        """Should return None for unknown keys."""
        cache = TTLCache("test", ttl_seconds=300, clock=clock)

        assert cache.get("nope") is None
        assert cache.get_fresh("nope") is None


class TestTTLCacheGenerations:
    """Tests for superseded writes."""

    def test_write_with_current_generation(self, clock):
        """Should store when nothing invalidated the key."""
        cache = TTLCache("test", ttl_seconds=300, clock=clock)
        generation = cache.generation("k")

        assert cache.put_if_generation("k", 1, generation) is True
        assert cache.get_fresh("k") == 1

    def test_clear_drops_in_flight_write(self, clock):
        """A write started before clear() should be dropped."""
        cache = TTLCache("test", ttl_seconds=300, clock=clock)
        cache.put("k", 1)
        generation = cache.generation("k")

        cache.clear()

        assert cache.put_if_generation("k", 2, generation) is False
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_invalidate_drops_in_flight_write(self, clock):
        """A write started before invalidate(key) should be dropped."""
        cache = TTLCache("test", ttl_seconds=300, clock=clock)
        stale_generation = cache.generation("k")

        new_generation = cache.invalidate("k")

        assert cache.put_if_generation("k", 1, stale_generation) is False
        assert cache.put_if_generation("k", 2, new_generation) is True
        assert cache.get_fresh("k") == 2

    def test_invalidate_keep_entry(self, clock):
        """keep_entry should leave the old value readable as stale data."""
        cache = TTLCache("test", ttl_seconds=300, clock=clock)
        cache.put("k", 1)

        cache.invalidate("k", keep_entry=True)

        assert cache.get("k").value == 1

    def test_invalidate_other_key_does_not_interfere(self, clock):
        """Generations are per key."""
        cache = TTLCache("test", ttl_seconds=300, clock=clock)
        generation = cache.generation("a")

        cache.invalidate("b")

        assert cache.put_if_generation("a", 1, generation) is True


class TestTTLCacheStats:
    """Tests for diagnostics."""

    def test_stats(self, clock):
        """Should report size and keys."""
        cache = TTLCache("equity", ttl_seconds=300, clock=clock)
        cache.put(("TCS", "NSE"), 1)
        cache.put(("AAPL", "NASDAQ"), 2)

        stats = cache.stats()

        assert stats.name == "equity"
        assert stats.size == 2
        assert set(stats.keys) == {("TCS", "NSE"), ("AAPL", "NASDAQ")}
        assert cache.keys() == stats.keys
