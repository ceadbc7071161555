"""Unit tests for the world facts cache."""

import pytest

from colony.cache.durable import GLOBAL_ZONE
from colony.cache.world_facts import PERMANENT, WorldFactsCache, fact_key, split_key


class TestKeys:
    """Test zone-scoped keys."""

    def test_fact_key_roundtrip(self):
        """Keys split back into zone and fact name."""
        assert split_key(fact_key("W1N1", "depot.node-a")) == ("W1N1", "depot.node-a")

    def test_global_key(self):
        """Keys without a zone split into (None, key)."""
        assert split_key("colony_stats") == (None, "colony_stats")


class TestWorldFactsCache:
    """Test TTL, LRU and persistence behavior."""

    def test_fresh_entry_is_served_without_recompute(self, cache, clock):
        """Within the TTL the compute function runs once."""
        calls = []

        def compute():
            calls.append(clock.tick)
            return [1, 2, 3]

        assert cache.get_or_compute("W1N1:nodes", compute, ttl=10) == [1, 2, 3]
        clock.advance(9)
        assert cache.get_or_compute("W1N1:nodes", compute, ttl=10) == [1, 2, 3]
        assert calls == [0]

    @pytest.mark.parametrize("ttl", [1, 5, 50])
    def test_never_served_past_ttl(self, cache, clock, ttl):
        """An entry written at w is never returned at w + ttl or later."""
        cache.put("W1N1:fact", "old", ttl=ttl)
        for _ in range(ttl + 3):
            value, found = cache.get("W1N1:fact")
            if found:
                assert clock.tick - cache.write_tick("W1N1:fact") < ttl
            else:
                assert clock.tick >= ttl
            clock.advance()

    def test_expired_entry_is_recomputed(self, cache, clock):
        """An expired fact is recomputed with a new write tick."""
        cache.get_or_compute("W1N1:sites", lambda: 1, ttl=5)
        clock.advance(5)
        assert cache.get_or_compute("W1N1:sites", lambda: 2, ttl=5) == 2
        assert cache.write_tick("W1N1:sites") == 5

    def test_empty_results_are_cached(self, cache):
        """An empty computation result is a valid fact."""
        calls = []
        cache.get_or_compute("W1N1:drops", lambda: calls.append(1) or [], ttl=10)
        cache.get_or_compute("W1N1:drops", lambda: calls.append(1) or [], ttl=10)
        assert calls == [1]

    def test_permanent_facts_never_expire(self, cache, clock):
        """PERMANENT entries stay until invalidated."""
        cache.put("W1N1:plans", {"spawn": [25, 25]}, ttl=PERMANENT)
        clock.advance(1_000_000)
        assert cache.get("W1N1:plans") == ({"spawn": [25, 25]}, True)

    def test_miss_stages_value_for_flush(self, cache, buffer):
        """A recomputed fact is staged under its zone and fact name."""
        cache.get_or_compute("W1N1:controller", lambda: ["ctrl"], ttl=500)
        cache.get_or_compute("colony_stats", lambda: {"agents": 3}, ttl=10)

        assert buffer.read("W1N1", "controller") == (["ctrl"], True)
        assert buffer.read(GLOBAL_ZONE, "colony_stats") == ({"agents": 3}, True)
        assert buffer.pending == 2

    def test_hit_does_not_stage(self, cache, buffer):
        """Serving a fresh fact writes nothing."""
        cache.get_or_compute("W1N1:nodes", lambda: [], ttl=10)
        buffer.flush(0)
        cache.get_or_compute("W1N1:nodes", lambda: [], ttl=10)
        assert buffer.pending == 0

    def test_lru_eviction(self, clock):
        """The least recently used entry goes first once the cache is full."""
        cache = WorldFactsCache(clock, max_entries=2)
        cache.put("a:x", 1)
        cache.put("a:y", 2)
        cache.get("a:x")
        cache.put("a:z", 3)

        assert "a:x" in cache
        assert "a:y" not in cache
        assert "a:z" in cache

    def test_invalidation(self, cache):
        """Single keys, prefixes and predicates can be invalidated."""
        for key in ("W1N1:nodes", "W1N1:agent.t1.stores", "W2N2:nodes", "W2N2:agent.t1.stores"):
            cache.put(key, 1)

        assert cache.invalidate("W1N1:nodes")
        assert not cache.invalidate("W1N1:nodes")
        assert cache.invalidate_matching(lambda k: split_key(k)[1].startswith("agent.t1.")) == 2
        assert cache.invalidate_prefix("W2N2:") == 1
        assert len(cache) == 0

    def test_evict_expired(self, cache, clock):
        """Expired entries are removed by the sweep, fresh ones stay."""
        cache.put("W1N1:short", 1, ttl=2)
        cache.put("W1N1:long", 1, ttl=100)
        clock.advance(3)

        assert cache.evict_expired() == 1
        assert len(cache) == 1

    def test_clear_preserves_fact_names_in_every_zone(self, cache):
        """Preserved fact prefixes survive the clear in all zones."""
        cache.put("W1N1:nodes", 1)
        cache.put("W2N2:nodes", 1)
        cache.put("W1N1:depot.node-a", 1)
        cache.put("W1N1:targets.pickup", 1)

        dropped = cache.clear(("nodes", "depot."))

        assert dropped == 1
        assert "W1N1:nodes" in cache
        assert "W2N2:nodes" in cache
        assert "W1N1:depot.node-a" in cache
        assert "W1N1:targets.pickup" not in cache

    def test_stats_track_hits_and_misses(self, cache):
        """Lookups through get_or_compute are counted."""
        cache.get_or_compute("W1N1:nodes", lambda: [], ttl=10)
        cache.get_or_compute("W1N1:nodes", lambda: [], ttl=10)

        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5
