"""Tick-based TTL cache for expensive world queries.

Facts are keyed ``"<zone>:<fact>"`` so each zone owns its own namespace.
A value is served only while ``now - write_tick < ttl``; an expired entry is
never returned, it is recomputed. Every recomputation is also staged in the
DurableStateBuffer so it is persisted at the end of the cycle.
"""

from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from colony.cache.durable import DurableStateBuffer
from colony.utils.telemetry import get_logger, record_cache_lookup

T = TypeVar("T")

# TTL for facts that stay valid until explicitly invalidated (e.g. "planned").
PERMANENT = float("inf")


def fact_key(zone_id: str, fact: str) -> str:
    """Build a zone-scoped cache key."""
    return f"{zone_id}:{fact}"


def split_key(key: str) -> tuple[str | None, str]:
    """Split a cache key into (zone, fact); zone is None for global keys."""
    zone, sep, fact = key.partition(":")
    if not sep:
        return None, key
    return zone, fact


@dataclass
class CacheEntry:
    value: Any
    write_tick: int
    ttl: float

    def fresh(self, now: int) -> bool:
        return now - self.write_tick < self.ttl


class WorldFactsCache:
    """Zone-scoped TTL cache with LRU bound and write-behind persistence."""

    def __init__(
        self,
        clock: Callable[[], int],
        buffer: DurableStateBuffer | None = None,
        default_ttl: float = 10,
        max_entries: int = 10_000,
    ):
        """Initialize cache.

        Args:
            clock: Returns the current cycle tick
            buffer: Buffer that receives recomputed values (optional)
            default_ttl: TTL used by ``put`` when none is given
            max_entries: Entries kept before least-recently-used eviction
        """
        self.clock = clock
        self.buffer = buffer
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._logger = get_logger("colony.cache.world_facts")

    def get(self, key: str) -> tuple[Any, bool]:
        """Look up a fact.

        Returns:
            (value, True) for a fresh entry, (None, False) otherwise
        """
        entry = self._entries.get(key)
        if entry is None or not entry.fresh(self.clock()):
            return None, False
        self._entries.move_to_end(key)
        return entry.value, True

    def put(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store a fact written at the current tick."""
        self._store(key, value, self.default_ttl if ttl is None else ttl)

    def get_or_compute(
        self, key: str, compute_fn: Callable[[], T], ttl: float
    ) -> T:
        """Return the cached fact, recomputing it when missing or expired.

        A miss stores the result with ``write_tick = now`` and marks the key
        dirty for the next flush.

        Args:
            key: Cache key
            compute_fn: Produces the fact; may return an empty result
            ttl: Validity window in ticks

        Returns:
            Cached or freshly computed value
        """
        value, found = self.get(key)
        record_cache_lookup(found)
        if found:
            self._hits += 1
            return value

        self._misses += 1
        value = compute_fn()
        self._store(key, value, ttl)
        if self.buffer is not None:
            zone, fact = split_key(key)
            self.buffer.mark_dirty(zone, fact, value)
        return value

    def write_tick(self, key: str) -> int | None:
        """Tick at which a fresh entry was written, None if absent or expired."""
        entry = self._entries.get(key)
        if entry is None or not entry.fresh(self.clock()):
            return None
        return entry.write_tick

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with ``prefix``."""
        keys = [k for k in self._entries if k.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def invalidate_matching(self, predicate: Callable[[str], bool]) -> int:
        keys = [k for k in self._entries if predicate(k)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def evict_expired(self) -> int:
        """Remove entries past their TTL.

        Returns:
            Number of entries evicted
        """
        now = self.clock()
        expired = [k for k, e in self._entries.items() if not e.fresh(now)]
        for key in expired:
            del self._entries[key]

        if expired:
            self._logger.debug(
                "Evicted expired facts",
                evicted_count=len(expired),
                remaining_size=len(self._entries),
            )
        return len(expired)

    def clear(self, preserve_prefixes: tuple[str, ...] = ()) -> int:
        """Clear all facts except those whose fact name starts with a
        preserved prefix, in any zone.

        Returns:
            Number of entries dropped
        """
        before = len(self._entries)
        if not preserve_prefixes:
            self._entries.clear()
            return before
        self._entries = OrderedDict(
            (k, e)
            for k, e in self._entries.items()
            if split_key(k)[1].startswith(preserve_prefixes)
        )
        return before - len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key)[1]

    def __len__(self) -> int:
        return len(self._entries)

    def _store(self, key: str, value: Any, ttl: float) -> None:
        if key in self._entries:
            self._entries.move_to_end(key)
        elif len(self._entries) >= self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self._logger.debug("Evicted LRU fact", evicted_key=evicted)
        self._entries[key] = CacheEntry(value=value, write_tick=self.clock(), ttl=ttl)

    def get_stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        return {
            "size": len(self._entries),
            "max_entries": self.max_entries,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / total if total else 0.0,
        }
