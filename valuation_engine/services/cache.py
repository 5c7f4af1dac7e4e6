# valuation_engine/services/cache.py
"""
Time-bounded, mutex-guarded cache owned by a single price provider.

Entries are never evicted by age: an expired entry is still returned by
`get()` so the provider can fall back to it as a stale quote. Freshness is
decided by `get_fresh()`.

Superseded writes:
    A lookup reads `generation(key)` before going to the network and
    writes back with `put_if_generation()`. `invalidate(key)` and `clear()`
    advance the generation, so a result that was in flight while the cache
    was cleared (or the key was force-refreshed) is dropped instead of
    resurrecting the old state.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

# (clear epoch, per-key counter)
Generation = tuple[int, int]


@dataclass(frozen=True)
class CacheEntry(Generic[K, V]):
    """A cached value and the time it was fetched (clock seconds)."""
    key: K
    value: V
    fetched_at: float

    def age(self, now: float) -> float:
        return now - self.fetched_at

    def is_fresh(self, now: float, ttl_seconds: float) -> bool:
        return self.age(now) < ttl_seconds


@dataclass(frozen=True)
class CacheStats:
    """Snapshot of cache contents for diagnostics."""
    name: str
    size: int
    keys: list
    ttl_seconds: float


class TTLCache(Generic[K, V]):
    """
    Thread-safe key/value cache with a fixed TTL.

    Attributes:
        name: Identifier used in logs
        ttl_seconds: Age below which an entry is fresh
    """

    def __init__(
            self,
            name: str,
            ttl_seconds: float,
            clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = name
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[K, CacheEntry[K, V]] = {}
        self._counters: dict[K, int] = {}
        self._epoch = 0
        self._lock = threading.Lock()

    def get(self, key: K) -> CacheEntry[K, V] | None:
        """Entry for key regardless of age."""
        with self._lock:
            return self._entries.get(key)

    def get_fresh(self, key: K) -> V | None:
        """Value for key if younger than the TTL, else None."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not entry.is_fresh(self._clock(), self.ttl_seconds):
                return None
            logger.debug(f"Cache '{self.name}' hit: {key}")
            return entry.value

    def is_fresh(self, key: K) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and entry.is_fresh(self._clock(), self.ttl_seconds)

    def generation(self, key: K) -> Generation:
        """Token to pass back to put_if_generation()."""
        with self._lock:
            return self._epoch, self._counters.get(key, 0)

    def put(self, key: K, value: V) -> CacheEntry[K, V]:
        """Store value unconditionally (last write wins)."""
        with self._lock:
            entry = CacheEntry(key=key, value=value, fetched_at=self._clock())
            self._entries[key] = entry
            return entry

    def put_if_generation(self, key: K, value: V, generation: Generation) -> bool:
        """
        Store value only if the key was not invalidated since `generation`.

        Returns:
            True if stored, False if the write was superseded and dropped
        """
        with self._lock:
            if (self._epoch, self._counters.get(key, 0)) != generation:
                logger.debug(f"Cache '{self.name}' dropped superseded write: {key}")
                return False
            self._entries[key] = CacheEntry(key=key, value=value, fetched_at=self._clock())
            return True

    def invalidate(self, key: K, keep_entry: bool = False) -> Generation:
        """
        Supersede in-flight writes for key, removing its entry unless
        keep_entry is set (a forced refresh still needs it as stale data).

        Returns:
            The new generation, usable by the caller that invalidated
        """
        with self._lock:
            if not keep_entry:
                self._entries.pop(key, None)
            counter = self._counters.get(key, 0) + 1
            self._counters[key] = counter
            return self._epoch, counter

    def clear(self) -> None:
        """Remove all entries and supersede every in-flight write."""
        with self._lock:
            size = len(self._entries)
            self._entries.clear()
            self._counters.clear()
            self._epoch += 1
        logger.info(f"Cache '{self.name}' cleared ({size} entries)")

    def keys(self) -> list[K]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                name=self.name,
                size=len(self._entries),
                keys=list(self._entries),
                ttl_seconds=self.ttl_seconds,
            )
