"""
Entity Cache Core Store

Keyed in-process store for resident entity collections with:
- TTL-bounded entries (TimedEntry)
- Prefix invalidation ("pitches:" drops every pitch-derived key)
- Coalesced cold loads: concurrent misses on a key share one loader call
- Stale-load protection: a load overtaken by an invalidation or a
  write is returned to its callers but never stored

All mapping reads and writes are synchronous; the only await point is
the loader itself.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from songstudio.cache.entry import TimedEntry


logger = logging.getLogger(__name__)

_DEFAULT = object()


@dataclass
class CacheStats:
    """Cache operation statistics."""
    hits: int = 0
    misses: int = 0
    loads: int = 0
    coalesced: int = 0
    stale_loads_discarded: int = 0
    invalidations: int = 0
    load_samples: List[float] = field(default_factory=list)

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    @property
    def avg_load_ms(self) -> float:
        if not self.load_samples:
            return 0.0
        return sum(self.load_samples[-100:]) / len(self.load_samples[-100:]) * 1000

    def record_load(self, seconds: float):
        """Record a loader latency sample."""
        self.loads += 1
        self.load_samples.append(seconds)
        # Keep only last 1000 samples
        if len(self.load_samples) > 1000:
            self.load_samples = self.load_samples[-1000:]


class EntityCache:
    """
    In-memory keyed cache shared by every request of the process.

    Usage:
        cache = EntityCache(default_ttl=timedelta(minutes=10))
        songs = await cache.get_or_load("songs:all", load_songs)
        cache.invalidate_pattern("songs:")
    """

    def __init__(self, default_ttl: Optional[timedelta] = None):
        self.default_ttl = default_ttl
        self.stats = CacheStats()
        self._entries: Dict[str, TimedEntry] = {}
        # Bumped on every write/invalidation of a key
        self._generations: Dict[str, int] = {}
        self._inflight: Dict[str, asyncio.Future] = {}

    # =========================================================================
    # BASIC OPERATIONS
    # =========================================================================

    def get(self, key: str) -> Optional[Any]:
        """Get a live value, counting the hit or miss."""
        entry = self._entries.get(key)
        if entry is None:
            self.stats.misses += 1
            return None
        if entry.is_expired():
            del self._entries[key]
            self.stats.misses += 1
            return None
        entry.hit_count += 1
        self.stats.hits += 1
        return entry.value

    def peek(self, key: str) -> Optional[Any]:
        """Get a live value without touching statistics."""
        entry = self._entries.get(key)
        if entry is None or entry.is_expired():
            return None
        return entry.value

    def set(self, key: str, value: Any, ttl: Any = _DEFAULT) -> None:
        """Store a value, superseding any load in flight for the key."""
        self._bump(key)
        self._store(key, value, ttl)

    def invalidate(self, key: str) -> bool:
        """Drop one key. Returns True if a value was resident."""
        self._bump(key)
        existed = self._entries.pop(key, None) is not None
        if existed:
            self.stats.invalidations += 1
            logger.debug(f"Invalidated cache key {key}")
        return existed

    def invalidate_pattern(self, prefix: str) -> int:
        """Drop every key starting with prefix. Returns the number dropped."""
        matched = [key for key in self._entries if key.startswith(prefix)]
        for key in matched:
            del self._entries[key]
        for key in set(matched) | {k for k in self._inflight if k.startswith(prefix)}:
            self._bump(key)

        self.stats.invalidations += len(matched)
        if matched:
            logger.debug(f"Invalidated {len(matched)} keys matching {prefix}*")
        return len(matched)

    def clear(self) -> int:
        """Drop everything."""
        return self.invalidate_pattern("")

    def cleanup_expired(self) -> int:
        """Remove expired entries. Returns the number removed."""
        expired = [key for key, entry in self._entries.items() if entry.is_expired()]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Removed {len(expired)} expired cache entries")
        return len(expired)

    def generation(self, key: str) -> int:
        """Number of writes and invalidations seen by key so far."""
        return self._generations.get(key, 0)

    def keys(self) -> List[str]:
        return list(self._entries.keys())

    def __contains__(self, key: str) -> bool:
        return self.peek(key) is not None

    def __len__(self) -> int:
        return len(self._entries)

    # =========================================================================
    # LOADING
    # =========================================================================

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: Any = _DEFAULT,
    ) -> Any:
        """
        Return the resident value for key, loading it on a miss.

        Concurrent callers that miss while a load is running await the
        same load instead of starting their own. Loader failures
        propagate to every waiting caller and nothing is stored; a None
        result (absent record) is returned but not cached.
        """
        value = self.get(key)
        if value is not None:
            return value

        inflight = self._inflight.get(key)
        if inflight is not None:
            self.stats.coalesced += 1
            return await asyncio.shield(inflight)

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        generation = self._generations.get(key, 0)
        start = time.time()

        try:
            value = await loader()
        except asyncio.CancelledError:
            self._inflight.pop(key, None)
            future.cancel()
            raise
        except Exception as e:
            self._inflight.pop(key, None)
            future.set_exception(e)
            # Mark retrieved; waiters (if any) still receive it
            future.exception()
            raise

        self._inflight.pop(key, None)
        self.stats.record_load(time.time() - start)

        if self._generations.get(key, 0) == generation:
            if value is not None:
                self._store(key, value, ttl)
        else:
            self.stats.stale_loads_discarded += 1
            logger.debug(f"Discarded load of {key} overtaken by a write")

        future.set_result(value)
        return value

    # =========================================================================
    # STATISTICS
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        return {
            "entries": len(self._entries),
            "keys": sorted(self._entries.keys()),
            "hits": self.stats.hits,
            "misses": self.stats.misses,
            "hit_rate_percent": round(self.stats.hit_rate * 100, 1),
            "loads": self.stats.loads,
            "coalesced": self.stats.coalesced,
            "stale_loads_discarded": self.stats.stale_loads_discarded,
            "invalidations": self.stats.invalidations,
            "avg_load_ms": round(self.stats.avg_load_ms, 2),
        }

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _bump(self, key: str) -> None:
        self._generations[key] = self._generations.get(key, 0) + 1

    def _store(self, key: str, value: Any, ttl: Any) -> None:
        if ttl is _DEFAULT:
            ttl = self.default_ttl
        self._entries[key] = TimedEntry(value=value, ttl=ttl)
