"""
In-memory TTL cache shared by the classifier and the registry verifier.
"""

from __future__ import annotations

import hashlib
import math
import time
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar

import structlog

from leadminer.config.config import CacheConfig
from leadminer.observability import increment

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def make_key(*parts: Optional[str]) -> str:
    """Stable cache key from arbitrary text parts."""
    joined = "\x1f".join(p or "" for p in parts)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


class TTLCache(Generic[T]):
    """
    Expiring key/value cache with insertion-age eviction.

    Entries older than ``ttl_seconds`` are treated as absent. When the cache
    is full, the oldest ``evict_fraction`` of entries (by insertion time) are
    dropped before the new entry is stored. Never performs I/O.
    """

    def __init__(
        self,
        name: str = "default",
        ttl_seconds: float = 3600.0,
        max_entries: int = 1000,
        evict_fraction: float = 0.2,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        if not 0.0 < evict_fraction <= 1.0:
            raise ValueError("evict_fraction must be in (0, 1]")
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.evict_fraction = evict_fraction
        self._clock = clock
        # Dict order is insertion order; set() re-inserts to refresh it.
        self._entries: Dict[str, Tuple[T, float]] = {}
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expirations = 0

    @classmethod
    def from_config(cls, config: CacheConfig, name: str = "default", ttl_seconds: Optional[float] = None) -> "TTLCache":
        return cls(
            name=name,
            ttl_seconds=ttl_seconds or config.ttl_seconds,
            max_entries=config.max_entries,
            evict_fraction=config.evict_fraction,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not self._expired(entry[1])

    def _expired(self, inserted_at: float) -> bool:
        return self._clock() - inserted_at >= self.ttl_seconds

    def get(self, key: str) -> Optional[T]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            increment("cache_misses_total", labels={"cache": self.name})
            return None
        value, inserted_at = entry
        if self._expired(inserted_at):
            del self._entries[key]
            self.expirations += 1
            self.misses += 1
            increment("cache_misses_total", labels={"cache": self.name})
            return None
        self.hits += 1
        increment("cache_hits_total", labels={"cache": self.name})
        return value

    def set(self, key: str, value: T) -> None:
        self._entries.pop(key, None)
        if len(self._entries) >= self.max_entries:
            self._evict_oldest()
        self._entries[key] = (value, self._clock())

    def _evict_oldest(self) -> None:
        count = max(1, math.ceil(len(self._entries) * self.evict_fraction))
        for key in list(self._entries)[:count]:
            del self._entries[key]
        self.evictions += count
        logger.debug("Cache evicted oldest entries", cache=self.name, evicted=count, remaining=len(self._entries))

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        expired = [k for k, (_, ts) in self._entries.items() if self._expired(ts)]
        for key in expired:
            del self._entries[key]
        self.expirations += len(expired)
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def get_stats(self) -> Dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "name": self.name,
            "size": len(self._entries),
            "max_entries": self.max_entries,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / lookups if lookups else 0.0,
            "evictions": self.evictions,
            "expirations": self.expirations,
        }
