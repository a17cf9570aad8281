"""
Short-lived result cache for computed location stats.

The aggregator only talks to the ``ResultCache`` interface, so the in-memory
implementation can be replaced by a shared cache without touching it.

Usage:
    from scripts.lib.cache import build_cache

    cache = build_cache(ttl_seconds=120)
    cache.set(("portland", start_ms, end_ms), result)
    cached = cache.get(("portland", start_ms, end_ms))
"""
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

from scripts.lib.logger import setup_logger

logger = setup_logger(__name__)


class ResultCache(ABC):
    """Key/value store for aggregation results."""

    @abstractmethod
    def get(self, key: Hashable) -> Optional[Any]:
        """Return the cached value, or None on a miss."""

    @abstractmethod
    def set(self, key: Hashable, value: Any) -> None:
        """Store a value under ``key``."""

    def stats(self) -> Dict[str, Any]:
        return {"backend": type(self).__name__}


class NullCache(ResultCache):
    """Cache that never stores anything (TTL of zero)."""

    def get(self, key: Hashable) -> Optional[Any]:
        return None

    def set(self, key: Hashable, value: Any) -> None:
        return None


class InMemoryTTLCache(ResultCache):
    """
    Process-local cache with a fixed TTL.

    Expired entries are evicted when read and swept on every write. Access
    happens between await points only, so no locking is needed under asyncio.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        stored_at, value = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            self.misses += 1
            logger.debug("Cache expired: %s", key)
            return None
        self.hits += 1
        return value

    def set(self, key: Hashable, value: Any) -> None:
        now = self._clock()
        self._sweep(now)
        self._entries[key] = (now, value)

    def _sweep(self, now: float) -> None:
        expired = [
            key for key, (stored_at, _) in self._entries.items()
            if now - stored_at >= self.ttl_seconds
        ]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Cache swept %d expired entries", len(expired))

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        return {
            "backend": type(self).__name__,
            "ttl_seconds": self.ttl_seconds,
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
        }


def build_cache(ttl_seconds: float) -> ResultCache:
    """Pick the cache implementation for a configured TTL."""
    if ttl_seconds <= 0:
        logger.info("Stats caching disabled (TTL=%s)", ttl_seconds)
        return NullCache()
    return InMemoryTTLCache(ttl_seconds)
