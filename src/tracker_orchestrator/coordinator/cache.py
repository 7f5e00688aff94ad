"""
Response cache for the coordinator.

Entries are keyed by action and normalized params and are never served
once their expiry time has been reached.
"""

import asyncio
import json
import time
from typing import Any

import structlog

from ..polling.request_manager import Clock

logger = structlog.get_logger(__name__)


class CacheEntry:
    """Represents a single cache entry with expiration."""

    def __init__(self, value: Any, ttl_seconds: float, now: float) -> None:
        self.value = value
        self.created_at = now
        self.expires_at = now + ttl_seconds

    def is_valid(self, now: float) -> bool:
        """Valid strictly before the expiry instant."""
        return now < self.expires_at

    def age(self, now: float) -> float:
        return now - self.created_at


class ResponseCache:
    """
    In-memory cache of successful vendor responses.

    Only the coordinator's own processing loop writes to it.
    """

    def __init__(self, default_ttl: float = 60.0, clock: Clock = time.time) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._cache: dict[str, CacheEntry] = {}
        self._stats = {
            "hits": 0,
            "misses": 0,
            "evictions": 0,
            "total_requests": 0,
        }
        self._lock = asyncio.Lock()

    @staticmethod
    def make_key(action: str, params: dict[str, Any] | None) -> str:
        """Build a key that is stable under param reordering."""
        return f"{action}:{json.dumps(params or {}, sort_keys=True, default=str)}"

    async def get(self, key: str) -> CacheEntry | None:
        """
        Get a live entry from the cache.

        Args:
            key: Cache key

        Returns:
            The entry, or None if absent or expired
        """
        async with self._lock:
            self._stats["total_requests"] += 1
            entry = self._cache.get(key)
            if entry is not None:
                if entry.is_valid(self._clock()):
                    self._stats["hits"] += 1
                    return entry
                del self._cache[key]
                self._stats["evictions"] += 1

            self._stats["misses"] += 1
            return None

    async def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        async with self._lock:
            self._cache[key] = CacheEntry(value, ttl, self._clock())

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._cache.pop(key, None) is not None

    async def clear(self) -> None:
        """Clear all cache entries."""
        async with self._lock:
            self._cache.clear()

    async def cleanup_expired(self) -> int:
        """
        Remove expired entries from cache.

        Returns:
            Number of entries removed
        """
        async with self._lock:
            now = self._clock()
            expired_keys = [
                key for key, entry in self._cache.items() if not entry.is_valid(now)
            ]
            for key in expired_keys:
                del self._cache[key]

            self._stats["evictions"] += len(expired_keys)
            if expired_keys:
                logger.debug("Evicted expired cache entries", count=len(expired_keys))
            return len(expired_keys)

    def __len__(self) -> int:
        return len(self._cache)

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        total_requests = self._stats["total_requests"]
        hit_rate = (
            (self._stats["hits"] / total_requests * 100) if total_requests > 0 else 0
        )

        return {
            "cache_size": len(self._cache),
            "hit_rate_percent": round(hit_rate, 2),
            "total_requests": total_requests,
            "hits": self._stats["hits"],
            "misses": self._stats["misses"],
            "evictions": self._stats["evictions"],
        }
