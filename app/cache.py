import fnmatch
import json
import logging
import time
from typing import Callable

import redis.asyncio as redis

from app.config import Settings

logger = logging.getLogger(__name__)

RESPONSE_KEY_PREFIX = "response:"

# Route families that writes invalidate.
POSTS_PREFIX = "/api/v1/posts"
CATEGORIES_PREFIX = "/api/v1/categories"


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class MemoryCacheBackend:
    """
    In-process TTL map.

    Expiry is passive: an entry past its deadline is dropped when it is
    next read.  ``sweep`` removes expired entries eagerly and runs
    whenever the map grows past *max_entries*; if that is not enough the
    oldest entries are evicted.
    """

    name = "memory"

    def __init__(self, max_entries: int = 5000, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: dict[str, tuple[float | None, str]] = {}
        self._max_entries = max_entries
        self._clock = clock

    async def connect(self) -> None:
        return None

    async def disconnect(self) -> None:
        self._entries.clear()

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at is not None and expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        self._entries.pop(key, None)
        self._entries[key] = (expires_at, value)
        if len(self._entries) > self._max_entries:
            self.sweep()

    async def delete_pattern(self, pattern: str) -> int:
        keys = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    async def clear(self) -> None:
        self._entries.clear()

    def sweep(self) -> int:
        """Drop expired entries, then the oldest ones until under the bound."""
        now = self._clock()
        expired = [k for k, (exp, _) in self._entries.items() if exp is not None and exp <= now]
        for key in expired:
            del self._entries[key]
        removed = len(expired)
        while len(self._entries) > self._max_entries:
            del self._entries[next(iter(self._entries))]
            removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._entries)


class RedisCacheBackend:
    """Shared cache for deployments that already run Redis."""

    name = "redis"

    def __init__(self, url: str) -> None:
        self._url = url
        self._redis: redis.Redis | None = None

    async def connect(self) -> None:
        self._redis = redis.from_url(
            self._url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        await self._redis.ping()
        logger.info("Redis connected: %s", self._url)

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def get(self, key: str) -> str | None:
        if not self._redis:
            return None
        return await self._redis.get(key)

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        if not self._redis:
            return
        await self._redis.set(key, value, ex=ttl)

    async def delete_pattern(self, pattern: str) -> int:
        # SCAN rather than KEYS so a large keyspace never blocks Redis.
        if not self._redis:
            return 0
        keys: list[str] = []
        async for key in self._redis.scan_iter(match=pattern):
            keys.append(key)
        if keys:
            await self._redis.delete(*keys)
        return len(keys)

    async def clear(self) -> None:
        await self.delete_pattern(f"{RESPONSE_KEY_PREFIX}*")


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class CacheManager:
    """
    Response cache used by ``ResponseCacheMiddleware`` and by the
    transaction boundary, which evicts the prefixes a committed write
    made stale.

    Every public method fails open: a backend error is logged and the
    call behaves like a miss (reads) or a no-op (writes), so caching can
    never break a request.

    One instance is built per application in ``create_app`` and reaches
    handlers through ``app.state.cache`` / the ``get_cache`` dependency.
    """

    def __init__(self, backend) -> None:
        self.backend = backend
        self._hits: int = 0
        self._misses: int = 0
        self._errors: int = 0
        # Bumped on every invalidation; a response computed across a bump
        # may predate the write and is not stored.
        self.generation: int = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "CacheManager":
        if settings.CACHE_BACKEND == "redis":
            return cls(RedisCacheBackend(settings.REDIS_URL))
        return cls(MemoryCacheBackend(max_entries=settings.CACHE_MAX_ENTRIES))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        try:
            await self.backend.connect()
        except Exception as exc:
            self._errors += 1
            logger.warning("Cache backend %s unavailable, serving uncached: %s", self.backend.name, exc)

    async def disconnect(self) -> None:
        try:
            await self.backend.disconnect()
        except Exception as exc:
            logger.debug("Cache disconnect error: %s", exc)

    async def clear(self) -> None:
        """Drop every cached response and reset the counters."""
        self.generation += 1
        try:
            await self.backend.clear()
        except Exception as exc:
            self._errors += 1
            logger.warning("Cache CLEAR error: %s", exc)
        self._hits = self._misses = 0

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def get(self, key: str) -> dict | list | None:
        try:
            data = await self.backend.get(key)
            if data is not None:
                self._hits += 1
                return json.loads(data)
        except Exception as exc:
            self._errors += 1
            logger.warning("Cache GET error for key=%r: %s", key, exc)
        self._misses += 1
        return None

    async def set(self, key: str, value: dict | list, ttl: int | None = None) -> None:
        try:
            await self.backend.set(key, json.dumps(value, default=str), ttl)
        except Exception as exc:
            self._errors += 1
            logger.warning("Cache SET error for key=%r: %s", key, exc)

    async def delete_pattern(self, pattern: str) -> int:
        try:
            removed = await self.backend.delete_pattern(pattern)
        except Exception as exc:
            self._errors += 1
            logger.warning("Cache DELETE_PATTERN error for pattern=%r: %s", pattern, exc)
            return 0
        if removed:
            logger.debug("Cache invalidated %d key(s) matching %r", removed, pattern)
        return removed

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    async def invalidate_prefix(self, path_prefix: str) -> int:
        """Remove every cached response whose path starts with *path_prefix*."""
        self.generation += 1
        return await self.delete_pattern(f"{RESPONSE_KEY_PREFIX}{path_prefix.rstrip('/')}*")

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def stats(self) -> dict:
        total = self._hits + self._misses
        return {
            "backend": self.backend.name,
            "hits": self._hits,
            "misses": self._misses,
            "errors": self._errors,
            "hit_rate": round(self._hits / total * 100, 1) if total > 0 else 0.0,
        }
