"""
Key/value cache with TTL used for validated-token lookups and rate-limit counters.
Two drivers: in-process memory (dev, tests, single worker) and Redis (shared across workers).
Values are JSON-serialisable (ints, floats, lists, dicts).
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)


class CacheStore(Protocol):
    async def get(self, key: str, default: Any = None) -> Any: ...

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryCache:
    """Dict-backed cache; expiry checked lazily on read."""

    def __init__(self, default_ttl: int = 3600, clock: Callable[[], float] = time.time):
        self._store: dict[str, tuple[Any, float]] = {}
        self._default_ttl = default_ttl
        self._clock = clock

    async def get(self, key: str, default: Any = None) -> Any:
        item = self._store.get(key)
        if item is None:
            return default
        value, expires = item
        if expires and expires <= self._clock():
            del self._store[key]
            return default
        return value

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        ttl = self._default_ttl if ttl is None else ttl
        expires = self._clock() + ttl if ttl > 0 else 0.0
        self._store[key] = (value, expires)

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    async def clear(self) -> None:
        self._store.clear()


class RedisCache:
    """Cache on a redis.asyncio client; values stored as JSON strings."""

    def __init__(self, client, prefix: str = "campus_auth:", default_ttl: int = 3600):
        self._client = client
        self._prefix = prefix
        self._default_ttl = default_ttl

    @classmethod
    def from_url(cls, url: str, **kwargs) -> RedisCache:
        from redis.asyncio import from_url

        client = from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, **kwargs)

    async def get(self, key: str, default: Any = None) -> Any:
        raw = await self._client.get(self._prefix + key)
        if raw is None:
            return default
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        ttl = self._default_ttl if ttl is None else ttl
        if ttl > 0:
            await self._client.set(self._prefix + key, json.dumps(value), ex=ttl)
        else:
            await self._client.set(self._prefix + key, json.dumps(value))

    async def delete(self, key: str) -> None:
        await self._client.delete(self._prefix + key)

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except Exception as e:
            logger.warning("Cache: error closing Redis: %s", e)


def build_cache(redis_url: str) -> MemoryCache | RedisCache:
    """Redis cache when a URL is configured, otherwise in-process memory."""
    if redis_url:
        return RedisCache.from_url(redis_url)
    logger.info("Cache: REDIS_URL not set, using in-process memory cache")
    return MemoryCache()
