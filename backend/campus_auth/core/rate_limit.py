"""
Rate limiting for authentication failures.
Counters live in the cache store (Redis or memory); no persistence, entries expire via TTL.
Algorithms: sliding window (default), fixed window, token bucket, leaky bucket.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Callable

from campus_auth.config import RateLimitSettings
from campus_auth.core.cache import CacheStore

logger = logging.getLogger(__name__)

SLIDING_WINDOW = "sliding_window"
FIXED_WINDOW = "fixed_window"
TOKEN_BUCKET = "token_bucket"
LEAKY_BUCKET = "leaky_bucket"

# Bucket state is kept for an hour after the last touch
BUCKET_TTL_SECONDS = 3600

AUTH_FAIL_KEY_PREFIX = "auth_fail:"


def auth_fail_key(ip: str) -> str:
    return f"{AUTH_FAIL_KEY_PREFIX}{ip}"


class RateLimiter:
    def __init__(
        self,
        cache: CacheStore,
        *,
        enabled: bool = True,
        fail_open: bool = True,
        max_attempts: int = 5,
        window_seconds: int = 300,
        algorithm: str = SLIDING_WINDOW,
        prefix: str = "rate_limit:",
        clock: Callable[[], float] = time.time,
    ):
        self._cache = cache
        self.enabled = enabled
        self.fail_open = fail_open
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.algorithm = algorithm
        self._prefix = prefix
        self._clock = clock

    @classmethod
    def from_settings(cls, cache: CacheStore, config: RateLimitSettings, **kwargs) -> RateLimiter:
        return cls(
            cache,
            enabled=config.enabled,
            fail_open=config.fail_open,
            max_attempts=config.max_attempts,
            window_seconds=config.window_seconds,
            algorithm=config.algorithm,
            **kwargs,
        )

    def _key(self, kind: str, key: str) -> str:
        return f"{self._prefix}{kind}:{key}"

    async def hit(self, ip: str) -> bool:
        """Record an authentication failure for ip under the configured policy."""
        return await self.attempt(auth_fail_key(ip), self.max_attempts, self.window_seconds, self.algorithm)

    async def attempt(
        self,
        key: str,
        max_attempts: int,
        window_seconds: int,
        algorithm: str = SLIDING_WINDOW,
    ) -> bool:
        """
        Return True when the attempt is allowed (and record it), False when denied.
        Disabled limiter: always allowed, nothing recorded.
        Cache backend error: logged, resolved by fail_open.
        """
        if not self.enabled:
            return True
        try:
            if algorithm == FIXED_WINDOW:
                return await self._fixed_window(key, max_attempts, window_seconds)
            if algorithm == TOKEN_BUCKET:
                return await self._token_bucket(key, max_attempts, max_attempts / window_seconds)
            if algorithm == LEAKY_BUCKET:
                return await self._leaky_bucket(key, max_attempts, max_attempts / window_seconds)
            return await self._sliding_window(key, max_attempts, window_seconds)
        except Exception as e:
            logger.warning(
                "Rate limit: cache error for %s (%s), %s",
                key,
                e,
                "allowing" if self.fail_open else "denying",
            )
            return self.fail_open

    async def _window_requests(self, key: str, window_seconds: int) -> list[float]:
        window_start = self._clock() - window_seconds
        requests = await self._cache.get(self._key(SLIDING_WINDOW, key), []) or []
        return [ts for ts in requests if ts > window_start]

    async def _sliding_window(self, key: str, max_requests: int, window_seconds: int) -> bool:
        requests = await self._window_requests(key, window_seconds)
        if len(requests) >= max_requests:
            return False
        requests.append(self._clock())
        await self._cache.set(self._key(SLIDING_WINDOW, key), requests, window_seconds + 1)
        return True

    def _fixed_window_key(self, key: str, window_seconds: int) -> str:
        return f"{self._key(FIXED_WINDOW, key)}:{math.floor(self._clock() / window_seconds)}"

    async def _fixed_window(self, key: str, max_requests: int, window_seconds: int) -> bool:
        window_key = self._fixed_window_key(key, window_seconds)
        current = int(await self._cache.get(window_key, 0) or 0)
        if current >= max_requests:
            return False
        await self._cache.set(window_key, current + 1, window_seconds + 1)
        return True

    async def _token_bucket(self, key: str, max_tokens: int, refill_per_second: float, cost: int = 1) -> bool:
        now = self._clock()
        cache_key = self._key(TOKEN_BUCKET, key)
        bucket = await self._cache.get(cache_key) or {"tokens": max_tokens, "last_refill": now}
        elapsed = now - bucket["last_refill"]
        if elapsed > 0:
            bucket["tokens"] = min(max_tokens, bucket["tokens"] + elapsed * refill_per_second)
            bucket["last_refill"] = now
        allowed = bucket["tokens"] >= cost
        if allowed:
            bucket["tokens"] -= cost
        await self._cache.set(cache_key, bucket, BUCKET_TTL_SECONDS)
        return allowed

    async def _leaky_bucket(self, key: str, capacity: int, leak_per_second: float) -> bool:
        now = self._clock()
        cache_key = self._key(LEAKY_BUCKET, key)
        bucket = await self._cache.get(cache_key) or {"water": 0, "last_leak": now}
        elapsed = now - bucket["last_leak"]
        if elapsed > 0:
            bucket["water"] = max(0, bucket["water"] - elapsed * leak_per_second)
            bucket["last_leak"] = now
        allowed = bucket["water"] < capacity
        if allowed:
            bucket["water"] += 1
        await self._cache.set(cache_key, bucket, BUCKET_TTL_SECONDS)
        return allowed

    async def _usage(self, key: str, max_attempts: int, window_seconds: int) -> tuple[int, int]:
        """
        (attempts left, seconds until the next one frees up) under the configured algorithm.
        Reads state only; nothing is recorded.
        """
        now = self._clock()
        if self.algorithm == FIXED_WINDOW:
            current = int(await self._cache.get(self._fixed_window_key(key, window_seconds), 0) or 0)
            window_end = (math.floor(now / window_seconds) + 1) * window_seconds
            return max(0, max_attempts - current), math.ceil(window_end - now) if current else 0

        rate = max_attempts / window_seconds
        if self.algorithm == TOKEN_BUCKET:
            bucket = await self._cache.get(self._key(TOKEN_BUCKET, key))
            if not bucket:
                return max_attempts, 0
            tokens = min(max_attempts, bucket["tokens"] + max(0.0, now - bucket["last_refill"]) * rate)
            if tokens >= 1:
                return math.floor(tokens), 0
            return 0, math.ceil((1 - tokens) / rate)

        if self.algorithm == LEAKY_BUCKET:
            bucket = await self._cache.get(self._key(LEAKY_BUCKET, key))
            if not bucket:
                return max_attempts, 0
            water = max(0.0, bucket["water"] - max(0.0, now - bucket["last_leak"]) * rate)
            if water < max_attempts:
                return math.ceil(max_attempts - water), 0
            return 0, math.floor((water - max_attempts) / rate) + 1

        requests = await self._window_requests(key, window_seconds)
        if not requests:
            return max_attempts, 0
        return max(0, max_attempts - len(requests)), max(0, math.ceil(min(requests) + window_seconds - now))

    async def remaining(self, key: str, max_attempts: int, window_seconds: int) -> int:
        """Attempts left under the configured algorithm."""
        left, _ = await self._usage(key, max_attempts, window_seconds)
        return left

    async def available_in(self, key: str, max_attempts: int, window_seconds: int) -> int:
        """Seconds until an attempt frees up (sliding window: until the oldest attempt expires)."""
        _, wait = await self._usage(key, max_attempts, window_seconds)
        return wait

    async def limited(self, key: str, max_attempts: int, window_seconds: int) -> bool:
        if not self.enabled:
            return False
        try:
            return await self.remaining(key, max_attempts, window_seconds) == 0
        except Exception as e:
            logger.warning("Rate limit: cache error reading %s (%s)", key, e)
            return not self.fail_open

    async def clear(self, key: str) -> None:
        for kind in (SLIDING_WINDOW, TOKEN_BUCKET, LEAKY_BUCKET):
            await self._cache.delete(self._key(kind, key))
        await self._cache.delete(self._fixed_window_key(key, self.window_seconds))

    async def headers(self, key: str, max_attempts: int, window_seconds: int) -> dict[str, str]:
        """Rate limit headers for a 429 response."""
        remaining, retry_after = await self._usage(key, max_attempts, window_seconds)
        return {
            "X-RateLimit-Limit": str(max_attempts),
            "X-RateLimit-Remaining": str(remaining),
            "X-RateLimit-Reset": str(int(self._clock()) + retry_after),
            "Retry-After": str(max(1, retry_after)),
        }
