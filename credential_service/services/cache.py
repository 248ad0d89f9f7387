"""Key/value cache with TTL, in-memory or Redis.

CACHE INVALIDATION
------------------
We use two complementary strategies:

  1. TTL: every entry auto-expires.  This is the safety net: even if an
     invalidation is missed, stale data disappears on its own.

  2. Explicit invalidation: when a credential is revoked, its cached
     verdict is dropped immediately (see VerificationCache).

``incr`` exists for generation counters: VerificationCache bumps a
per-credential generation on invalidation so that a verdict computed
before the revocation, but written after it, is never served.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from redis.exceptions import RedisError

from credential_service.core.errors import TransientStoreError
from credential_service.db.redis import RedisConnection


@runtime_checkable
class CacheService(Protocol):
    async def get(self, key: str) -> str | None:
        """Fetch a cached value.  Returns None on cache miss."""
        ...

    async def get_many(self, *keys: str) -> list[str | None]:
        """Fetch several values in one round trip."""
        ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store a value with a TTL (time to live)."""
        ...

    async def delete(self, key: str) -> None:
        """Explicitly invalidate a cached entry."""
        ...

    async def incr(self, key: str) -> int:
        """Atomically increment an integer counter (created at 0)."""
        ...


class InMemoryCacheService:
    """In-memory cache with TTL enforcement.

    ``time_source`` is injectable so tests can move time forward without
    sleeping.
    """

    def __init__(self, time_source: Callable[[], float] = time.monotonic) -> None:
        self._time = time_source
        # key -> (value, expires_at or None)
        self._store: dict[str, tuple[str, float | None]] = {}

    async def get(self, key: str) -> str | None:
        item = self._store.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= self._time():
            del self._store[key]
            return None
        return value

    async def get_many(self, *keys: str) -> list[str | None]:
        return [await self.get(key) for key in keys]

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._store[key] = (value, self._time() + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    async def incr(self, key: str) -> int:
        current = int(await self.get(key) or 0) + 1
        self._store[key] = (str(current), None)
        return current


class RedisCacheService:
    """Redis-backed cache, shared across all API instances."""

    # Key prefix prevents collisions with the rate limiter, etc.
    _PREFIX = "cache:"

    def __init__(self, redis: RedisConnection) -> None:
        self._redis = redis

    async def get(self, key: str) -> str | None:
        try:
            return await self._redis.client.get(f"{self._PREFIX}{key}")
        except RedisError as exc:
            raise TransientStoreError("cache", "get", str(exc)) from exc

    async def get_many(self, *keys: str) -> list[str | None]:
        try:
            return await self._redis.client.mget([f"{self._PREFIX}{k}" for k in keys])
        except RedisError as exc:
            raise TransientStoreError("cache", "get_many", str(exc)) from exc

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            # SETEX sets value and TTL in one command; SET then EXPIRE
            # could leave a key that never expires.
            await self._redis.client.setex(f"{self._PREFIX}{key}", ttl_seconds, value)
        except RedisError as exc:
            raise TransientStoreError("cache", "set", str(exc)) from exc

    async def delete(self, key: str) -> None:
        try:
            await self._redis.client.delete(f"{self._PREFIX}{key}")
        except RedisError as exc:
            raise TransientStoreError("cache", "delete", str(exc)) from exc

    async def incr(self, key: str) -> int:
        try:
            return int(await self._redis.client.incr(f"{self._PREFIX}{key}"))
        except RedisError as exc:
            raise TransientStoreError("cache", "incr", str(exc)) from exc
