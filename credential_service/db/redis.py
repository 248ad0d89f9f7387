"""Redis connection management.

WHY REDIS HERE
--------------
Two pieces of state in this service are ephemeral, hot-path and shared
across API instances:

  - verdict cache entries (every public verification checks it first)
  - rate-limit window counters (every verification increments one)

Both need sub-millisecond access and built-in TTL; neither needs the
durability of Postgres.  Losing Redis costs us cache hits and throttling
accuracy, never correctness: the cache degrades to a miss and the rate
limiter fails open.

``RedisConnection`` owns the pool.  The ServiceContainer builds one when
REDIS_URL is configured and passes it to the cache and the rate-limit
store; when REDIS_URL is unset, both use in-memory backends.
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class RedisConnection:
    def __init__(self, url: str, *, max_connections: int = 20) -> None:
        self._url = url
        self._max_connections = max_connections
        self._client: aioredis.Redis | None = None  # type: ignore[type-arg]

    async def open(self) -> None:
        if self._client is not None:
            return
        self._client = aioredis.from_url(
            self._url,
            decode_responses=True,  # return str instead of bytes
            max_connections=self._max_connections,
        )
        try:
            await self._client.ping()  # type: ignore[misc]
            logger.info("Redis connected: %s", self._url)
        except Exception:
            # Keep the pool: the cache and the rate limiter degrade on
            # their own and recover when Redis comes back.
            logger.exception("Redis connection failed on startup")

    async def close(self) -> None:
        if self._client is None:
            return
        await self._client.aclose()
        self._client = None
        logger.info("Redis connection pool closed")

    @property
    def client(self) -> aioredis.Redis:  # type: ignore[type-arg]
        if self._client is None:
            raise RuntimeError("Redis not open. Call open() first.")
        return self._client

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())  # type: ignore[misc]
        except RedisError:
            return False
