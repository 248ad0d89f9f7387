"""Per-caller rate limiting for public verification, sliding window.

CHOOSING AN ALGORITHM
----------------------
1. FIXED WINDOW  ("120 requests per minute, counter reset on the minute")
   Cheap, but a caller can send 120 requests at 11:59:59 and 120 more at
   12:00:01, 240 in two seconds.

2. SLIDING WINDOW LOG
   Store every request timestamp.  Exact, but memory grows with traffic.

3. SLIDING WINDOW COUNTER  (what we use)
   Keep one counter per fixed window, and estimate the rolling count by
   weighting the previous window by how much of it still overlaps:

       estimate = current + previous * (1 - elapsed_fraction_of_current)

   Two integers per caller, no boundary burst, and the per-window
   counter maps directly onto Redis INCR + EXPIRE.

FAILING OPEN
------------
Verification is a public good: an employer checking a diploma should not
be turned away because our Redis is restarting.  When the counter store
is unavailable (error or timeout), ``allow`` returns an allowed decision
flagged ``fail_open``, logs a warning and counts it.  Throttling is lost
for the duration of the outage; verification is not.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from redis.exceptions import RedisError

from credential_service.core.clock import Clock
from credential_service.core.errors import TransientStoreError
from credential_service.core.metrics import RATE_LIMIT_DECISIONS
from credential_service.db.redis import RedisConnection

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class WindowCount:
    """Counter state right after an increment.

    current:   requests in the current fixed window, including this one
    previous:  requests in the window before it
    ttl:       seconds until the current counter expires
    """

    current: int
    previous: int
    ttl: int


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    """The outcome of a rate limit check.

    allowed:      True if the request may proceed.
    remaining:    Requests left before the estimate reaches the limit.
    reset_at:     When the current window closes.
    limit:        The configured maximum per window.
    fail_open:    True when the store was unavailable and the request was
                  let through without counting.
    """

    allowed: bool
    remaining: int
    reset_at: datetime
    limit: int
    fail_open: bool = False

    def retry_after(self, now: datetime) -> float:
        if self.allowed:
            return 0.0
        return max(0.0, (self.reset_at - now).total_seconds())


@runtime_checkable
class RateLimitStore(Protocol):
    async def increment_window(
        self, key: str, window_seconds: int, now: float
    ) -> WindowCount: ...


class InMemoryRateLimitStore:
    """Per-process counters.

    With several API instances each keeps its own counts, so a caller
    gets ``limit`` requests per instance.  Redis fixes that.
    """

    def __init__(self) -> None:
        # (key, window_seconds, bucket) -> count
        self._counts: dict[tuple[str, int, int], int] = {}

    async def increment_window(
        self, key: str, window_seconds: int, now: float
    ) -> WindowCount:
        bucket = int(now // window_seconds)
        current_key = (key, window_seconds, bucket)
        self._counts[current_key] = self._counts.get(current_key, 0) + 1
        previous = self._counts.get((key, window_seconds, bucket - 1), 0)
        self._evict_before(key, window_seconds, bucket - 1)
        ttl = int((bucket + 2) * window_seconds - now)
        return WindowCount(current=self._counts[current_key], previous=previous, ttl=ttl)

    def _evict_before(self, key: str, window_seconds: int, oldest_kept: int) -> None:
        stale = [
            k
            for k in self._counts
            if k[0] == key and k[1] == window_seconds and k[2] < oldest_kept
        ]
        for k in stale:
            del self._counts[k]


class RedisRateLimitStore:
    """Redis-backed counters, shared across all API instances.

    WHY A LUA SCRIPT:
    Incrementing the current window, setting its expiry on first use and
    reading the previous window must happen together.  Redis runs a Lua
    script atomically, so two instances can never interleave between the
    INCR and the EXPIRE (which would leave a counter that never expires).
    """

    # KEYS[1] = current window key, KEYS[2] = previous window key
    # ARGV[1] = window length in seconds
    # Returns: {current_count, previous_count, ttl_seconds}
    _LUA_SCRIPT = """
    local current = redis.call('INCR', KEYS[1])
    if current == 1 then
        -- keep it long enough to serve as "previous" for the next window
        redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]) * 2)
    end
    local previous = tonumber(redis.call('GET', KEYS[2]) or '0')
    local ttl = redis.call('TTL', KEYS[1])
    return {current, previous, ttl}
    """

    def __init__(self, redis: RedisConnection) -> None:
        self._redis = redis

    async def increment_window(
        self, key: str, window_seconds: int, now: float
    ) -> WindowCount:
        bucket = int(now // window_seconds)
        # register_script only hashes the source; EVALSHA falls back to
        # EVAL when the server has not seen it yet.
        script = self._redis.client.register_script(self._LUA_SCRIPT)
        try:
            current, previous, ttl = await script(
                keys=[
                    f"ratelimit:{key}:{window_seconds}:{bucket}",
                    f"ratelimit:{key}:{window_seconds}:{bucket - 1}",
                ],
                args=[window_seconds],
            )
        except RedisError as exc:
            raise TransientStoreError("rate_limit_store", "increment_window", str(exc)) from exc
        return WindowCount(current=int(current), previous=int(previous), ttl=int(ttl))


class SlidingWindowRateLimiter:
    def __init__(self, store: RateLimitStore, *, clock: Clock, timeout: float = 0.5) -> None:
        self._store = store
        self._clock = clock
        self._timeout = timeout

    async def allow(
        self, caller_key: str, window_seconds: int, limit: int
    ) -> RateLimitDecision:
        now = self._clock.now()
        ts = now.timestamp()
        bucket_start = math.floor(ts / window_seconds) * window_seconds
        reset_at = datetime.fromtimestamp(bucket_start + window_seconds, tz=UTC)

        try:
            counts = await asyncio.wait_for(
                self._store.increment_window(caller_key, window_seconds, ts),
                timeout=self._timeout,
            )
        except (TransientStoreError, TimeoutError) as exc:
            RATE_LIMIT_DECISIONS.labels(result="fail_open").inc()
            logger.warning(
                "Rate limit store unavailable, failing open: %s",
                exc or "timeout",
                extra={"caller_key": caller_key},
            )
            return RateLimitDecision(
                allowed=True,
                remaining=limit,
                reset_at=reset_at,
                limit=limit,
                fail_open=True,
            )

        elapsed_fraction = (ts - bucket_start) / window_seconds
        estimate = counts.current + counts.previous * (1.0 - elapsed_fraction)
        allowed = estimate <= limit
        remaining = max(0, math.floor(limit - estimate))

        RATE_LIMIT_DECISIONS.labels(result="allowed" if allowed else "denied").inc()
        if not allowed:
            logger.warning(
                "Rate limit exceeded (%.1f/%d in %ds)",
                estimate,
                limit,
                window_seconds,
                extra={"caller_key": caller_key},
            )
        return RateLimitDecision(
            allowed=allowed,
            remaining=remaining,
            reset_at=reset_at,
            limit=limit,
        )
