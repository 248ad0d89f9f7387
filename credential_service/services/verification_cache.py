"""Memoized verification verdicts.

A public verification endpoint sees the same credential ids over and
over (a CV link shared with many employers).  Recomputing a verdict
costs an index read, a ledger query and a blob probe; serving it from
cache costs one Redis round trip.

Entry layout (JSON under ``verdict:{credential_id}``):

    {"generation": 3, "expires_at": "...", "verdict": {...}}

GENERATIONS
-----------
Deleting the entry on revocation is not enough on its own.  A
verification that read the index just *before* the revocation can
finish just *after* it and write a fresh "OK" entry back.  To close that
window every credential has a generation counter
(``verdict-gen:{credential_id}``):

  - the engine reads the generation before it reads the index
  - it stores its verdict tagged with that generation
  - invalidate() bumps the generation *after* the index write
  - get() ignores any entry whose generation is not the current one

FAILURE POLICY
--------------
The cache is an optimization.  If the backend is down, get() is a miss
and put() is skipped, both logged; verification keeps working.

An invalidation that cannot reach the backend is different: the stale
entry would come back as soon as the backend does.  invalidate_later()
keeps retrying it in the background, and until it lands this process
treats the credential as uncacheable (get() misses, generation() is
None so nothing is stored).
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta

from credential_service.core.clock import Clock
from credential_service.core.errors import TransientStoreError
from credential_service.core.metrics import CACHE_OPERATIONS
from credential_service.models.verdict import VerificationVerdict
from credential_service.services.cache import CacheService

logger = logging.getLogger(__name__)


class VerificationCache:
    def __init__(
        self,
        cache: CacheService,
        *,
        ttl_seconds: int,
        clock: Clock,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
    ) -> None:
        self._cache = cache
        self._ttl = ttl_seconds
        self._clock = clock
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._unflushed: dict[str, asyncio.Task[None]] = {}

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    async def generation(self, credential_id: str) -> int | None:
        """Current generation, or None when the cache is unavailable."""
        if credential_id in self._unflushed:
            return None
        try:
            raw = await self._cache.get(_gen_key(credential_id))
        except TransientStoreError as exc:
            logger.warning("Verdict cache unavailable reading generation: %s", exc)
            return None
        return int(raw or 0)

    async def get(self, credential_id: str) -> VerificationVerdict | None:
        if credential_id in self._unflushed:
            CACHE_OPERATIONS.labels(operation="miss").inc()
            return None
        try:
            raw_entry, raw_gen = await self._cache.get_many(
                _entry_key(credential_id), _gen_key(credential_id)
            )
        except TransientStoreError as exc:
            CACHE_OPERATIONS.labels(operation="error").inc()
            logger.warning(
                "Verdict cache unavailable, treating as miss: %s",
                exc,
                extra={"credential_id": credential_id},
            )
            return None

        verdict = self._decode(raw_entry, int(raw_gen or 0))
        CACHE_OPERATIONS.labels(operation="hit" if verdict else "miss").inc()
        return verdict

    async def put(
        self,
        verdict: VerificationVerdict,
        *,
        generation: int,
        max_ttl_seconds: int | None = None,
    ) -> None:
        ttl = self._ttl if max_ttl_seconds is None else min(self._ttl, max_ttl_seconds)
        if ttl <= 0 or verdict.credential_id in self._unflushed:
            return
        expires_at = self._clock.now() + timedelta(seconds=ttl)
        entry = json.dumps(
            {
                "generation": generation,
                "expires_at": expires_at.isoformat(),
                "verdict": verdict.to_dict(),
            }
        )
        try:
            await self._cache.set(_entry_key(verdict.credential_id), entry, ttl)
        except TransientStoreError as exc:
            logger.warning(
                "Verdict cache unavailable, verdict not stored: %s",
                exc,
                extra={"credential_id": verdict.credential_id},
            )

    async def invalidate(self, credential_id: str) -> None:
        """Drop any cached verdict and make in-flight writes unreadable.

        Raises TransientStoreError when the backend is down; the caller
        decides whether to retry.
        """
        await self._cache.incr(_gen_key(credential_id))
        await self._cache.delete(_entry_key(credential_id))
        logger.info("Verdict cache invalidated", extra={"credential_id": credential_id})

    def invalidate_later(self, credential_id: str) -> None:
        """Retry ``invalidate`` in the background until the backend takes it."""
        task = self._unflushed.get(credential_id)
        if task is None or task.done():
            self._unflushed[credential_id] = asyncio.create_task(
                self._retry_invalidate(credential_id),
                name=f"invalidate-verdict-{credential_id}",
            )

    async def drain(self, timeout: float | None = None) -> None:
        tasks = list(self._unflushed.values())
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    async def close(self) -> None:
        tasks = list(self._unflushed.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.error(
                "Verdict cache closed with %d invalidations outstanding", len(tasks)
            )

    async def _retry_invalidate(self, credential_id: str) -> None:
        attempt = 0
        try:
            while True:
                await asyncio.sleep(min(self._max_delay, self._base_delay * (2**attempt)))
                attempt += 1
                try:
                    await self.invalidate(credential_id)
                    return
                except TransientStoreError as exc:
                    logger.warning(
                        "Verdict invalidation retry %d failed: %s",
                        attempt,
                        exc,
                        extra={"credential_id": credential_id},
                    )
        finally:
            self._unflushed.pop(credential_id, None)

    def _decode(self, raw: str | None, current_gen: int) -> VerificationVerdict | None:
        if raw is None:
            return None
        try:
            entry = json.loads(raw)
            if int(entry["generation"]) != current_gen:
                return None
            if datetime.fromisoformat(entry["expires_at"]) < self._clock.now():
                return None
            return VerificationVerdict.from_dict(entry["verdict"])
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable verdict cache entry")
            return None


def _entry_key(credential_id: str) -> str:
    return f"verdict:{credential_id}"


def _gen_key(credential_id: str) -> str:
    return f"verdict-gen:{credential_id}"
