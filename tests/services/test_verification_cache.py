from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from credential_service.core.errors import TransientStoreError
from credential_service.models.verdict import ReasonCode, VerificationSources, VerificationVerdict
from credential_service.services.cache import InMemoryCacheService
from credential_service.services.verification_cache import VerificationCache
from tests.conftest import FlakyCache, ManualClock

CREDENTIAL_ID = "cred-1"


def _verdict(clock: ManualClock, reason: ReasonCode = ReasonCode.OK) -> VerificationVerdict:
    return VerificationVerdict(
        credential_id=CREDENTIAL_ID,
        valid=reason is ReasonCode.OK,
        reason_code=reason,
        sources=VerificationSources(ledger_match=True, index_match=True, blob_reachable=True),
        computed_at=clock.now(),
    )


def _cache(clock: ManualClock, backend=None, ttl: int = 300) -> VerificationCache:
    return VerificationCache(backend or InMemoryCacheService(), ttl_seconds=ttl, clock=clock)


def test_stored_verdict_is_returned(clock: ManualClock) -> None:
    cache = _cache(clock)

    async def scenario() -> None:
        generation = await cache.generation(CREDENTIAL_ID)
        assert generation == 0
        verdict = _verdict(clock)
        await cache.put(verdict, generation=generation)
        assert await cache.get(CREDENTIAL_ID) == verdict

    asyncio.run(scenario())


def test_miss_when_nothing_stored(clock: ManualClock) -> None:
    cache = _cache(clock)
    assert asyncio.run(cache.get(CREDENTIAL_ID)) is None


def test_invalidate_drops_entry_and_bumps_generation(clock: ManualClock) -> None:
    cache = _cache(clock)

    async def scenario() -> None:
        await cache.put(_verdict(clock), generation=0)
        await cache.invalidate(CREDENTIAL_ID)
        assert await cache.get(CREDENTIAL_ID) is None
        assert await cache.generation(CREDENTIAL_ID) == 1

    asyncio.run(scenario())


def test_entry_from_older_generation_is_ignored(clock: ManualClock) -> None:
    cache = _cache(clock)

    async def scenario() -> None:
        generation = await cache.generation(CREDENTIAL_ID)
        await cache.invalidate(CREDENTIAL_ID)
        # A verification that started before the invalidation finishes now.
        await cache.put(_verdict(clock), generation=generation)
        assert await cache.get(CREDENTIAL_ID) is None

    asyncio.run(scenario())


def test_entry_expires_with_clock(clock: ManualClock) -> None:
    cache = _cache(clock, ttl=60)

    async def scenario() -> None:
        await cache.put(_verdict(clock), generation=0)
        clock.advance(seconds=61)
        assert await cache.get(CREDENTIAL_ID) is None

    asyncio.run(scenario())


def test_max_ttl_shortens_entry_lifetime(clock: ManualClock) -> None:
    cache = _cache(clock, ttl=300)

    async def scenario() -> None:
        await cache.put(_verdict(clock), generation=0, max_ttl_seconds=30)
        clock.advance(seconds=20)
        assert await cache.get(CREDENTIAL_ID) is not None
        clock.advance(seconds=11)
        assert await cache.get(CREDENTIAL_ID) is None

    asyncio.run(scenario())


def test_non_positive_ttl_is_not_stored(clock: ManualClock) -> None:
    backend = InMemoryCacheService()
    cache = _cache(clock, backend)

    async def scenario() -> None:
        await cache.put(_verdict(clock), generation=0, max_ttl_seconds=0)
        assert await backend.get(f"verdict:{CREDENTIAL_ID}") is None

    asyncio.run(scenario())


def test_unreadable_entry_is_a_miss(clock: ManualClock) -> None:
    backend = InMemoryCacheService()
    cache = _cache(clock, backend)

    async def scenario() -> None:
        await backend.set(f"verdict:{CREDENTIAL_ID}", "{not json", 60)
        assert await cache.get(CREDENTIAL_ID) is None

    asyncio.run(scenario())


def test_non_ok_verdicts_round_trip(clock: ManualClock) -> None:
    cache = _cache(clock)

    async def scenario() -> None:
        verdict = _verdict(clock, ReasonCode.REVOKED)
        await cache.put(verdict, generation=0)
        cached = await cache.get(CREDENTIAL_ID)
        assert cached is not None
        assert cached.reason_code is ReasonCode.REVOKED
        assert cached.valid is False
        assert cached.computed_at == clock.now()

    asyncio.run(scenario())


# ---- backend outage ----


def test_backend_outage_degrades_to_miss(clock: ManualClock) -> None:
    backend = FlakyCache()
    backend.fail_all()
    cache = _cache(clock, backend)

    async def scenario() -> None:
        assert await cache.get(CREDENTIAL_ID) is None
        assert await cache.generation(CREDENTIAL_ID) is None
        # put swallows the error
        await cache.put(_verdict(clock), generation=0)

    asyncio.run(scenario())


def test_invalidate_reports_outage(clock: ManualClock) -> None:
    backend = FlakyCache()
    backend.fail_all()
    cache = _cache(clock, backend)

    with pytest.raises(TransientStoreError):
        asyncio.run(cache.invalidate(CREDENTIAL_ID))


def test_unflushed_invalidation_is_retried_in_background(clock: ManualClock) -> None:
    backend = FlakyCache()
    cache = VerificationCache(
        backend, ttl_seconds=300, clock=clock, base_delay=0.01, max_delay=0.02
    )

    async def scenario() -> None:
        await cache.put(_verdict(clock), generation=0)
        backend.faults.fail("incr", times=2)
        cache.invalidate_later(CREDENTIAL_ID)

        # Nothing is read or stored for the credential until it lands.
        assert await cache.get(CREDENTIAL_ID) is None
        assert await cache.generation(CREDENTIAL_ID) is None
        await cache.put(_verdict(clock), generation=0)

        await cache.drain(timeout=5)
        assert backend.faults.calls["incr"] == 3
        assert await cache.generation(CREDENTIAL_ID) == 1
        assert await cache.get(CREDENTIAL_ID) is None

    asyncio.run(scenario())


def test_close_cancels_outstanding_invalidations(clock: ManualClock) -> None:
    backend = FlakyCache()
    backend.faults.fail("incr")
    cache = VerificationCache(
        backend, ttl_seconds=300, clock=clock, base_delay=0.01, max_delay=0.02
    )

    async def scenario() -> None:
        cache.invalidate_later(CREDENTIAL_ID)
        await cache.drain(timeout=0.05)
        await cache.close()
        # Released: the credential is cacheable again in this process.
        assert await cache.generation(CREDENTIAL_ID) == 0

    asyncio.run(scenario())


def test_in_memory_backend_enforces_ttl() -> None:
    now = [1000.0]
    backend = InMemoryCacheService(time_source=lambda: now[0])

    async def scenario() -> None:
        await backend.set("k", "v", 10)
        assert await backend.get("k") == "v"
        now[0] += timedelta(seconds=11).total_seconds()
        assert await backend.get("k") is None

    asyncio.run(scenario())
