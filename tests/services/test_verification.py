"""Verification engine tests.

Each test builds one disagreement between the stores and checks the
reason code the engine picks for it.  The order of the checks matters:
tampering beats everything, ledger lag is never reported as tampering,
and a revoked credential is reported as revoked even when it has also
expired.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from credential_service.core.errors import VerificationUnavailable
from credential_service.models.verdict import ReasonCode
from credential_service.services.blob_store import content_address
from credential_service.services.canonicalizer import compute_canonical_hash
from tests.conftest import (
    FlakyBlobStore,
    FlakyCache,
    FlakyIndex,
    FlakyLedger,
    ManualClock,
    issue,
    make_container,
    pending_record,
)


def test_untouched_credential_is_valid(clock: ManualClock) -> None:
    container = make_container(clock)

    async def scenario() -> None:
        result = await issue(container, document=b"transcript")
        verdict = await container.service.verify_credential(result.credential_id)

        assert verdict.valid is True
        assert verdict.reason_code is ReasonCode.OK
        assert verdict.sources.ledger_match
        assert verdict.sources.index_match
        assert verdict.sources.blob_reachable
        assert verdict.computed_at == clock.now()

    asyncio.run(scenario())


def test_unknown_credential_is_not_found(clock: ManualClock) -> None:
    container = make_container(clock)

    async def scenario() -> None:
        verdict = await container.service.verify_credential("no-such-credential")
        assert verdict.valid is False
        assert verdict.reason_code is ReasonCode.NOT_FOUND

    asyncio.run(scenario())


def test_failed_issuance_is_not_found(clock: ManualClock) -> None:
    container = make_container(clock)

    async def scenario() -> None:
        record = pending_record(clock).fail()
        await container.index.upsert(record)
        verdict = await container.service.verify_credential(record.credential_id)
        assert verdict.reason_code is ReasonCode.NOT_FOUND

    asyncio.run(scenario())


# ---- tampering ----


def test_tampered_index_claims_are_a_hash_mismatch(clock: ManualClock) -> None:
    """Someone edits the grade in the database; the ledger still holds
    the original hash."""
    container = make_container(clock)

    async def scenario() -> None:
        result = await issue(container, claim_payload={"degree": "BSc", "grade": "2:2"})
        record = await container.index.find_by_id(result.credential_id)
        assert record is not None
        await container.index.upsert(
            replace(record, claim_payload={"degree": "BSc", "grade": "First"})
        )

        verdict = await container.service.verify_credential(result.credential_id)
        assert verdict.valid is False
        assert verdict.reason_code is ReasonCode.HASH_MISMATCH
        assert verdict.sources.index_match is False
        assert verdict.sources.ledger_match is False

    asyncio.run(scenario())


def test_rewritten_stored_hash_is_still_caught(clock: ManualClock) -> None:
    """Editing the claims and the stored hash together does not help:
    the ledger copy no longer matches."""
    container = make_container(clock)

    async def scenario() -> None:
        result = await issue(container)
        record = await container.index.find_by_id(result.credential_id)
        assert record is not None
        forged_claims = {"degree": "PhD"}
        forged_hash = compute_canonical_hash(
            forged_claims, record.subject_identity, record.issuer_identity, record.expiry_date
        )
        await container.index.upsert(
            replace(record, claim_payload=forged_claims, canonical_hash=forged_hash)
        )

        verdict = await container.service.verify_credential(result.credential_id)
        assert verdict.reason_code is ReasonCode.HASH_MISMATCH
        assert verdict.sources.index_match is True
        assert verdict.sources.ledger_match is False

    asyncio.run(scenario())


def test_ledger_hash_disagreement_is_a_hash_mismatch(clock: ManualClock) -> None:
    ledger = FlakyLedger()
    container = make_container(clock, ledger=ledger)

    async def scenario() -> None:
        result = await issue(container)
        ledger.tamper(result.credential_id, "0" * 64)

        verdict = await container.service.verify_credential(result.credential_id)
        assert verdict.reason_code is ReasonCode.HASH_MISMATCH
        assert verdict.sources.index_match is True

    asyncio.run(scenario())


def test_mismatch_wins_over_expiry(clock: ManualClock) -> None:
    ledger = FlakyLedger()
    container = make_container(clock, ledger=ledger)

    async def scenario() -> None:
        result = await issue(container, expiry_date=clock.now() + timedelta(days=1))
        ledger.tamper(result.credential_id, "f" * 64)
        clock.advance(days=2)

        verdict = await container.service.verify_credential(result.credential_id)
        assert verdict.reason_code is ReasonCode.HASH_MISMATCH

    asyncio.run(scenario())


# ---- ledger availability ----


def test_ledger_outage_is_reported_not_raised(clock: ManualClock) -> None:
    ledger = FlakyLedger()
    container = make_container(clock, ledger=ledger)

    async def scenario() -> None:
        result = await issue(container)
        ledger.faults.fail("query")

        verdict = await container.service.verify_credential(result.credential_id)
        assert verdict.valid is False
        assert verdict.reason_code is ReasonCode.LEDGER_UNREACHABLE
        assert verdict.sources.index_match is True
        assert verdict.sources.ledger_match is False

    asyncio.run(scenario())


def test_unreachable_verdict_is_not_cached(clock: ManualClock) -> None:
    ledger = FlakyLedger()
    container = make_container(clock, ledger=ledger)

    async def scenario() -> None:
        result = await issue(container)
        ledger.faults.fail("query")
        first = await container.service.verify_credential(result.credential_id)
        assert first.reason_code is ReasonCode.LEDGER_UNREACHABLE

        ledger.faults.heal()
        second = await container.service.verify_credential(result.credential_id)
        assert second.reason_code is ReasonCode.OK

    asyncio.run(scenario())


def test_ledger_lag_is_unreachable_not_mismatch(clock: ManualClock) -> None:
    """The index knows a commit the ledger does not show yet."""
    container = make_container(clock)

    async def scenario() -> None:
        record = pending_record(clock)
        await container.index.insert(record)

        verdict = await container.service.verify_credential(record.credential_id)
        assert verdict.reason_code is ReasonCode.LEDGER_UNREACHABLE

    asyncio.run(scenario())


def test_index_outage_raises(clock: ManualClock) -> None:
    index = FlakyIndex()
    container = make_container(clock, index=index)

    async def scenario() -> None:
        result = await issue(container)
        index.faults.fail("find_by_id")
        with pytest.raises(VerificationUnavailable):
            await container.service.verify_credential(result.credential_id, force_refresh=True)

    asyncio.run(scenario())


# ---- revocation and expiry ----


def test_revocation_on_ledger_alone_is_reported(clock: ManualClock) -> None:
    """The index has not caught up yet; the ledger is enough."""
    container = make_container(clock)

    async def scenario() -> None:
        result = await issue(container)
        await container.ledger.revoke(result.credential_id, "revoked out of band")

        verdict = await container.service.verify_credential(result.credential_id)
        assert verdict.reason_code is ReasonCode.REVOKED
        assert verdict.sources.ledger_match is True

    asyncio.run(scenario())


def test_revoked_wins_over_expired(clock: ManualClock) -> None:
    container = make_container(clock)

    async def scenario() -> None:
        result = await issue(container, expiry_date=clock.now() + timedelta(days=1))
        await container.service.revoke_credential(
            result.credential_id, "issued in error", "did:example:university"
        )
        clock.advance(days=2)

        verdict = await container.service.verify_credential(
            result.credential_id, force_refresh=True
        )
        assert verdict.reason_code is ReasonCode.REVOKED

    asyncio.run(scenario())


def test_expired_credential(clock: ManualClock) -> None:
    container = make_container(clock)

    async def scenario() -> None:
        result = await issue(container, expiry_date=clock.now() + timedelta(days=1))
        clock.advance(days=1, seconds=1)

        verdict = await container.service.verify_credential(result.credential_id)
        assert verdict.valid is False
        assert verdict.reason_code is ReasonCode.EXPIRED

    asyncio.run(scenario())


def test_cached_ok_does_not_outlive_expiry(clock: ManualClock) -> None:
    container = make_container(clock)

    async def scenario() -> None:
        result = await issue(container, expiry_date=clock.now() + timedelta(seconds=10))
        first = await container.service.verify_credential(result.credential_id)
        assert first.reason_code is ReasonCode.OK

        clock.advance(seconds=11)
        second = await container.service.verify_credential(result.credential_id)
        assert second.reason_code is ReasonCode.EXPIRED

    asyncio.run(scenario())


# ---- blob ----


def test_missing_blob_is_reported_in_sources(clock: ManualClock) -> None:
    container = make_container(clock)

    async def scenario() -> None:
        result = await issue(container, document=b"transcript")
        await container.blob_store.unpin(content_address(b"transcript"))

        verdict = await container.service.verify_credential(result.credential_id)
        assert verdict.reason_code is ReasonCode.OK
        assert verdict.sources.blob_reachable is False

    asyncio.run(scenario())


def test_blob_store_outage_does_not_fail_verification(clock: ManualClock) -> None:
    blobs = FlakyBlobStore()
    container = make_container(clock, blob_store=blobs)

    async def scenario() -> None:
        result = await issue(container, document=b"transcript")
        blobs.faults.fail("probe")

        verdict = await container.service.verify_credential(result.credential_id)
        assert verdict.reason_code is ReasonCode.OK
        assert verdict.sources.blob_reachable is False

    asyncio.run(scenario())


# ---- caching and side effects ----


def test_second_verification_is_served_from_cache(clock: ManualClock) -> None:
    ledger = FlakyLedger()
    container = make_container(clock, ledger=ledger)

    async def scenario() -> None:
        result = await issue(container)
        first = await container.service.verify_credential(result.credential_id)
        queries = ledger.faults.calls["query"]
        second = await container.service.verify_credential(result.credential_id)

        assert second == first
        assert ledger.faults.calls["query"] == queries

        await container.service.drain()
        history = await container.service.verification_history(result.credential_id)
        assert [entry.cached for entry in history] == [True, False]

    asyncio.run(scenario())


def test_force_refresh_bypasses_cache(clock: ManualClock) -> None:
    ledger = FlakyLedger()
    container = make_container(clock, ledger=ledger)

    async def scenario() -> None:
        result = await issue(container)
        await container.service.verify_credential(result.credential_id)
        queries = ledger.faults.calls["query"]
        await container.service.verify_credential(result.credential_id, force_refresh=True)
        assert ledger.faults.calls["query"] == queries + 1

    asyncio.run(scenario())


def test_cache_outage_does_not_fail_verification(clock: ManualClock) -> None:
    cache = FlakyCache()
    container = make_container(clock, cache=cache)

    async def scenario() -> None:
        result = await issue(container)
        cache.fail_all()
        verdict = await container.service.verify_credential(result.credential_id)
        assert verdict.reason_code is ReasonCode.OK

    asyncio.run(scenario())


def test_verification_updates_counters(clock: ManualClock) -> None:
    container = make_container(clock)

    async def scenario() -> None:
        result = await issue(container)
        await container.service.verify_credential(result.credential_id)
        clock.advance(minutes=5)
        await container.service.verify_credential(result.credential_id, force_refresh=True)
        await container.service.drain()

        record = await container.index.find_by_id(result.credential_id)
        assert record is not None
        assert record.verification_count == 2
        assert record.last_verified_at == clock.now()

    asyncio.run(scenario())


def test_counter_failure_does_not_fail_verification(clock: ManualClock) -> None:
    index = FlakyIndex()
    container = make_container(clock, index=index)

    async def scenario() -> None:
        result = await issue(container)
        index.faults.fail("increment_counters")
        verdict = await container.service.verify_credential(result.credential_id)
        await container.service.drain()
        assert verdict.reason_code is ReasonCode.OK

    asyncio.run(scenario())


def test_verifier_identity_is_logged(clock: ManualClock) -> None:
    container = make_container(clock)

    async def scenario() -> None:
        result = await issue(container)
        await container.service.verify_credential(
            result.credential_id, caller_key="verifier:acme-hr"
        )
        await container.service.verify_credential(result.credential_id, force_refresh=True)
        await container.service.drain()

        history = await container.service.verification_history(result.credential_id)
        assert [entry.verifier for entry in history] == ["anonymous", "verifier:acme-hr"]
        assert all(entry.reason_code is ReasonCode.OK for entry in history)

    asyncio.run(scenario())
