from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from credential_service.core.errors import CredentialStateError
from credential_service.models.credential import LedgerReference, Revocation
from tests.conftest import START, ManualClock, pending_record

REFERENCE = LedgerReference("0xabc", 7)


def _revocation() -> Revocation:
    return Revocation(reason="issued in error", actor="did:example:university", at=START)


def test_new_record_is_pending_with_fresh_id(clock: ManualClock) -> None:
    first = pending_record(clock)
    second = pending_record(clock)
    assert first.status == "pending"
    assert first.ledger_reference is None
    assert first.verification_count == 0
    assert first.credential_id != second.credential_id


def test_lifecycle_pending_confirmed_revoked(clock: ManualClock) -> None:
    record = pending_record(clock)
    confirmed = record.confirm(REFERENCE)
    revoked = confirmed.revoke(_revocation())

    assert record.status == "pending"
    assert confirmed.status == "confirmed"
    assert confirmed.ledger_reference == REFERENCE
    assert revoked.status == "revoked"
    assert revoked.revocation == _revocation()
    assert revoked.ledger_reference == REFERENCE


def test_pending_may_fail(clock: ManualClock) -> None:
    assert pending_record(clock).fail().status == "failed"


@pytest.mark.parametrize(
    "transition",
    [
        lambda r: r.revoke(_revocation()),
        lambda r: r.confirm(REFERENCE).confirm(REFERENCE),
        lambda r: r.confirm(REFERENCE).fail(),
        lambda r: r.fail().confirm(REFERENCE),
        lambda r: r.fail().revoke(_revocation()),
        lambda r: r.confirm(REFERENCE).revoke(_revocation()).revoke(_revocation()),
    ],
    ids=[
        "revoke-pending",
        "confirm-twice",
        "fail-confirmed",
        "confirm-failed",
        "revoke-failed",
        "revoke-twice",
    ],
)
def test_illegal_transitions_raise(clock: ManualClock, transition) -> None:
    with pytest.raises(CredentialStateError, match="cannot move from"):
        transition(pending_record(clock))


def test_expiry_is_exclusive(clock: ManualClock) -> None:
    record = pending_record(clock)
    assert record.is_expired(record.expiry_date) is False
    assert record.is_expired(record.expiry_date + timedelta(microseconds=1)) is True


@pytest.mark.parametrize(
    "stored, written, allowed",
    [
        ("pending", "confirmed", True),
        ("pending", "revoked", True),
        ("confirmed", "confirmed", True),
        ("confirmed", "revoked", True),
        ("confirmed", "pending", False),
        ("revoked", "confirmed", False),
        ("revoked", "pending", False),
        ("failed", "confirmed", False),
        ("failed", "failed", True),
        ("confirmed", "failed", False),
    ],
)
def test_index_writes_never_move_backwards(
    clock: ManualClock, stored: str, written: str, allowed: bool
) -> None:
    record = pending_record(clock)
    assert replace(record, status=written).may_overwrite(replace(record, status=stored)) is allowed
