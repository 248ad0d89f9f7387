from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Literal
from uuid import uuid4

from credential_service.core.errors import CredentialStateError

CredentialStatus = Literal["pending", "confirmed", "failed", "revoked"]

STATUSES: tuple[CredentialStatus, ...] = ("pending", "confirmed", "failed", "revoked")

# status -> statuses it may move to.  failed and revoked are terminal.
_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"confirmed", "failed"}),
    "confirmed": frozenset({"revoked"}),
    "failed": frozenset(),
    "revoked": frozenset(),
}

# written status -> stored statuses it may replace.  Index writes never
# move a row backwards; a late retry of an older state is a no-op.
OVERWRITABLE: dict[str, frozenset[str]] = {
    "pending": frozenset({"pending"}),
    "confirmed": frozenset({"pending", "confirmed"}),
    "failed": frozenset({"pending", "failed"}),
    "revoked": frozenset({"pending", "confirmed", "revoked"}),
}


@dataclass(frozen=True, slots=True)
class LedgerReference:
    transaction_id: str
    block_height: int


@dataclass(frozen=True, slots=True)
class Revocation:
    reason: str
    actor: str
    at: datetime
    transaction_id: str | None = None


@dataclass(frozen=True, slots=True)
class CredentialRecord:
    """Index projection of an issued credential.

    Subject and issuer are held by identifier only; anything that looks
    like a back-reference ("credentials of this issuer") is a query.
    """

    credential_id: str
    subject_identity: str
    issuer_identity: str
    claim_payload: Mapping[str, Any]
    canonical_hash: str
    issue_date: datetime
    expiry_date: datetime
    idempotency_key: str
    status: CredentialStatus = "pending"
    document_digest: str | None = None
    blob_reference: str | None = None
    ledger_reference: LedgerReference | None = None
    revocation: Revocation | None = None
    verification_count: int = 0
    last_verified_at: datetime | None = field(default=None)

    @staticmethod
    def new(
        *,
        subject_identity: str,
        issuer_identity: str,
        claim_payload: Mapping[str, Any],
        canonical_hash: str,
        issue_date: datetime,
        expiry_date: datetime,
        idempotency_key: str,
        document_digest: str | None = None,
        blob_reference: str | None = None,
    ) -> CredentialRecord:
        return CredentialRecord(
            credential_id=str(uuid4()),
            subject_identity=subject_identity,
            issuer_identity=issuer_identity,
            claim_payload=dict(claim_payload),
            canonical_hash=canonical_hash,
            issue_date=issue_date,
            expiry_date=expiry_date,
            idempotency_key=idempotency_key,
            document_digest=document_digest,
            blob_reference=blob_reference,
        )

    def is_expired(self, now: datetime) -> bool:
        return now > self.expiry_date

    def confirm(self, ledger_reference: LedgerReference) -> CredentialRecord:
        _check_transition(self, "confirmed")
        return replace(self, status="confirmed", ledger_reference=ledger_reference)

    def fail(self) -> CredentialRecord:
        _check_transition(self, "failed")
        return replace(self, status="failed")

    def revoke(self, revocation: Revocation) -> CredentialRecord:
        _check_transition(self, "revoked")
        return replace(self, status="revoked", revocation=revocation)

    def may_overwrite(self, stored: CredentialRecord) -> bool:
        return stored.status in OVERWRITABLE[self.status]


def _check_transition(record: CredentialRecord, target: str) -> None:
    if target not in _TRANSITIONS[record.status]:
        raise CredentialStateError(
            f"credential {record.credential_id} cannot move from "
            f"{record.status} to {target}"
        )
