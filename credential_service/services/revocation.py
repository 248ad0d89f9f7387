"""Revocation: terminal, issuer-only, propagated to every store.

Order of writes:

    1. ledger revoke        retried; exhaustion -> RevocationFailed
    2. index status         retried; exhaustion -> IndexReconciler
    3. verdict cache        invalidated (generation bump + delete);
                            exhaustion -> retried in the background

The ledger goes first because it is the store verifiers cannot be
talked out of: once it says "revoked", verification reports REVOKED even
if the index write is still being reconciled.  The cache goes last so a
verification racing the revocation cannot cache a verdict computed from
the pre-revocation index.

WHO MAY REVOKE
--------------
Authorization is a capability owned by whoever embeds this service
(session handling, roles and org membership are out of scope here).
RevocationManager only asks an ``IssuerAuthorizer`` whether ``actor`` may
revoke ``record``.  The default, ``IssuerOfRecordAuthorizer``, allows the
issuer that issued the credential and nobody else.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from credential_service.core.clock import Clock
from credential_service.core.errors import (
    AuthorizationError,
    CredentialNotFound,
    CredentialStateError,
    LedgerRejected,
    RevocationFailed,
    TransientStoreError,
    ValidationError,
)
from credential_service.core.metrics import REVOCATIONS
from credential_service.core.retry import RetryPolicy, call_with_retries
from credential_service.models.credential import (
    CredentialRecord,
    LedgerReference,
    Revocation,
)
from credential_service.repos.credential_repo import CredentialIndex
from credential_service.services.ledger import LedgerAdapter
from credential_service.services.reconciliation import IndexReconciler
from credential_service.services.verification_cache import VerificationCache

logger = logging.getLogger(__name__)


class IssuerAuthorizer(Protocol):
    async def can_revoke(self, actor: str, record: CredentialRecord) -> bool: ...


class IssuerOfRecordAuthorizer:
    async def can_revoke(self, actor: str, record: CredentialRecord) -> bool:
        return actor == record.issuer_identity


@dataclass(frozen=True, slots=True)
class RevocationResult:
    credential_id: str
    transaction_id: str
    reason: str
    revoked_at: datetime


class RevocationManager:
    def __init__(
        self,
        index: CredentialIndex,
        ledger: LedgerAdapter,
        cache: VerificationCache,
        reconciler: IndexReconciler,
        authorizer: IssuerAuthorizer,
        *,
        clock: Clock,
        retry_policy: RetryPolicy,
    ) -> None:
        self._index = index
        self._ledger = ledger
        self._cache = cache
        self._reconciler = reconciler
        self._authorizer = authorizer
        self._clock = clock
        self._retry = retry_policy

    async def revoke(self, credential_id: str, reason: str, actor: str) -> RevocationResult:
        if not reason or not reason.strip():
            raise ValidationError("revocation reason must not be empty")
        if not actor or not actor.strip():
            raise ValidationError("revoking actor must not be empty")

        try:
            record = await call_with_retries(
                lambda: self._index.find_by_id(credential_id),
                policy=self._retry,
                store="index",
                operation="find_by_id",
            )
        except TransientStoreError as exc:
            REVOCATIONS.labels(outcome="failed").inc()
            raise RevocationFailed(f"index unavailable: {exc}") from exc

        if record is not None and record.status == "pending":
            record = await self._settle(record)
        if record is None or record.status == "failed":
            raise CredentialNotFound(credential_id)
        if record.status != "confirmed":
            raise CredentialStateError(
                f"credential {credential_id} is {record.status}, only confirmed "
                "credentials can be revoked"
            )
        if not await self._authorizer.can_revoke(actor, record):
            REVOCATIONS.labels(outcome="unauthorized").inc()
            logger.warning(
                "Revocation refused for actor=%s",
                actor,
                extra={"credential_id": credential_id},
            )
            raise AuthorizationError(f"{actor} may not revoke credential {credential_id}")

        try:
            transaction_id = await call_with_retries(
                lambda: self._ledger.revoke(credential_id, reason),
                policy=self._retry,
                store="ledger",
                operation="revoke",
            )
        except TransientStoreError as exc:
            REVOCATIONS.labels(outcome="failed").inc()
            raise RevocationFailed(f"ledger unavailable: {exc}") from exc
        except LedgerRejected as exc:
            REVOCATIONS.labels(outcome="rejected").inc()
            raise RevocationFailed(f"ledger rejected the revocation: {exc}") from exc

        revoked_at = self._clock.now()
        revoked = record.revoke(
            Revocation(
                reason=reason,
                actor=actor,
                at=revoked_at,
                transaction_id=transaction_id,
            )
        )
        try:
            await call_with_retries(
                lambda: self._index.upsert(revoked),
                policy=self._retry,
                store="index",
                operation="upsert",
            )
        except TransientStoreError:
            self._reconciler.submit(revoked)
        else:
            self._reconciler.supersede(revoked)

        await self._invalidate(credential_id)

        REVOCATIONS.labels(outcome="revoked").inc()
        logger.info(
            "Credential revoked by %s: %s",
            actor,
            reason,
            extra={"credential_id": credential_id},
        )
        return RevocationResult(
            credential_id=credential_id,
            transaction_id=transaction_id,
            reason=reason,
            revoked_at=revoked_at,
        )

    async def _invalidate(self, credential_id: str) -> None:
        try:
            await call_with_retries(
                lambda: self._cache.invalidate(credential_id),
                policy=self._retry,
                store="cache",
                operation="invalidate",
            )
        except TransientStoreError as exc:
            logger.error(
                "Could not invalidate cached verdict, retrying in background: %s",
                exc,
                extra={"credential_id": credential_id},
            )
            self._cache.invalidate_later(credential_id)

    async def _settle(self, record: CredentialRecord) -> CredentialRecord:
        """Resolve a pending record whose confirmation has not reached
        the index yet.

        Issuance returns as soon as the ledger accepts the commit, so a
        revoke can arrive while the confirmed record is still queued in
        the reconciler.  Prefer that queued state; otherwise ask the
        ledger.
        """
        queued = self._reconciler.pending(record.credential_id)
        if queued is not None and queued.status != "pending":
            return queued

        try:
            entry = await call_with_retries(
                lambda: self._ledger.query(record.credential_id),
                policy=self._retry,
                store="ledger",
                operation="query",
            )
        except TransientStoreError as exc:
            REVOCATIONS.labels(outcome="failed").inc()
            raise RevocationFailed(f"ledger unavailable: {exc}") from exc

        receipt = entry.receipt()
        if receipt is None or entry.canonical_hash != record.canonical_hash:
            return record
        logger.info(
            "Revoking a credential the index still has as pending; ledger has the commit",
            extra={"credential_id": record.credential_id},
        )
        return record.confirm(LedgerReference(receipt.transaction_id, receipt.block_height))
