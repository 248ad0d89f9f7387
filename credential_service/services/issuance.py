"""Issuance: write one credential consistently across three stores.

THE STEPS
---------
    1. validate + canonical hash
    2. idempotency key -> per-key lock -> existing record?  return it
    3. document  -> blob store       (content address)
    4. record    -> index, pending
    5. proof     -> ledger           (idempotent per key)
    6. record    -> index, confirmed

No store supports a transaction spanning the others, so consistency
comes from ordering and compensation:

  - Everything before step 5 can be undone.  If step 3 or 4 fails, or
    the caller is cancelled, the blob is unpinned (unless another live
    credential holds the same content) and the pending record (if any)
    is marked failed.
  - Step 5 is the point of no return.  It runs in its own task behind
    asyncio.shield, so cancelling the caller does not abandon a commit
    that may already be on the ledger.
  - Once the ledger has the proof, step 6 is never rolled back.  If the
    index is down it is handed to the IndexReconciler, which retries
    until the index catches up.

AT MOST ONE COMMIT PER KEY
--------------------------
Three layers, from cheapest to strongest:

  1. a per-key asyncio.Lock serializes callers in this process
  2. the index has a unique index on the key for non-failed records, so
     a second process loses the insert race and returns the winner
  3. the ledger's submit is idempotent per key, and after a timeout we
     query the ledger before re-submitting (the commit may have landed)
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, TypeVar

from credential_service.core.clock import Clock
from credential_service.core.errors import (
    DuplicateCredentialError,
    IssuanceFailed,
    LedgerRejected,
    TransientStoreError,
    ValidationError,
)
from credential_service.core.metrics import COMPENSATIONS, ISSUANCE_OUTCOMES
from credential_service.core.retry import RetryPolicy, call_with_retries
from credential_service.models.credential import (
    CredentialRecord,
    CredentialStatus,
    LedgerReference,
)
from credential_service.repos.credential_repo import CredentialIndex
from credential_service.services.blob_store import BlobRejected, BlobStore
from credential_service.services.canonicalizer import (
    compute_canonical_hash,
    digest_document,
    normalize_payload,
    to_epoch,
)
from credential_service.services.ledger import (
    LedgerAdapter,
    LedgerReceipt,
    LedgerSubmission,
)
from credential_service.services.reconciliation import IndexReconciler

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class IssuanceResult:
    credential_id: str
    ledger_reference: LedgerReference | None
    status: CredentialStatus
    duplicate: bool = False

    @staticmethod
    def from_record(record: CredentialRecord, *, duplicate: bool = False) -> IssuanceResult:
        return IssuanceResult(
            credential_id=record.credential_id,
            ledger_reference=record.ledger_reference,
            status=record.status,
            duplicate=duplicate,
        )


def derive_idempotency_key(subject_identity: str, issuer_identity: str, canonical_hash: str) -> str:
    return hashlib.sha256(
        f"{subject_identity}|{issuer_identity}|{canonical_hash}".encode()
    ).hexdigest()


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        # key -> (lock, number of holders + waiters)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(key, (asyncio.Lock(), 0))
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)


class IssuanceCoordinator:
    def __init__(
        self,
        index: CredentialIndex,
        ledger: LedgerAdapter,
        blob_store: BlobStore,
        reconciler: IndexReconciler,
        *,
        clock: Clock,
        retry_policy: RetryPolicy,
    ) -> None:
        self._index = index
        self._ledger = ledger
        self._blobs = blob_store
        self._reconciler = reconciler
        self._clock = clock
        self._retry = retry_policy
        self._locks = KeyedLock()
        # Ledger commits that outlived a cancelled caller.
        self._commits: set[asyncio.Task[IssuanceResult]] = set()

    async def issue(
        self,
        subject_identity: str,
        issuer_identity: str,
        claim_payload: Mapping[str, Any],
        expiry_date: datetime,
        idempotency_key: str | None = None,
        document: bytes | None = None,
    ) -> IssuanceResult:
        now = self._clock.now()
        payload = normalize_payload(claim_payload)
        _check_expiry(expiry_date, now)
        if document is not None and (not isinstance(document, bytes | bytearray) or not document):
            raise ValidationError("document must be non-empty bytes")
        if idempotency_key is not None and not idempotency_key.strip():
            raise ValidationError("idempotency key must not be blank")

        document_digest = digest_document(document) if document is not None else None
        canonical_hash = compute_canonical_hash(
            payload, subject_identity, issuer_identity, expiry_date, document_digest
        )
        key = idempotency_key or derive_idempotency_key(
            subject_identity, issuer_identity, canonical_hash
        )

        async with self._locks.hold(key):
            existing = await self._find_existing(key)
            if existing is not None:
                return self._duplicate(existing)

            record = CredentialRecord.new(
                subject_identity=subject_identity,
                issuer_identity=issuer_identity,
                claim_payload=payload,
                canonical_hash=canonical_hash,
                issue_date=now,
                expiry_date=expiry_date,
                idempotency_key=key,
                document_digest=document_digest,
            )
            record, won = await self._prepare(record, document)
            if not won:
                return self._duplicate(record)

            commit = asyncio.create_task(
                self._commit(record), name=f"ledger-commit-{record.credential_id}"
            )
            self._commits.add(commit)
            commit.add_done_callback(self._commits.discard)
            return await asyncio.shield(commit)

    async def drain(self) -> None:
        """Wait for commits whose callers went away."""
        if self._commits:
            await asyncio.gather(*self._commits, return_exceptions=True)

    # -- steps 3 and 4: reversible -------------------------------------------

    async def _prepare(
        self, record: CredentialRecord, document: bytes | None
    ) -> tuple[CredentialRecord, bool]:
        """Upload the document and insert the pending record.

        Returns ``(pending_record, True)``, or ``(winner, False)`` when
        another process inserted a record under the same key first.
        """
        blob_reference: str | None = None
        inserting = False
        try:
            if document is not None:
                blob_reference = await self._call(
                    lambda: self._blobs.upload(bytes(document)), "blob_store", "upload"
                )
                record = replace(record, blob_reference=blob_reference)

            inserting = True
            await self._call(lambda: self._index.insert(record), "index", "insert")
            return record, True
        except DuplicateCredentialError:
            # Same key means same content address; the blob belongs to
            # the winner too, so it stays pinned.
            winner = await self._find_existing(record.idempotency_key)
            if winner is None:
                raise IssuanceFailed(
                    "idempotency key conflict with no visible winner"
                ) from None
            return winner, False
        except (TransientStoreError, BlobRejected) as exc:
            await self._unpin(blob_reference, record.credential_id)
            if inserting:
                await self._mark_failed(record)
            ISSUANCE_OUTCOMES.labels(outcome="failed").inc()
            raise IssuanceFailed(
                f"issuance failed before ledger commit: {exc}",
                credential_id=record.credential_id,
            ) from exc
        except asyncio.CancelledError:
            logger.info(
                "Issuance cancelled before ledger commit, compensating",
                extra={"credential_id": record.credential_id},
            )
            await self._unpin(blob_reference, record.credential_id)
            if inserting:
                # The insert may or may not have landed; a failed row is
                # harmless either way.
                await self._mark_failed(record)
            raise

    # -- steps 5 and 6: past the point of no return --------------------------

    async def _commit(self, record: CredentialRecord) -> IssuanceResult:
        submission = LedgerSubmission(
            credential_id=record.credential_id,
            canonical_hash=record.canonical_hash,
            subject_identity=record.subject_identity,
            issuer_identity=record.issuer_identity,
            expiry_epoch=to_epoch(record.expiry_date, "expiry"),
            idempotency_key=record.idempotency_key,
        )

        async def landed(_exc: TransientStoreError) -> LedgerReceipt | None:
            return await self._find_commit(record)

        try:
            receipt = await call_with_retries(
                lambda: self._ledger.submit(submission),
                policy=self._retry,
                store="ledger",
                operation="submit",
                on_retry=landed,
            )
        except TransientStoreError as exc:
            # The last attempt may have landed too.
            receipt = await self._find_commit(record)
            if receipt is None:
                await self._compensate(record)
                raise IssuanceFailed(
                    f"ledger unavailable: {exc}", credential_id=record.credential_id
                ) from exc
        except LedgerRejected as exc:
            await self._compensate(record)
            raise IssuanceFailed(
                f"ledger rejected the credential: {exc}",
                credential_id=record.credential_id,
            ) from exc

        confirmed = record.confirm(
            LedgerReference(receipt.transaction_id, receipt.block_height)
        )
        try:
            await self._call(lambda: self._index.upsert(confirmed), "index", "upsert")
        except TransientStoreError:
            self._reconciler.submit(confirmed)

        ISSUANCE_OUTCOMES.labels(outcome="confirmed").inc()
        logger.info(
            "Credential issued at block %d",
            receipt.block_height,
            extra={"credential_id": confirmed.credential_id},
        )
        return IssuanceResult.from_record(confirmed)

    async def _find_commit(self, record: CredentialRecord) -> LedgerReceipt | None:
        try:
            entry = await asyncio.wait_for(
                self._ledger.query(record.credential_id), timeout=self._retry.timeout
            )
        except (TransientStoreError, LedgerRejected, TimeoutError):
            return None
        if entry.exists and entry.canonical_hash == record.canonical_hash:
            logger.info(
                "Ledger already holds the commit, not re-submitting",
                extra={"credential_id": record.credential_id},
            )
            return entry.receipt()
        return None

    # -- compensation ---------------------------------------------------------

    async def _compensate(self, record: CredentialRecord) -> None:
        await self._unpin(record.blob_reference, record.credential_id)
        await self._mark_failed(record)
        ISSUANCE_OUTCOMES.labels(outcome="failed").inc()

    async def _unpin(self, blob_reference: str | None, credential_id: str) -> None:
        if blob_reference is None:
            return
        # Blobs are content-addressed: another credential issued with the
        # same document holds the same reference.
        try:
            shared = await self._call(
                lambda: self._index.blob_in_use(blob_reference, excluding=credential_id),
                "index",
                "blob_in_use",
            )
        except TransientStoreError as exc:
            COMPENSATIONS.labels(action="unpin", result="error").inc()
            logger.error(
                "Could not check who else holds %s, leaving it pinned: %s",
                blob_reference,
                exc,
                extra={"credential_id": credential_id},
            )
            return
        if shared:
            COMPENSATIONS.labels(action="unpin", result="shared").inc()
            logger.info(
                "Blob %s is held by another credential, leaving it pinned",
                blob_reference,
                extra={"credential_id": credential_id},
            )
            return
        try:
            await self._call(lambda: self._blobs.unpin(blob_reference), "blob_store", "unpin")
        except (TransientStoreError, BlobRejected) as exc:
            COMPENSATIONS.labels(action="unpin", result="error").inc()
            logger.error(
                "Could not unpin %s, blob left orphaned: %s",
                blob_reference,
                exc,
                extra={"credential_id": credential_id},
            )
            return
        COMPENSATIONS.labels(action="unpin", result="ok").inc()

    async def _mark_failed(self, record: CredentialRecord) -> None:
        failed = record.fail()
        try:
            await self._call(lambda: self._index.upsert(failed), "index", "upsert")
        except TransientStoreError:
            COMPENSATIONS.labels(action="mark_failed", result="error").inc()
            self._reconciler.submit(failed)
            return
        COMPENSATIONS.labels(action="mark_failed", result="ok").inc()

    # -- helpers --------------------------------------------------------------

    async def _find_existing(self, key: str) -> CredentialRecord | None:
        try:
            return await self._call(
                lambda: self._index.find_by_idempotency_key(key),
                "index",
                "find_by_idempotency_key",
            )
        except TransientStoreError as exc:
            ISSUANCE_OUTCOMES.labels(outcome="failed").inc()
            raise IssuanceFailed(f"index unavailable: {exc}") from exc

    def _duplicate(self, record: CredentialRecord) -> IssuanceResult:
        ISSUANCE_OUTCOMES.labels(outcome="duplicate").inc()
        logger.info(
            "Duplicate issuance request, returning existing credential (status=%s)",
            record.status,
            extra={"credential_id": record.credential_id},
        )
        return IssuanceResult.from_record(record, duplicate=True)

    async def _call(
        self, op: Callable[[], Awaitable[T]], store: str, operation: str
    ) -> T:
        return await call_with_retries(op, policy=self._retry, store=store, operation=operation)


def _check_expiry(expiry_date: datetime, now: datetime) -> None:
    if not isinstance(expiry_date, datetime):
        raise ValidationError("expiry date must be a datetime")
    if expiry_date.tzinfo is None or expiry_date.utcoffset() is None:
        raise ValidationError("expiry date must be timezone-aware")
    if expiry_date <= now:
        raise ValidationError("expiry date must be in the future")
