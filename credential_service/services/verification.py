"""Verification: recompute the proof and cross-check every store.

No single store is trusted.  For each request the engine

    1. serves a cached verdict, unless force_refresh
    2. loads the record from the index
    3. recomputes the canonical hash from the stored fields
    4. asks the ledger for its copy (and probes the blob, concurrently)
    5. compares the three

and picks a reason code by the first failing check:

    NOT_FOUND           no record, or a failed issuance
    HASH_MISMATCH       stored fields no longer hash to the stored hash,
                        or the ledger holds a different hash
    LEDGER_UNREACHABLE  ledger down, or the commit is not visible yet
    REVOKED             index or ledger says revoked
    EXPIRED             past expiry_date
    OK

Ledger lag is LEDGER_UNREACHABLE, never HASH_MISMATCH: "not there yet"
is retryable, "different" is tampering.

SIDE EFFECTS
------------
Bumping verification_count and appending to the verification log are
analytics.  They run as background tasks so a slow index never slows a
verifier down, and their failures are logged and dropped.  The tasks
are tracked so shutdown can wait for them (``drain``).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from datetime import datetime
from typing import Any

from credential_service.core.clock import Clock
from credential_service.core.errors import (
    LedgerRejected,
    TransientStoreError,
    ValidationError,
    VerificationUnavailable,
)
from credential_service.core.metrics import VERIFICATION_DURATION, VERIFICATION_VERDICTS
from credential_service.core.retry import RetryPolicy, call_with_retries
from credential_service.models.credential import CredentialRecord
from credential_service.models.verdict import (
    CACHEABLE_REASONS,
    ReasonCode,
    VerificationLogEntry,
    VerificationSources,
    VerificationVerdict,
)
from credential_service.repos.credential_repo import CredentialIndex
from credential_service.repos.verification_log_repo import VerificationLog
from credential_service.services.blob_store import BlobStore
from credential_service.services.canonicalizer import compute_canonical_hash
from credential_service.services.ledger import LedgerAdapter, LedgerEntry
from credential_service.services.verification_cache import VerificationCache

logger = logging.getLogger(__name__)

ANONYMOUS_VERIFIER = "anonymous"

_NO_SOURCES = VerificationSources(ledger_match=False, index_match=False, blob_reachable=False)


class VerificationEngine:
    def __init__(
        self,
        index: CredentialIndex,
        ledger: LedgerAdapter,
        blob_store: BlobStore,
        cache: VerificationCache,
        verification_log: VerificationLog,
        *,
        clock: Clock,
        retry_policy: RetryPolicy,
    ) -> None:
        self._index = index
        self._ledger = ledger
        self._blobs = blob_store
        self._cache = cache
        self._log = verification_log
        self._clock = clock
        self._retry = retry_policy
        self._background: set[asyncio.Task[None]] = set()

    async def verify(
        self,
        credential_id: str,
        force_refresh: bool = False,
        *,
        verifier: str = ANONYMOUS_VERIFIER,
    ) -> VerificationVerdict:
        if not force_refresh:
            cached = await self._cache.get(credential_id)
            if cached is not None:
                VERIFICATION_VERDICTS.labels(reason_code=cached.reason_code.value).inc()
                self._record_call(cached, verifier, cached=True)
                return cached

        # Read before the index so a revocation landing in between makes
        # this verdict's cache entry stale.
        generation = await self._cache.generation(credential_id)

        with VERIFICATION_DURATION.time():
            record, verdict = await self._compute(credential_id)

        VERIFICATION_VERDICTS.labels(reason_code=verdict.reason_code.value).inc()
        logger.info(
            "Verified credential: %s",
            verdict.reason_code.value,
            extra={"credential_id": credential_id, "reason_code": verdict.reason_code.value},
        )

        if record is not None and verdict.reason_code is not ReasonCode.NOT_FOUND:
            self._spawn(self._increment_counters(credential_id, verdict.computed_at))
        self._record_call(verdict, verifier, cached=False)

        if generation is not None and verdict.reason_code in CACHEABLE_REASONS:
            await self._cache.put(
                verdict,
                generation=generation,
                max_ttl_seconds=_remaining_lifetime(record, verdict),
            )
        return verdict

    async def drain(self) -> None:
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def _compute(
        self, credential_id: str
    ) -> tuple[CredentialRecord | None, VerificationVerdict]:
        try:
            record = await call_with_retries(
                lambda: self._index.find_by_id(credential_id),
                policy=self._retry,
                store="index",
                operation="find_by_id",
            )
        except TransientStoreError as exc:
            raise VerificationUnavailable(f"index unavailable: {exc}") from exc

        now = self._clock.now()
        if record is None or record.status == "failed":
            return record, self._verdict(credential_id, ReasonCode.NOT_FOUND, _NO_SOURCES, now)

        try:
            recomputed: str | None = compute_canonical_hash(
                record.claim_payload,
                record.subject_identity,
                record.issuer_identity,
                record.expiry_date,
                record.document_digest,
            )
        except ValidationError as exc:
            recomputed = None
            logger.warning(
                "Stored credential no longer canonicalizes: %s",
                exc,
                extra={"credential_id": credential_id},
            )

        entry, blob_reachable = await asyncio.gather(
            self._query_ledger(credential_id),
            self._probe_blob(record),
        )

        ledger_visible = entry is not None and entry.exists
        ledger_match = ledger_visible and recomputed is not None and entry.canonical_hash == recomputed
        index_match = recomputed is not None and record.canonical_hash == recomputed
        sources = VerificationSources(
            ledger_match=ledger_match,
            index_match=index_match,
            blob_reachable=blob_reachable,
        )

        ledger_revoked = ledger_visible and entry.revoked
        if ledger_revoked != (record.status == "revoked") and ledger_visible:
            logger.warning(
                "Revocation divergence: ledger revoked=%s, index status=%s",
                ledger_revoked,
                record.status,
                extra={"credential_id": credential_id},
            )
        revoked = record.status == "revoked" or ledger_revoked

        if not index_match or (ledger_visible and not ledger_match):
            reason = ReasonCode.HASH_MISMATCH
        elif not ledger_visible:
            reason = ReasonCode.LEDGER_UNREACHABLE
        elif revoked:
            reason = ReasonCode.REVOKED
        elif record.is_expired(now):
            reason = ReasonCode.EXPIRED
        else:
            reason = ReasonCode.OK
        return record, self._verdict(credential_id, reason, sources, now)

    async def _query_ledger(self, credential_id: str) -> LedgerEntry | None:
        """The ledger's entry, or None when it cannot be reached."""
        try:
            return await call_with_retries(
                lambda: self._ledger.query(credential_id),
                policy=self._retry,
                store="ledger",
                operation="query",
            )
        except (TransientStoreError, LedgerRejected) as exc:
            logger.warning(
                "Ledger unreachable during verification: %s",
                exc,
                extra={"credential_id": credential_id},
            )
            return None

    async def _probe_blob(self, record: CredentialRecord) -> bool:
        if record.blob_reference is None:
            return True
        try:
            return await asyncio.wait_for(
                self._blobs.probe(record.blob_reference), timeout=self._retry.timeout
            )
        except (TransientStoreError, TimeoutError) as exc:
            logger.warning(
                "Blob probe failed: %s",
                exc or "timeout",
                extra={"credential_id": record.credential_id},
            )
            return False

    @staticmethod
    def _verdict(
        credential_id: str,
        reason: ReasonCode,
        sources: VerificationSources,
        now: datetime,
    ) -> VerificationVerdict:
        return VerificationVerdict(
            credential_id=credential_id,
            valid=reason is ReasonCode.OK,
            reason_code=reason,
            sources=sources,
            computed_at=now,
        )

    # -- best-effort side effects --------------------------------------------

    def _record_call(self, verdict: VerificationVerdict, verifier: str, *, cached: bool) -> None:
        entry = VerificationLogEntry(
            credential_id=verdict.credential_id,
            verifier=verifier,
            reason_code=verdict.reason_code,
            valid=verdict.valid,
            cached=cached,
            at=self._clock.now(),
        )
        self._spawn(self._append_log(entry))

    async def _increment_counters(self, credential_id: str, at: datetime) -> None:
        try:
            await asyncio.wait_for(
                self._index.increment_counters(credential_id, at), timeout=self._retry.timeout
            )
        except (TransientStoreError, TimeoutError) as exc:
            logger.warning(
                "Verification counter not updated: %s",
                exc or "timeout",
                extra={"credential_id": credential_id},
            )

    async def _append_log(self, entry: VerificationLogEntry) -> None:
        try:
            await asyncio.wait_for(self._log.append(entry), timeout=self._retry.timeout)
        except (TransientStoreError, TimeoutError) as exc:
            logger.warning(
                "Verification log entry dropped: %s",
                exc or "timeout",
                extra={"credential_id": entry.credential_id},
            )

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


def _remaining_lifetime(
    record: CredentialRecord | None, verdict: VerificationVerdict
) -> int | None:
    """An OK verdict must not outlive the credential it vouches for."""
    if record is None or verdict.reason_code is not ReasonCode.OK:
        return None
    return int((record.expiry_date - verdict.computed_at).total_seconds())
