"""The public face of the core: one object, every operation.

The HTTP layer, the worker and tests all talk to ``CredentialService``
rather than to the coordinator, engine and manager directly.  It adds
the two things none of those own:

  - rate limiting in front of verification
  - read-only lookups (by id, subject, issuer, status) and the
    verification history
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from credential_service.core.errors import (
    CredentialNotFound,
    RateLimitExceeded,
    TransientStoreError,
    ValidationError,
    VerificationUnavailable,
)
from credential_service.core.retry import RetryPolicy, call_with_retries
from credential_service.models.credential import STATUSES, CredentialRecord
from credential_service.models.verdict import VerificationLogEntry, VerificationVerdict
from credential_service.repos.credential_repo import CredentialIndex
from credential_service.repos.verification_log_repo import VerificationLog
from credential_service.services.issuance import IssuanceCoordinator, IssuanceResult
from credential_service.services.rate_limiter import RateLimitDecision, SlidingWindowRateLimiter
from credential_service.services.revocation import RevocationManager, RevocationResult
from credential_service.services.verification import ANONYMOUS_VERIFIER, VerificationEngine

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 500


class CredentialService:
    def __init__(
        self,
        *,
        index: CredentialIndex,
        verification_log: VerificationLog,
        issuance: IssuanceCoordinator,
        verification: VerificationEngine,
        revocation: RevocationManager,
        rate_limiter: SlidingWindowRateLimiter,
        retry_policy: RetryPolicy,
        rate_limit_window_seconds: int = 60,
        rate_limit_max_requests: int = 120,
    ) -> None:
        self._index = index
        self._verification_log = verification_log
        self._issuance = issuance
        self._verification = verification
        self._revocation = revocation
        self._rate_limiter = rate_limiter
        self._retry = retry_policy
        self._window = rate_limit_window_seconds
        self._limit = rate_limit_max_requests

    # -- core operations ------------------------------------------------------

    async def issue_credential(
        self,
        subject_identity: str,
        issuer_identity: str,
        claim_payload: Mapping[str, Any],
        expiry_date: datetime,
        idempotency_key: str | None = None,
        document: bytes | None = None,
    ) -> IssuanceResult:
        return await self._issuance.issue(
            subject_identity,
            issuer_identity,
            claim_payload,
            expiry_date,
            idempotency_key=idempotency_key,
            document=document,
        )

    async def verify_credential(
        self,
        credential_id: str,
        force_refresh: bool = False,
        caller_key: str | None = None,
    ) -> VerificationVerdict:
        """Verify a credential, throttled per ``caller_key`` when given.

        Raises RateLimitExceeded when the caller is over its quota.
        """
        verdict, _ = await self.verify_with_quota(
            credential_id, force_refresh=force_refresh, caller_key=caller_key
        )
        return verdict

    async def verify_with_quota(
        self,
        credential_id: str,
        *,
        force_refresh: bool = False,
        caller_key: str | None = None,
    ) -> tuple[VerificationVerdict, RateLimitDecision | None]:
        """Same as verify_credential, also returning the rate-limit
        decision so callers can report the remaining quota."""
        decision = None
        if caller_key is not None:
            decision = await self._rate_limiter.allow(caller_key, self._window, self._limit)
            if not decision.allowed:
                raise RateLimitExceeded(decision)

        verdict = await self._verification.verify(
            credential_id,
            force_refresh,
            verifier=caller_key or ANONYMOUS_VERIFIER,
        )
        return verdict, decision

    async def revoke_credential(
        self, credential_id: str, reason: str, actor: str
    ) -> RevocationResult:
        return await self._revocation.revoke(credential_id, reason, actor)

    # -- lookups --------------------------------------------------------------

    async def get_credential(self, credential_id: str) -> CredentialRecord:
        record = await self._read(lambda: self._index.find_by_id(credential_id), "find_by_id")
        if record is None:
            raise CredentialNotFound(credential_id)
        return record

    async def list_credentials(
        self,
        *,
        subject: str | None = None,
        issuer: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[CredentialRecord]:
        """Credentials matching every given filter, newest first.

        At least one filter is required.  The most selective one
        available (subject, then issuer, then status) drives the query;
        the rest are applied to its result.
        """
        if subject is None and issuer is None and status is None:
            raise ValidationError("one of subject, issuer or status is required")
        if status is not None and status not in STATUSES:
            raise ValidationError(f"status must be one of {', '.join(STATUSES)}")
        limit = max(1, min(limit, MAX_LIST_LIMIT))

        if subject is not None:
            records = await self._read(
                lambda: self._index.list_by_subject(subject, limit=MAX_LIST_LIMIT),
                "list_by_subject",
            )
        elif issuer is not None:
            records = await self._read(
                lambda: self._index.list_by_issuer(issuer, limit=MAX_LIST_LIMIT),
                "list_by_issuer",
            )
        else:
            records = await self._read(
                lambda: self._index.list_by_status(status, limit=MAX_LIST_LIMIT),  # type: ignore[arg-type]
                "list_by_status",
            )

        return [
            r
            for r in records
            if (issuer is None or r.issuer_identity == issuer)
            and (status is None or r.status == status)
        ][:limit]

    async def verification_history(
        self, credential_id: str, *, limit: int = 100
    ) -> list[VerificationLogEntry]:
        await self.get_credential(credential_id)
        return await self._read(
            lambda: self._verification_log.list_for_credential(
                credential_id, limit=max(1, min(limit, MAX_LIST_LIMIT))
            ),
            "list_verifications",
        )

    async def drain(self) -> None:
        """Wait for background work started by requests to finish."""
        await self._issuance.drain()
        await self._verification.drain()

    async def _read(self, op, operation: str):
        try:
            return await call_with_retries(
                op, policy=self._retry, store="index", operation=operation
            )
        except TransientStoreError as exc:
            raise VerificationUnavailable(f"index unavailable: {exc}") from exc
