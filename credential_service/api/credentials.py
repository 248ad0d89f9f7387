"""Credential endpoints: a thin HTTP skin over CredentialService.

    POST /v1/credentials                         issue
    GET  /v1/credentials/{id}/verify             verify (public, rate-limited)
    POST /v1/credentials/{id}/revoke             revoke
    GET  /v1/credentials/{id}                    details
    GET  /v1/credentials?subject=&issuer=&status=  search
    GET  /v1/credentials/{id}/verifications      verification history

Every decision lives in the service.  Routes only translate JSON to
arguments and errors to status codes:

    ValidationError                      422
    AuthorizationError                   403
    CredentialNotFound                   404
    CredentialStateError                 409
    RateLimitExceeded                    429
    IssuanceFailed / VerificationUnavailable / RevocationFailed   503

A verdict is never an error: an invalid credential is a 200 with
``valid: false`` and a reason code.
"""

from __future__ import annotations

import base64
import binascii
import logging
from datetime import datetime
from typing import Any, NoReturn

from fastapi import APIRouter, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, Field

from credential_service.api.dependencies import ContainerDep, ServiceDep
from credential_service.api.ratelimit import caller_key, rate_limit_headers, rejection_headers
from credential_service.core.errors import (
    AuthorizationError,
    CredentialNotFound,
    CredentialServiceError,
    CredentialStateError,
    IssuanceFailed,
    RateLimitExceeded,
    RevocationFailed,
    ValidationError,
    VerificationUnavailable,
)
from credential_service.models.credential import CredentialRecord
from credential_service.models.verdict import VerificationLogEntry, VerificationVerdict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/credentials", tags=["credentials"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class CredentialIssueIn(BaseModel):
    subject_identity: str = Field(min_length=1)
    issuer_identity: str = Field(min_length=1)
    claims: dict[str, Any]
    expiry_date: datetime
    idempotency_key: str | None = None
    # base64; binary does not travel well inside JSON
    document: str | None = None


class LedgerReferenceOut(BaseModel):
    transaction_id: str
    block_height: int


class CredentialIssueOut(BaseModel):
    credential_id: str
    status: str
    ledger_reference: LedgerReferenceOut | None
    duplicate: bool


class SourcesOut(BaseModel):
    ledger_match: bool
    index_match: bool
    blob_reachable: bool


class VerdictOut(BaseModel):
    credential_id: str
    valid: bool
    reason_code: str
    sources: SourcesOut
    computed_at: datetime


class RevokeIn(BaseModel):
    reason: str = Field(min_length=1)
    actor: str = Field(min_length=1)


class RevokeOut(BaseModel):
    credential_id: str
    status: str
    transaction_id: str
    reason: str
    revoked_at: datetime


class RevocationOut(BaseModel):
    reason: str
    actor: str
    at: datetime
    transaction_id: str | None


class CredentialOut(BaseModel):
    credential_id: str
    subject_identity: str
    issuer_identity: str
    claims: dict[str, Any]
    canonical_hash: str
    status: str
    issue_date: datetime
    expiry_date: datetime
    document_digest: str | None
    blob_reference: str | None
    ledger_reference: LedgerReferenceOut | None
    revocation: RevocationOut | None
    verification_count: int
    last_verified_at: datetime | None


class VerificationLogOut(BaseModel):
    verifier: str
    reason_code: str
    valid: bool
    cached: bool
    at: datetime


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.post("", response_model=CredentialIssueOut, status_code=status.HTTP_201_CREATED)
async def issue_credential(
    body: CredentialIssueIn, service: ServiceDep, response: Response
) -> CredentialIssueOut:
    document = _decode_document(body.document)
    try:
        result = await service.issue_credential(
            body.subject_identity,
            body.issuer_identity,
            body.claims,
            body.expiry_date,
            idempotency_key=body.idempotency_key,
            document=document,
        )
    except CredentialServiceError as exc:
        _raise_http(exc)

    if result.duplicate:
        # Replay of an earlier request: nothing new was created.
        response.status_code = status.HTTP_200_OK
    ref = result.ledger_reference
    return CredentialIssueOut(
        credential_id=result.credential_id,
        status=result.status,
        ledger_reference=(
            LedgerReferenceOut(transaction_id=ref.transaction_id, block_height=ref.block_height)
            if ref
            else None
        ),
        duplicate=result.duplicate,
    )


@router.get("", response_model=list[CredentialOut])
async def list_credentials(
    service: ServiceDep,
    subject: str | None = None,
    issuer: str | None = None,
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
) -> list[CredentialOut]:
    try:
        records = await service.list_credentials(
            subject=subject, issuer=issuer, status=status_filter, limit=limit
        )
    except CredentialServiceError as exc:
        _raise_http(exc)
    return [_credential_out(r) for r in records]


@router.get("/{credential_id}/verify", response_model=VerdictOut)
async def verify_credential(
    credential_id: str,
    request: Request,
    response: Response,
    container: ContainerDep,
    force_refresh: bool = False,
) -> VerdictOut:
    key = caller_key(request)
    try:
        verdict, decision = await container.service.verify_with_quota(
            credential_id, force_refresh=force_refresh, caller_key=key
        )
    except RateLimitExceeded as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded",
            headers=rejection_headers(exc.decision, container.clock.now()),
        ) from exc
    except CredentialServiceError as exc:
        _raise_http(exc)

    response.headers.update(rate_limit_headers(decision))
    return _verdict_out(verdict)


@router.post("/{credential_id}/revoke", response_model=RevokeOut)
async def revoke_credential(
    credential_id: str, body: RevokeIn, service: ServiceDep
) -> RevokeOut:
    try:
        result = await service.revoke_credential(credential_id, body.reason, body.actor)
    except CredentialServiceError as exc:
        _raise_http(exc)
    return RevokeOut(
        credential_id=result.credential_id,
        status="revoked",
        transaction_id=result.transaction_id,
        reason=result.reason,
        revoked_at=result.revoked_at,
    )


@router.get("/{credential_id}", response_model=CredentialOut)
async def get_credential(credential_id: str, service: ServiceDep) -> CredentialOut:
    try:
        record = await service.get_credential(credential_id)
    except CredentialServiceError as exc:
        _raise_http(exc)
    return _credential_out(record)


@router.get("/{credential_id}/verifications", response_model=list[VerificationLogOut])
async def verification_history(
    credential_id: str,
    service: ServiceDep,
    limit: int = Query(default=100, ge=1, le=500),
) -> list[VerificationLogOut]:
    try:
        entries = await service.verification_history(credential_id, limit=limit)
    except CredentialServiceError as exc:
        _raise_http(exc)
    return [_log_out(e) for e in entries]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR: list[tuple[type[CredentialServiceError], int]] = [
    (ValidationError, 422),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (CredentialNotFound, status.HTTP_404_NOT_FOUND),
    (CredentialStateError, status.HTTP_409_CONFLICT),
    (IssuanceFailed, status.HTTP_503_SERVICE_UNAVAILABLE),
    (VerificationUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (RevocationFailed, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def _raise_http(exc: CredentialServiceError) -> NoReturn:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            if code >= 500:
                logger.error("Request failed: %s", exc)
            raise HTTPException(status_code=code, detail=_detail(exc)) from exc
    raise exc


def _detail(exc: CredentialServiceError) -> str:
    if isinstance(exc, CredentialNotFound):
        return "credential not found"
    return str(exc)


def _decode_document(encoded: str | None) -> bytes | None:
    if encoded is None:
        return None
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(
            status_code=422,
            detail="document must be base64",
        ) from None


def _verdict_out(verdict: VerificationVerdict) -> VerdictOut:
    return VerdictOut(
        credential_id=verdict.credential_id,
        valid=verdict.valid,
        reason_code=verdict.reason_code.value,
        sources=SourcesOut(
            ledger_match=verdict.sources.ledger_match,
            index_match=verdict.sources.index_match,
            blob_reachable=verdict.sources.blob_reachable,
        ),
        computed_at=verdict.computed_at,
    )


def _credential_out(record: CredentialRecord) -> CredentialOut:
    ref = record.ledger_reference
    rev = record.revocation
    return CredentialOut(
        credential_id=record.credential_id,
        subject_identity=record.subject_identity,
        issuer_identity=record.issuer_identity,
        claims=dict(record.claim_payload),
        canonical_hash=record.canonical_hash,
        status=record.status,
        issue_date=record.issue_date,
        expiry_date=record.expiry_date,
        document_digest=record.document_digest,
        blob_reference=record.blob_reference,
        ledger_reference=(
            LedgerReferenceOut(transaction_id=ref.transaction_id, block_height=ref.block_height)
            if ref
            else None
        ),
        revocation=(
            RevocationOut(
                reason=rev.reason, actor=rev.actor, at=rev.at, transaction_id=rev.transaction_id
            )
            if rev
            else None
        ),
        verification_count=record.verification_count,
        last_verified_at=record.last_verified_at,
    )


def _log_out(entry: VerificationLogEntry) -> VerificationLogOut:
    return VerificationLogOut(
        verifier=entry.verifier,
        reason_code=entry.reason_code.value,
        valid=entry.valid,
        cached=entry.cached,
        at=entry.at,
    )
