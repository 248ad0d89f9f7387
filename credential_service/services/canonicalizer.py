"""Deterministic encoding and hashing of credential claims.

The canonical hash is the tamper-evidence anchor written to the ledger,
so two things must hold for every caller, forever:

  1. the same logical claims produce the same bytes, whatever order the
     keys were inserted in
  2. nothing in the encoding depends on when or where it was computed

Encoding rules:
  - a JSON envelope {"claims", "subject", "issuer", "expiry", "document"}
  - keys sorted lexicographically at every depth, no whitespace, UTF-8
  - aware datetimes become integer epoch seconds (UTC); dates become the
    epoch of their midnight UTC; naive datetimes are rejected
  - floats with an integral value are written as ints (3.0 == 3)
  - sets, callables, bytes, NaN/inf and arbitrary objects are rejected:
    they either have no stable order or smuggle in run-time values
    (a ``datetime.now`` default, for example)

The attached document is covered by the proof: when one is present its
SHA-256 digest is the envelope's "document" member.
"""

from __future__ import annotations

import hashlib
import json
import math
from collections.abc import Mapping
from datetime import UTC, date, datetime
from typing import Any

from credential_service.core.errors import ValidationError

HASH_ALGORITHM = "sha256"

_MAX_DEPTH = 16


def normalize_payload(claim_payload: Mapping[str, Any]) -> dict[str, Any]:
    """Return the JSON-native form of a claim payload.

    The result is what gets stored in the index, so recomputing the hash
    from a stored payload yields the same bytes as at issuance.
    """
    if not isinstance(claim_payload, Mapping):
        raise ValidationError("claim payload must be a mapping")
    if not claim_payload:
        raise ValidationError("claim payload must not be empty")
    return _normalize_mapping(claim_payload, "claims", 0)


def canonicalize(
    claim_payload: Mapping[str, Any],
    subject_identity: str,
    issuer_identity: str,
    expiry_date: datetime,
    document_digest: str | None = None,
) -> bytes:
    for name, value in (("subject", subject_identity), ("issuer", issuer_identity)):
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{name} identity must be a non-empty string")
    if not isinstance(expiry_date, datetime):
        raise ValidationError("expiry date must be a datetime")

    envelope = {
        "claims": normalize_payload(claim_payload),
        "subject": subject_identity,
        "issuer": issuer_identity,
        "expiry": to_epoch(expiry_date, "expiry"),
        "document": document_digest,
    }
    return json.dumps(
        envelope,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def hash_canonical(canonical_bytes: bytes) -> str:
    return hashlib.new(HASH_ALGORITHM, canonical_bytes).hexdigest()


def compute_canonical_hash(
    claim_payload: Mapping[str, Any],
    subject_identity: str,
    issuer_identity: str,
    expiry_date: datetime,
    document_digest: str | None = None,
) -> str:
    return hash_canonical(
        canonicalize(
            claim_payload,
            subject_identity,
            issuer_identity,
            expiry_date,
            document_digest,
        )
    )


def digest_document(document: bytes) -> str:
    return hashlib.new(HASH_ALGORITHM, document).hexdigest()


def to_epoch(value: date, path: str) -> int:
    if isinstance(value, datetime):
        if value.tzinfo is None or value.utcoffset() is None:
            raise ValidationError(f"{path}: datetime must be timezone-aware")
        return int(value.timestamp())
    return int(datetime(value.year, value.month, value.day, tzinfo=UTC).timestamp())


def _normalize_mapping(value: Mapping[Any, Any], path: str, depth: int) -> dict[str, Any]:
    if depth > _MAX_DEPTH:
        raise ValidationError(f"{path}: nesting deeper than {_MAX_DEPTH} levels")
    out: dict[str, Any] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ValidationError(f"{path}: keys must be strings (got {key!r})")
        out[key] = _normalize(item, f"{path}.{key}", depth + 1)
    return out


def _normalize(value: Any, path: str, depth: int) -> Any:
    # bool before int: bool is an int subclass
    if value is None or isinstance(value, (str, bool)):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValidationError(f"{path}: non-finite number")
        return int(value) if value.is_integer() else value
    if isinstance(value, date):
        return to_epoch(value, path)
    if isinstance(value, Mapping):
        return _normalize_mapping(value, path, depth)
    if isinstance(value, (list, tuple)):
        if depth > _MAX_DEPTH:
            raise ValidationError(f"{path}: nesting deeper than {_MAX_DEPTH} levels")
        return [_normalize(item, f"{path}[{i}]", depth + 1) for i, item in enumerate(value)]
    if isinstance(value, (set, frozenset)):
        raise ValidationError(f"{path}: sets have no deterministic order")
    if callable(value):
        raise ValidationError(f"{path}: callables are not allowed in claims")
    raise ValidationError(f"{path}: unsupported value of type {type(value).__name__}")
