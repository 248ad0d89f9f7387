"""Canonical encoding tests.

The canonical hash is written to the ledger once and recomputed on
every verification for years afterwards, so these tests pin down the
exact bytes, not just "same input, same output".
"""

from __future__ import annotations

import math
from datetime import UTC, date, datetime, timedelta, timezone

import pytest

from credential_service.core.errors import ValidationError
from credential_service.services.canonicalizer import (
    canonicalize,
    compute_canonical_hash,
    digest_document,
    normalize_payload,
)

EXPIRY = datetime(2030, 1, 1, tzinfo=UTC)
SUBJECT = "did:example:alice"
ISSUER = "did:example:university"


def _hash(claims, subject: str = SUBJECT, issuer: str = ISSUER, **kwargs) -> str:
    return compute_canonical_hash(claims, subject, issuer, EXPIRY, **kwargs)


def test_canonical_bytes_are_sorted_and_compact() -> None:
    encoded = canonicalize({"b": 1, "a": "x"}, SUBJECT, ISSUER, EXPIRY)
    expiry_epoch = int(EXPIRY.timestamp())
    assert encoded == (
        '{"claims":{"a":"x","b":1},"document":null,'
        f'"expiry":{expiry_epoch},"issuer":"{ISSUER}","subject":"{SUBJECT}"}}'
    ).encode()


def test_key_order_does_not_change_hash() -> None:
    first = {"degree": "BSc", "honours": {"class": "first", "year": 2024}}
    second = {"honours": {"year": 2024, "class": "first"}, "degree": "BSc"}
    assert _hash(first) == _hash(second)


def test_integral_float_hashes_like_int() -> None:
    assert _hash({"credits": 3.0}) == _hash({"credits": 3})
    assert _hash({"gpa": 3.7}) != _hash({"gpa": 3})


def test_unicode_is_encoded_as_utf8() -> None:
    encoded = canonicalize({"name": "Zoë"}, SUBJECT, ISSUER, EXPIRY)
    assert "Zoë".encode() in encoded


def test_equivalent_expiry_in_other_timezone_hashes_the_same() -> None:
    shifted = EXPIRY.astimezone(timezone(timedelta(hours=5)))
    assert compute_canonical_hash({"a": 1}, SUBJECT, ISSUER, shifted) == _hash({"a": 1})


def test_date_claim_becomes_midnight_epoch() -> None:
    payload = normalize_payload({"awarded": date(2024, 6, 30)})
    assert payload["awarded"] == int(datetime(2024, 6, 30, tzinfo=UTC).timestamp())


def test_identities_are_part_of_the_hash() -> None:
    claims = {"degree": "BSc"}
    assert _hash(claims) != _hash(claims, subject="did:example:mallory")
    assert _hash(claims) != _hash(claims, issuer="did:example:diploma-mill")


def test_document_digest_is_part_of_the_hash() -> None:
    claims = {"degree": "BSc"}
    with_doc = _hash(claims, document_digest=digest_document(b"%PDF-1.7 transcript"))
    other_doc = _hash(claims, document_digest=digest_document(b"%PDF-1.7 forged"))
    assert with_doc != _hash(claims)
    assert with_doc != other_doc


def test_hash_is_hex_sha256() -> None:
    value = _hash({"a": 1})
    assert len(value) == 64
    int(value, 16)


# ---- rejected payloads ----


@pytest.mark.parametrize(
    "claims",
    [
        {"tags": {"a", "b"}},
        {"issued": datetime.now},
        {"score": math.nan},
        {"score": math.inf},
        {"issued": datetime(2024, 1, 1)},
        {"blob": b"raw"},
        {1: "non-string key"},
        {"thing": object()},
    ],
)
def test_non_deterministic_values_are_rejected(claims) -> None:
    with pytest.raises(ValidationError):
        normalize_payload(claims)


def test_empty_payload_is_rejected() -> None:
    with pytest.raises(ValidationError):
        normalize_payload({})


def test_payload_must_be_a_mapping() -> None:
    with pytest.raises(ValidationError):
        normalize_payload([("degree", "BSc")])  # type: ignore[arg-type]


def test_blank_identity_is_rejected() -> None:
    with pytest.raises(ValidationError):
        canonicalize({"a": 1}, "  ", ISSUER, EXPIRY)


def test_naive_expiry_is_rejected() -> None:
    with pytest.raises(ValidationError):
        canonicalize({"a": 1}, SUBJECT, ISSUER, datetime(2030, 1, 1))


def test_excessive_nesting_is_rejected() -> None:
    claims: dict = {}
    node = claims
    for _ in range(20):
        node["child"] = {}
        node = node["child"]
    node["leaf"] = 1
    with pytest.raises(ValidationError):
        normalize_payload(claims)
