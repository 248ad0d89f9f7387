from __future__ import annotations

from credential_service.models.verdict import (
    CACHEABLE_REASONS,
    ReasonCode,
    VerificationSources,
    VerificationVerdict,
)
from tests.conftest import START


def test_verdict_serializes_reason_as_string() -> None:
    verdict = VerificationVerdict(
        credential_id="cred-1",
        valid=False,
        reason_code=ReasonCode.HASH_MISMATCH,
        sources=VerificationSources(ledger_match=False, index_match=True, blob_reachable=True),
        computed_at=START,
    )
    data = verdict.to_dict()
    assert data["reason_code"] == "HASH_MISMATCH"
    assert data["sources"] == {"ledger_match": False, "index_match": True, "blob_reachable": True}
    assert VerificationVerdict.from_dict(data) == verdict


def test_retryable_verdicts_are_not_cacheable() -> None:
    assert ReasonCode.LEDGER_UNREACHABLE not in CACHEABLE_REASONS
    assert ReasonCode.NOT_FOUND not in CACHEABLE_REASONS
    assert ReasonCode.OK in CACHEABLE_REASONS
