from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any


class ReasonCode(StrEnum):
    OK = "OK"
    HASH_MISMATCH = "HASH_MISMATCH"
    LEDGER_UNREACHABLE = "LEDGER_UNREACHABLE"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"
    NOT_FOUND = "NOT_FOUND"


# Verdicts that will not change until something is written (revocation,
# tampering repair).  LEDGER_UNREACHABLE and NOT_FOUND are retryable and
# never cached.
CACHEABLE_REASONS = frozenset(
    {ReasonCode.OK, ReasonCode.HASH_MISMATCH, ReasonCode.REVOKED, ReasonCode.EXPIRED}
)


@dataclass(frozen=True, slots=True)
class VerificationSources:
    ledger_match: bool
    index_match: bool
    blob_reachable: bool


@dataclass(frozen=True, slots=True)
class VerificationVerdict:
    credential_id: str
    valid: bool
    reason_code: ReasonCode
    sources: VerificationSources
    computed_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "credential_id": self.credential_id,
            "valid": self.valid,
            "reason_code": self.reason_code.value,
            "sources": {
                "ledger_match": self.sources.ledger_match,
                "index_match": self.sources.index_match,
                "blob_reachable": self.sources.blob_reachable,
            },
            "computed_at": self.computed_at.isoformat(),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> VerificationVerdict:
        sources = data["sources"]
        return VerificationVerdict(
            credential_id=data["credential_id"],
            valid=bool(data["valid"]),
            reason_code=ReasonCode(data["reason_code"]),
            sources=VerificationSources(
                ledger_match=bool(sources["ledger_match"]),
                index_match=bool(sources["index_match"]),
                blob_reachable=bool(sources["blob_reachable"]),
            ),
            computed_at=datetime.fromisoformat(data["computed_at"]),
        )


@dataclass(frozen=True, slots=True)
class VerificationLogEntry:
    """One verification call, kept for analytics."""

    credential_id: str
    verifier: str
    reason_code: ReasonCode
    valid: bool
    cached: bool
    at: datetime
