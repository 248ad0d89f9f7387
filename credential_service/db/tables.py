"""SQLAlchemy table definitions.

These map to the frozen dataclass domain models in models/.  Repos
convert between rows and dataclasses; nothing outside repos/ sees a row.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from credential_service.db.engine import Base


class CredentialRow(Base):
    __tablename__ = "credentials"

    credential_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    subject_identity: Mapped[str] = mapped_column(String(255), nullable=False)
    issuer_identity: Mapped[str] = mapped_column(String(255), nullable=False)
    claim_payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    canonical_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    document_digest: Mapped[str | None] = mapped_column(String(64), nullable=True)
    blob_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ledger_transaction_id: Mapped[str | None] = mapped_column(
        String(128), nullable=True
    )
    ledger_block_height: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="pending"
    )  # pending|confirmed|failed|revoked
    issue_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expiry_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False)
    revoked_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    revocation_transaction_id: Mapped[str | None] = mapped_column(
        String(128), nullable=True
    )
    verification_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_verified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'failed', 'revoked')",
            name="ck_credentials_status",
        ),
        Index("ix_credentials_subject", "subject_identity"),
        Index("ix_credentials_issuer", "issuer_identity"),
        Index("ix_credentials_status", "status"),
        Index("ix_credentials_blob_reference", "blob_reference"),
        # One live credential per idempotency key; failed attempts may
        # be retried under the same key.
        Index(
            "uq_credentials_idempotency_key_live",
            "idempotency_key",
            unique=True,
            postgresql_where=text("status <> 'failed'"),
        ),
    )


class VerificationLogRow(Base):
    __tablename__ = "verification_log"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    credential_id: Mapped[str] = mapped_column(String(64), nullable=False)
    verifier: Mapped[str] = mapped_column(String(255), nullable=False)
    reason_code: Mapped[str] = mapped_column(String(32), nullable=False)
    valid: Mapped[bool] = mapped_column(Boolean, nullable=False)
    cached: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_verification_log_credential", "credential_id"),
        Index("ix_verification_log_at", "at"),
    )
