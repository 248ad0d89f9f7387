"""create credentials and verification_log

Revision ID: 3b7e1c0d9a21
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b7e1c0d9a21"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "credentials",
        sa.Column("credential_id", sa.String(length=64), primary_key=True),
        sa.Column("subject_identity", sa.String(length=255), nullable=False),
        sa.Column("issuer_identity", sa.String(length=255), nullable=False),
        sa.Column("claim_payload", postgresql.JSONB(), nullable=False),
        sa.Column("canonical_hash", sa.String(length=64), nullable=False),
        sa.Column("document_digest", sa.String(length=64), nullable=True),
        sa.Column("blob_reference", sa.String(length=255), nullable=True),
        sa.Column("ledger_transaction_id", sa.String(length=128), nullable=True),
        sa.Column("ledger_block_height", sa.BigInteger(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("issue_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("idempotency_key", sa.String(length=128), nullable=False),
        sa.Column("revoked_reason", sa.Text(), nullable=True),
        sa.Column("revoked_by", sa.String(length=255), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revocation_transaction_id", sa.String(length=128), nullable=True),
        sa.Column("verification_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'confirmed', 'failed', 'revoked')",
            name="ck_credentials_status",
        ),
    )
    op.create_index("ix_credentials_subject", "credentials", ["subject_identity"])
    op.create_index("ix_credentials_issuer", "credentials", ["issuer_identity"])
    op.create_index("ix_credentials_status", "credentials", ["status"])
    op.create_index("ix_credentials_blob_reference", "credentials", ["blob_reference"])
    op.create_index(
        "uq_credentials_idempotency_key_live",
        "credentials",
        ["idempotency_key"],
        unique=True,
        postgresql_where=sa.text("status <> 'failed'"),
    )

    op.create_table(
        "verification_log",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("credential_id", sa.String(length=64), nullable=False),
        sa.Column("verifier", sa.String(length=255), nullable=False),
        sa.Column("reason_code", sa.String(length=32), nullable=False),
        sa.Column("valid", sa.Boolean(), nullable=False),
        sa.Column("cached", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_verification_log_credential", "verification_log", ["credential_id"])
    op.create_index("ix_verification_log_at", "verification_log", ["at"])


def downgrade() -> None:
    op.drop_index("ix_verification_log_at", table_name="verification_log")
    op.drop_index("ix_verification_log_credential", table_name="verification_log")
    op.drop_table("verification_log")
    op.drop_index("uq_credentials_idempotency_key_live", table_name="credentials")
    op.drop_index("ix_credentials_blob_reference", table_name="credentials")
    op.drop_index("ix_credentials_status", table_name="credentials")
    op.drop_index("ix_credentials_issuer", table_name="credentials")
    op.drop_index("ix_credentials_subject", table_name="credentials")
    op.drop_table("credentials")
