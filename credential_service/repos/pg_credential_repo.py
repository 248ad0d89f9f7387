"""PostgreSQL implementation of CredentialIndex."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy import exists, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from credential_service.core.errors import DuplicateCredentialError, TransientStoreError
from credential_service.db.engine import Database
from credential_service.db.tables import CredentialRow
from credential_service.models.credential import (
    OVERWRITABLE,
    CredentialRecord,
    CredentialStatus,
    LedgerReference,
    Revocation,
)

# Columns a status write may touch.  Counters are owned by
# increment_counters and never overwritten by an upsert.
_UPSERT_COLUMNS = (
    "subject_identity",
    "issuer_identity",
    "claim_payload",
    "canonical_hash",
    "document_digest",
    "blob_reference",
    "ledger_transaction_id",
    "ledger_block_height",
    "status",
    "issue_date",
    "expiry_date",
    "idempotency_key",
    "revoked_reason",
    "revoked_by",
    "revoked_at",
    "revocation_transaction_id",
)


@asynccontextmanager
async def index_errors(operation: str) -> AsyncIterator[None]:
    """Map driver failures onto the core error taxonomy."""
    try:
        yield
    except IntegrityError as exc:
        raise DuplicateCredentialError(str(exc.orig)) from exc
    except (OperationalError, OSError, TimeoutError) as exc:
        raise TransientStoreError("index", operation, str(exc)) from exc
    except DBAPIError as exc:
        if exc.connection_invalidated:
            raise TransientStoreError("index", operation, str(exc)) from exc
        raise


class PgCredentialIndex:
    """Satisfies the CredentialIndex Protocol using PostgreSQL via SQLAlchemy.

    Each call is its own unit of work; the engine's pool is shared with
    every other repository built on the same Database.
    """

    def __init__(self, database: Database) -> None:
        self._db = database

    async def insert(self, record: CredentialRecord) -> None:
        async with index_errors("insert"), self._db.session() as session:
            session.add(CredentialRow(**_record_to_columns(record)))
            await session.flush()

    async def upsert(self, record: CredentialRecord) -> None:
        values = _record_to_columns(record)
        stmt = pg_insert(CredentialRow).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[CredentialRow.credential_id],
            set_={name: stmt.excluded[name] for name in _UPSERT_COLUMNS},
            # A late retry of an older state leaves the row alone.
            where=CredentialRow.status.in_(sorted(OVERWRITABLE[record.status])),
        )
        async with index_errors("upsert"), self._db.session() as session:
            await session.execute(stmt)

    async def find_by_id(self, credential_id: str) -> CredentialRecord | None:
        stmt = select(CredentialRow).where(CredentialRow.credential_id == credential_id)
        async with index_errors("find_by_id"), self._db.session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
        return _row_to_record(row) if row is not None else None

    async def find_by_idempotency_key(self, key: str) -> CredentialRecord | None:
        stmt = select(CredentialRow).where(
            CredentialRow.idempotency_key == key,
            CredentialRow.status != "failed",
        )
        async with index_errors("find_by_idempotency_key"), self._db.session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
        return _row_to_record(row) if row is not None else None

    async def list_by_subject(
        self, subject_identity: str, *, limit: int = 100
    ) -> list[CredentialRecord]:
        return await self._list(
            CredentialRow.subject_identity == subject_identity, limit, "list_by_subject"
        )

    async def list_by_issuer(
        self, issuer_identity: str, *, limit: int = 100
    ) -> list[CredentialRecord]:
        return await self._list(
            CredentialRow.issuer_identity == issuer_identity, limit, "list_by_issuer"
        )

    async def list_by_status(
        self, status: CredentialStatus, *, limit: int = 100
    ) -> list[CredentialRecord]:
        return await self._list(CredentialRow.status == status, limit, "list_by_status")

    async def increment_counters(self, credential_id: str, at: datetime) -> None:
        stmt = (
            update(CredentialRow)
            .where(CredentialRow.credential_id == credential_id)
            .values(
                verification_count=CredentialRow.verification_count + 1,
                last_verified_at=at,
            )
        )
        async with index_errors("increment_counters"), self._db.session() as session:
            await session.execute(stmt)

    async def blob_in_use(self, reference: str, *, excluding: str) -> bool:
        stmt = select(
            exists().where(
                CredentialRow.blob_reference == reference,
                CredentialRow.credential_id != excluding,
                CredentialRow.status != "failed",
            )
        )
        async with index_errors("blob_in_use"), self._db.session() as session:
            return bool((await session.execute(stmt)).scalar())

    async def _list(self, condition, limit: int, operation: str) -> list[CredentialRecord]:
        stmt = (
            select(CredentialRow)
            .where(condition)
            .order_by(CredentialRow.issue_date.desc())
            .limit(limit)
        )
        async with index_errors(operation), self._db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_row_to_record(row) for row in rows]


def _record_to_columns(record: CredentialRecord) -> dict:
    ledger = record.ledger_reference
    revocation = record.revocation
    return {
        "credential_id": record.credential_id,
        "subject_identity": record.subject_identity,
        "issuer_identity": record.issuer_identity,
        "claim_payload": dict(record.claim_payload),
        "canonical_hash": record.canonical_hash,
        "document_digest": record.document_digest,
        "blob_reference": record.blob_reference,
        "ledger_transaction_id": ledger.transaction_id if ledger else None,
        "ledger_block_height": ledger.block_height if ledger else None,
        "status": record.status,
        "issue_date": record.issue_date,
        "expiry_date": record.expiry_date,
        "idempotency_key": record.idempotency_key,
        "revoked_reason": revocation.reason if revocation else None,
        "revoked_by": revocation.actor if revocation else None,
        "revoked_at": revocation.at if revocation else None,
        "revocation_transaction_id": revocation.transaction_id if revocation else None,
        "verification_count": record.verification_count,
        "last_verified_at": record.last_verified_at,
    }


def _row_to_record(row: CredentialRow) -> CredentialRecord:
    ledger = None
    if row.ledger_transaction_id is not None and row.ledger_block_height is not None:
        ledger = LedgerReference(row.ledger_transaction_id, row.ledger_block_height)
    revocation = None
    if row.status == "revoked" and row.revoked_at is not None:
        revocation = Revocation(
            reason=row.revoked_reason or "",
            actor=row.revoked_by or "",
            at=row.revoked_at,
            transaction_id=row.revocation_transaction_id,
        )
    return CredentialRecord(
        credential_id=row.credential_id,
        subject_identity=row.subject_identity,
        issuer_identity=row.issuer_identity,
        claim_payload=dict(row.claim_payload),
        canonical_hash=row.canonical_hash,
        issue_date=row.issue_date,
        expiry_date=row.expiry_date,
        idempotency_key=row.idempotency_key,
        status=row.status,  # type: ignore[arg-type]
        document_digest=row.document_digest,
        blob_reference=row.blob_reference,
        ledger_reference=ledger,
        revocation=revocation,
        verification_count=row.verification_count,
        last_verified_at=row.last_verified_at,
    )
