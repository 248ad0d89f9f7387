"""PostgreSQL implementation of VerificationLog."""

from __future__ import annotations

from sqlalchemy import select

from credential_service.db.engine import Database
from credential_service.db.tables import VerificationLogRow
from credential_service.models.verdict import ReasonCode, VerificationLogEntry
from credential_service.repos.pg_credential_repo import index_errors


class PgVerificationLog:
    def __init__(self, database: Database) -> None:
        self._db = database

    async def append(self, entry: VerificationLogEntry) -> None:
        row = VerificationLogRow(
            credential_id=entry.credential_id,
            verifier=entry.verifier,
            reason_code=entry.reason_code.value,
            valid=entry.valid,
            cached=entry.cached,
            at=entry.at,
        )
        async with index_errors("append_verification"), self._db.session() as session:
            session.add(row)

    async def list_for_credential(
        self, credential_id: str, *, limit: int = 100
    ) -> list[VerificationLogEntry]:
        stmt = (
            select(VerificationLogRow)
            .where(VerificationLogRow.credential_id == credential_id)
            .order_by(VerificationLogRow.at.desc())
            .limit(limit)
        )
        async with index_errors("list_verifications"), self._db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            VerificationLogEntry(
                credential_id=row.credential_id,
                verifier=row.verifier,
                reason_code=ReasonCode(row.reason_code),
                valid=row.valid,
                cached=row.cached,
                at=row.at,
            )
            for row in rows
        ]
