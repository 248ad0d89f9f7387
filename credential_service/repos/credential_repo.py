from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Protocol

from credential_service.core.errors import DuplicateCredentialError
from credential_service.models.credential import CredentialRecord, CredentialStatus


class CredentialIndex(Protocol):
    async def insert(self, record: CredentialRecord) -> None: ...
    async def upsert(self, record: CredentialRecord) -> None: ...
    async def find_by_id(self, credential_id: str) -> CredentialRecord | None: ...
    async def find_by_idempotency_key(self, key: str) -> CredentialRecord | None: ...
    async def list_by_subject(
        self, subject_identity: str, *, limit: int = 100
    ) -> list[CredentialRecord]: ...
    async def list_by_issuer(
        self, issuer_identity: str, *, limit: int = 100
    ) -> list[CredentialRecord]: ...
    async def list_by_status(
        self, status: CredentialStatus, *, limit: int = 100
    ) -> list[CredentialRecord]: ...
    async def increment_counters(self, credential_id: str, at: datetime) -> None: ...
    async def blob_in_use(self, reference: str, *, excluding: str) -> bool: ...


class InMemoryCredentialIndex:
    def __init__(self) -> None:
        self._records: dict[str, CredentialRecord] = {}

    async def insert(self, record: CredentialRecord) -> None:
        if record.credential_id in self._records:
            raise DuplicateCredentialError(f"credential {record.credential_id} exists")
        if await self.find_by_idempotency_key(record.idempotency_key) is not None:
            raise DuplicateCredentialError(
                f"idempotency key {record.idempotency_key} already in use"
            )
        self._records[record.credential_id] = record

    async def upsert(self, record: CredentialRecord) -> None:
        current = self._records.get(record.credential_id)
        if current is not None:
            if not record.may_overwrite(current):
                return
            # Counters are owned by increment_counters; a status write
            # must not roll them back.
            record = replace(
                record,
                verification_count=max(
                    record.verification_count, current.verification_count
                ),
                last_verified_at=record.last_verified_at or current.last_verified_at,
            )
        self._records[record.credential_id] = record

    async def find_by_id(self, credential_id: str) -> CredentialRecord | None:
        return self._records.get(credential_id)

    async def find_by_idempotency_key(self, key: str) -> CredentialRecord | None:
        for record in self._records.values():
            if record.idempotency_key == key and record.status != "failed":
                return record
        return None

    async def list_by_subject(
        self, subject_identity: str, *, limit: int = 100
    ) -> list[CredentialRecord]:
        return self._newest_first(
            r for r in self._records.values() if r.subject_identity == subject_identity
        )[:limit]

    async def list_by_issuer(
        self, issuer_identity: str, *, limit: int = 100
    ) -> list[CredentialRecord]:
        return self._newest_first(
            r for r in self._records.values() if r.issuer_identity == issuer_identity
        )[:limit]

    async def list_by_status(
        self, status: CredentialStatus, *, limit: int = 100
    ) -> list[CredentialRecord]:
        return self._newest_first(
            r for r in self._records.values() if r.status == status
        )[:limit]

    async def increment_counters(self, credential_id: str, at: datetime) -> None:
        record = self._records.get(credential_id)
        if record is None:
            return
        self._records[credential_id] = replace(
            record,
            verification_count=record.verification_count + 1,
            last_verified_at=at,
        )

    async def blob_in_use(self, reference: str, *, excluding: str) -> bool:
        """Whether a live credential other than ``excluding`` holds the blob."""
        return any(
            r.blob_reference == reference
            and r.credential_id != excluding
            and r.status != "failed"
            for r in self._records.values()
        )

    @staticmethod
    def _newest_first(records) -> list[CredentialRecord]:
        return sorted(records, key=lambda r: r.issue_date, reverse=True)
