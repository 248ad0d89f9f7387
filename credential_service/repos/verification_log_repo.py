from __future__ import annotations

from typing import Protocol

from credential_service.models.verdict import VerificationLogEntry


class VerificationLog(Protocol):
    async def append(self, entry: VerificationLogEntry) -> None: ...
    async def list_for_credential(
        self, credential_id: str, *, limit: int = 100
    ) -> list[VerificationLogEntry]: ...


class InMemoryVerificationLog:
    def __init__(self) -> None:
        self._entries: list[VerificationLogEntry] = []

    async def append(self, entry: VerificationLogEntry) -> None:
        self._entries.append(entry)

    async def list_for_credential(
        self, credential_id: str, *, limit: int = 100
    ) -> list[VerificationLogEntry]:
        matches = [e for e in self._entries if e.credential_id == credential_id]
        # newest first, same as the SQL implementation
        return list(reversed(matches))[:limit]
