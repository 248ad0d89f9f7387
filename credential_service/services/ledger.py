"""Typed adapter for the append-only credential ledger.

The ledger is an opaque external service.  The core talks to it through
a fixed method set (no runtime lookup of contract methods by name):

  submit(submission) -> LedgerReceipt
      Idempotent per ``submission.idempotency_key``: submitting the same
      key twice returns the first receipt and commits nothing new.  This
      is what makes it safe to re-submit after a timeout whose outcome is
      unknown.
  query(credential_id) -> LedgerEntry
      ``exists=False`` covers both "never committed" and "not yet
      visible"; the ledger may lag behind a successful submit.
  revoke(credential_id, reason) -> transaction id
      Idempotent: revoking twice returns the first transaction id.
  events(from_height) -> async iterator of LedgerEvent
      Lazy and restartable: iterating again from the same height yields
      the same events.  Consumed by the LedgerEventReconciler.
"""

from __future__ import annotations

import hashlib
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Literal, Protocol, runtime_checkable

from credential_service.core.errors import LedgerRejected
from credential_service.services._http import HttpStoreClient

LedgerEventKind = Literal["committed", "revoked"]


@dataclass(frozen=True, slots=True)
class LedgerSubmission:
    credential_id: str
    canonical_hash: str
    subject_identity: str
    issuer_identity: str
    expiry_epoch: int
    idempotency_key: str


@dataclass(frozen=True, slots=True)
class LedgerReceipt:
    transaction_id: str
    block_height: int


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    exists: bool
    canonical_hash: str | None = None
    revoked: bool = False
    transaction_id: str | None = None
    block_height: int | None = None

    @staticmethod
    def missing() -> LedgerEntry:
        return LedgerEntry(exists=False)

    def receipt(self) -> LedgerReceipt | None:
        if not self.exists or self.transaction_id is None or self.block_height is None:
            return None
        return LedgerReceipt(self.transaction_id, self.block_height)


@dataclass(frozen=True, slots=True)
class LedgerEvent:
    height: int
    kind: LedgerEventKind
    credential_id: str
    canonical_hash: str
    transaction_id: str


@runtime_checkable
class LedgerAdapter(Protocol):
    async def submit(self, submission: LedgerSubmission) -> LedgerReceipt: ...
    async def query(self, credential_id: str) -> LedgerEntry: ...
    async def revoke(self, credential_id: str, reason: str) -> str: ...
    def events(self, from_height: int = 0) -> AsyncIterator[LedgerEvent]: ...


class InMemoryLedger:
    """Single-process ledger for tests and local dev.

    Keeps an event log so the reconciler can be exercised without a
    real chain.  ``commit_count`` counts distinct commits, which is what
    the at-most-once tests assert on.
    """

    def __init__(self) -> None:
        self._entries: dict[str, LedgerEntry] = {}
        self._receipts_by_key: dict[str, LedgerReceipt] = {}
        self._revocation_tx: dict[str, str] = {}
        self._events: list[LedgerEvent] = []
        self._height = 0
        self.commit_count = 0

    async def submit(self, submission: LedgerSubmission) -> LedgerReceipt:
        existing = self._receipts_by_key.get(submission.idempotency_key)
        if existing is not None:
            return existing
        if submission.credential_id in self._entries:
            raise LedgerRejected(
                f"credential {submission.credential_id} already committed"
            )

        self._height += 1
        tx_id = _tx_id("commit", submission.credential_id, self._height)
        receipt = LedgerReceipt(transaction_id=tx_id, block_height=self._height)
        self._entries[submission.credential_id] = LedgerEntry(
            exists=True,
            canonical_hash=submission.canonical_hash,
            revoked=False,
            transaction_id=tx_id,
            block_height=self._height,
        )
        self._receipts_by_key[submission.idempotency_key] = receipt
        self._events.append(
            LedgerEvent(
                height=self._height,
                kind="committed",
                credential_id=submission.credential_id,
                canonical_hash=submission.canonical_hash,
                transaction_id=tx_id,
            )
        )
        self.commit_count += 1
        return receipt

    async def query(self, credential_id: str) -> LedgerEntry:
        return self._entries.get(credential_id, LedgerEntry.missing())

    async def revoke(self, credential_id: str, reason: str) -> str:
        entry = self._entries.get(credential_id)
        if entry is None:
            raise LedgerRejected(f"credential {credential_id} is not on the ledger")
        if credential_id in self._revocation_tx:
            return self._revocation_tx[credential_id]

        self._height += 1
        tx_id = _tx_id("revoke", credential_id, self._height)
        self._entries[credential_id] = LedgerEntry(
            exists=True,
            canonical_hash=entry.canonical_hash,
            revoked=True,
            transaction_id=entry.transaction_id,
            block_height=entry.block_height,
        )
        self._revocation_tx[credential_id] = tx_id
        self._events.append(
            LedgerEvent(
                height=self._height,
                kind="revoked",
                credential_id=credential_id,
                canonical_hash=entry.canonical_hash or "",
                transaction_id=tx_id,
            )
        )
        return tx_id

    async def events(self, from_height: int = 0) -> AsyncIterator[LedgerEvent]:
        index = 0
        # Re-read the list on every step so events appended while a
        # consumer is iterating are still delivered.
        while index < len(self._events):
            event = self._events[index]
            index += 1
            if event.height >= from_height:
                yield event


class HttpLedgerAdapter(HttpStoreClient):
    """Client for a ledger gateway exposing a small REST surface.

      POST /credentials                 Idempotency-Key header
      GET  /credentials/{id}            404 when absent / not yet visible
      POST /credentials/{id}/revocations
      GET  /events?from_height=&limit=  {"events": [...]} in height order
    """

    store_name = "ledger"

    def __init__(self, base_url: str, *, timeout: float = 5.0, page_size: int = 100) -> None:
        super().__init__(base_url, timeout=timeout)
        self._page_size = page_size

    async def submit(self, submission: LedgerSubmission) -> LedgerReceipt:
        async with self.transport_errors("submit"):
            response = await self.client.post(
                "/credentials",
                json={
                    "credential_id": submission.credential_id,
                    "canonical_hash": submission.canonical_hash,
                    "subject": submission.subject_identity,
                    "issuer": submission.issuer_identity,
                    "expiry": submission.expiry_epoch,
                },
                headers={"Idempotency-Key": submission.idempotency_key},
            )
        self.raise_for_retryable(response, "submit")
        if response.status_code >= 400:
            raise LedgerRejected(
                f"ledger rejected submit with {response.status_code}: {response.text}"
            )
        body = response.json()
        return LedgerReceipt(
            transaction_id=str(body["transaction_id"]),
            block_height=int(body["block_height"]),
        )

    async def query(self, credential_id: str) -> LedgerEntry:
        async with self.transport_errors("query"):
            response = await self.client.get(f"/credentials/{credential_id}")
        self.raise_for_retryable(response, "query")
        if response.status_code == 404:
            return LedgerEntry.missing()
        if response.status_code >= 400:
            raise LedgerRejected(f"ledger rejected query with {response.status_code}")
        body = response.json()
        return LedgerEntry(
            exists=True,
            canonical_hash=body["canonical_hash"],
            revoked=bool(body.get("revoked", False)),
            transaction_id=body.get("transaction_id"),
            block_height=body.get("block_height"),
        )

    async def revoke(self, credential_id: str, reason: str) -> str:
        async with self.transport_errors("revoke"):
            response = await self.client.post(
                f"/credentials/{credential_id}/revocations",
                json={"reason": reason},
            )
        self.raise_for_retryable(response, "revoke")
        if response.status_code >= 400:
            raise LedgerRejected(
                f"ledger rejected revoke with {response.status_code}: {response.text}"
            )
        return str(response.json()["transaction_id"])

    async def events(self, from_height: int = 0) -> AsyncIterator[LedgerEvent]:
        height = from_height
        while True:
            async with self.transport_errors("events"):
                response = await self.client.get(
                    "/events",
                    params={"from_height": height, "limit": self._page_size},
                )
            self.raise_for_retryable(response, "events")
            if response.status_code >= 400:
                raise LedgerRejected(
                    f"ledger rejected events with {response.status_code}"
                )
            page = response.json().get("events", [])
            if not page:
                return
            for item in page:
                event = LedgerEvent(
                    height=int(item["height"]),
                    kind=item["kind"],
                    credential_id=item["credential_id"],
                    canonical_hash=item.get("canonical_hash", ""),
                    transaction_id=item["transaction_id"],
                )
                height = event.height + 1
                yield event


def _tx_id(kind: str, credential_id: str, height: int) -> str:
    return "0x" + hashlib.sha256(f"{kind}:{credential_id}:{height}".encode()).hexdigest()
