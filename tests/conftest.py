from __future__ import annotations

import asyncio
import sys
from collections import Counter
from collections.abc import Iterator
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from credential_service.container import ServiceContainer
from credential_service.core.config import Settings
from credential_service.core.errors import LedgerRejected, TransientStoreError
from credential_service.core.retry import RetryPolicy
from credential_service.main import create_app
from credential_service.models.credential import CredentialRecord
from credential_service.repos.credential_repo import InMemoryCredentialIndex
from credential_service.services.blob_store import InMemoryBlobStore
from credential_service.services.cache import InMemoryCacheService
from credential_service.services.canonicalizer import compute_canonical_hash
from credential_service.services.issuance import IssuanceResult
from credential_service.services.ledger import InMemoryLedger, LedgerReceipt, LedgerSubmission

# Ensure repo root is on sys.path so `import credential_service` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Aligned on a minute boundary so rate-limit windows start at elapsed 0.
START = datetime(2026, 1, 1, tzinfo=UTC)

# No sleeping between attempts; tests stay fast and deterministic.
FAST_RETRY = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, timeout=1.0)

ALWAYS = 10**9


class ManualClock:
    def __init__(self, start: datetime = START) -> None:
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs: float) -> None:
        self._now += timedelta(**kwargs)


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "app_env": "test",
        "log_level": "info",
        "log_json": False,
        "port": 8000,
        "database_url": None,
        "redis_url": None,
        "ledger_url": None,
        "blob_store_url": None,
    }
    values.update(overrides)
    return Settings(**values)


def make_container(
    clock: ManualClock | None = None,
    settings: Settings | None = None,
    **overrides: Any,
) -> ServiceContainer:
    return ServiceContainer.in_memory(
        settings or make_settings(),
        clock=clock or ManualClock(),
        retry_policy=FAST_RETRY,
        **overrides,
    )


async def issue(container: ServiceContainer, **overrides: Any) -> IssuanceResult:
    """Issue a credential with sensible defaults through the public facade."""
    args: dict[str, Any] = {
        "subject_identity": "did:example:alice",
        "issuer_identity": "did:example:university",
        "claim_payload": {"degree": "BSc Physics", "gpa": 3.7},
        "expiry_date": container.clock.now() + timedelta(days=365),
    }
    args.update(overrides)
    return await container.service.issue_credential(**args)


def pending_record(clock: ManualClock, **overrides: Any) -> CredentialRecord:
    """A pending record with a correct canonical hash, not yet on any ledger."""
    subject = overrides.pop("subject_identity", "did:example:bob")
    issuer = overrides.pop("issuer_identity", "did:example:university")
    claims = overrides.pop("claim_payload", {"course": "Thermodynamics"})
    expiry = overrides.pop("expiry_date", clock.now() + timedelta(days=30))
    record = CredentialRecord.new(
        subject_identity=subject,
        issuer_identity=issuer,
        claim_payload=claims,
        canonical_hash=compute_canonical_hash(claims, subject, issuer, expiry),
        issue_date=clock.now(),
        expiry_date=expiry,
        idempotency_key=overrides.pop("idempotency_key", f"key-{subject}"),
    )
    return replace(record, **overrides)


# ---------------------------------------------------------------------------
# Fault injection
# ---------------------------------------------------------------------------


class Faults:
    """Counts calls per operation; fails or blocks the ones asked to."""

    def __init__(self, store: str) -> None:
        self.store = store
        self.calls: Counter[str] = Counter()
        self._failures: dict[str, int] = {}
        self._gates: dict[str, tuple[asyncio.Event, asyncio.Event]] = {}

    def fail(self, operation: str, times: int = ALWAYS) -> None:
        self._failures[operation] = times

    def heal(self) -> None:
        self._failures.clear()

    def block(self, operation: str) -> tuple[asyncio.Event, asyncio.Event]:
        """Hold calls to ``operation`` until released.

        Returns ``(entered, release)``.  Call from inside the event loop.
        """
        gate = (asyncio.Event(), asyncio.Event())
        self._gates[operation] = gate
        return gate

    async def enter(self, operation: str) -> None:
        self.calls[operation] += 1
        left = self._failures.get(operation, 0)
        if left > 0:
            self._failures[operation] = left - 1
            raise TransientStoreError(self.store, operation, "injected failure")
        gate = self._gates.get(operation)
        if gate is not None:
            entered, release = gate
            entered.set()
            await release.wait()


class FlakyLedger(InMemoryLedger):
    def __init__(self) -> None:
        super().__init__()
        self.faults = Faults("ledger")
        self.reject_submits = False
        # Submits that land on the ledger but whose response is lost.
        self.lost_responses = 0

    async def submit(self, submission: LedgerSubmission) -> LedgerReceipt:
        await self.faults.enter("submit")
        if self.reject_submits:
            raise LedgerRejected("schema validation failed")
        receipt = await super().submit(submission)
        if self.lost_responses > 0:
            self.lost_responses -= 1
            raise TransientStoreError("ledger", "submit", "response lost")
        return receipt

    async def query(self, credential_id: str):
        await self.faults.enter("query")
        return await super().query(credential_id)

    async def revoke(self, credential_id: str, reason: str) -> str:
        await self.faults.enter("revoke")
        return await super().revoke(credential_id, reason)

    def tamper(self, credential_id: str, canonical_hash: str) -> None:
        self._entries[credential_id] = replace(
            self._entries[credential_id], canonical_hash=canonical_hash
        )


class FlakyIndex(InMemoryCredentialIndex):
    def __init__(self) -> None:
        super().__init__()
        self.faults = Faults("index")
        # Upserts that land in the index but whose response is lost.
        self.lost_upserts = 0

    async def insert(self, record: CredentialRecord) -> None:
        await self.faults.enter("insert")
        await super().insert(record)

    async def upsert(self, record: CredentialRecord) -> None:
        await self.faults.enter("upsert")
        await super().upsert(record)
        if self.lost_upserts > 0:
            self.lost_upserts -= 1
            raise TransientStoreError("index", "upsert", "response lost")

    async def find_by_id(self, credential_id: str) -> CredentialRecord | None:
        await self.faults.enter("find_by_id")
        return await super().find_by_id(credential_id)

    async def find_by_idempotency_key(self, key: str) -> CredentialRecord | None:
        await self.faults.enter("find_by_idempotency_key")
        return await super().find_by_idempotency_key(key)

    async def increment_counters(self, credential_id: str, at: datetime) -> None:
        await self.faults.enter("increment_counters")
        await super().increment_counters(credential_id, at)

    async def blob_in_use(self, reference: str, *, excluding: str) -> bool:
        await self.faults.enter("blob_in_use")
        return await super().blob_in_use(reference, excluding=excluding)


class FlakyBlobStore(InMemoryBlobStore):
    def __init__(self) -> None:
        super().__init__()
        self.faults = Faults("blob_store")

    async def upload(self, content: bytes) -> str:
        await self.faults.enter("upload")
        return await super().upload(content)

    async def unpin(self, reference: str) -> None:
        await self.faults.enter("unpin")
        await super().unpin(reference)

    async def probe(self, reference: str) -> bool:
        await self.faults.enter("probe")
        return await super().probe(reference)


class FlakyCache(InMemoryCacheService):
    def __init__(self) -> None:
        super().__init__()
        self.faults = Faults("cache")

    def fail_all(self) -> None:
        for operation in ("get", "get_many", "set", "delete", "incr"):
            self.faults.fail(operation)

    async def get(self, key: str) -> str | None:
        await self.faults.enter("get")
        return await super().get(key)

    async def get_many(self, *keys: str) -> list[str | None]:
        await self.faults.enter("get_many")
        return [await InMemoryCacheService.get(self, key) for key in keys]

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.faults.enter("set")
        await super().set(key, value, ttl_seconds)

    async def delete(self, key: str) -> None:
        await self.faults.enter("delete")
        await super().delete(key)

    async def incr(self, key: str) -> int:
        await self.faults.enter("incr")
        return await super().incr(key)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def container(clock: ManualClock) -> ServiceContainer:
    return make_container(clock)


@pytest.fixture
def client(container: ServiceContainer) -> Iterator[TestClient]:
    # The context manager runs the lifespan and keeps one event loop for
    # every request, so background tasks started by one request finish.
    with TestClient(create_app(container)) as test_client:
        yield test_client
