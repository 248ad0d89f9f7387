"""Background repair of the index after ledger writes.

Two loops keep the index honest, at different time scales.

INDEX RECONCILER  (seconds)
---------------------------
Once the ledger has accepted a commit or a revocation, that fact is
final: rolling it back is impossible and "failing" the request would
lie to the caller.  If the index write that follows runs out of retries,
the coordinator hands the desired record to ``IndexReconciler.submit``
and returns.  The reconciler keeps upserting it in the background with
capped exponential backoff until the index takes it.

Only the newest desired state per credential is kept: if a revocation
is submitted while a confirmation is still being retried, the retry
loop picks up the revoked record on its next attempt.
Index writes never move a row backwards (see
``CredentialRecord.may_overwrite``), so a queued state that a later
write has overtaken lands as a no-op; ``supersede`` drops it outright.

LEDGER EVENT RECONCILER  (minutes, separate worker process)
-----------------------------------------------------------
The IndexReconciler lives in the API process and dies with it.  The
LedgerEventReconciler closes that gap: it walks the ledger's event
sequence from a saved height and compares every event to the index.

    committed + index pending          -> confirm (repair)
    revoked   + index confirmed        -> mark revoked (repair)
    event     + index missing/failed   -> orphan, logged for an operator
    hash on ledger != hash in index    -> divergence, logged

The event sequence is restartable, so the height is saved only after a
batch has been applied; a crash replays a few events, which is harmless
because every repair is idempotent.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from redis.exceptions import RedisError

from credential_service.core.clock import Clock
from credential_service.core.errors import ConsistencyError, TransientStoreError
from credential_service.core.metrics import LEDGER_EVENTS_PROCESSED, RECONCILIATION_BACKLOG
from credential_service.core.retry import RetryPolicy, call_with_retries
from credential_service.db.redis import RedisConnection
from credential_service.models.credential import (
    CredentialRecord,
    LedgerReference,
    Revocation,
)
from credential_service.repos.credential_repo import CredentialIndex
from credential_service.services.ledger import LedgerAdapter, LedgerEvent

logger = logging.getLogger(__name__)

# Actor recorded on revocations the index learns about from the ledger.
LEDGER_ACTOR = "ledger-reconciler"


class IndexReconciler:
    def __init__(
        self,
        index: CredentialIndex,
        *,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        timeout: float = 5.0,
    ) -> None:
        self._index = index
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._timeout = timeout
        self._pending: dict[str, CredentialRecord] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def backlog(self) -> int:
        return len(self._pending)

    def pending(self, credential_id: str) -> CredentialRecord | None:
        return self._pending.get(credential_id)

    def submit(self, record: CredentialRecord) -> None:
        """Queue ``record`` to be written to the index, replacing any
        older state queued for the same credential."""
        self._pending[record.credential_id] = record
        RECONCILIATION_BACKLOG.set(len(self._pending))
        logger.warning(
            "Index write handed to reconciler (status=%s)",
            record.status,
            extra={"credential_id": record.credential_id},
        )

        task = self._tasks.get(record.credential_id)
        if task is None or task.done():
            task = asyncio.create_task(
                self._run(record.credential_id),
                name=f"reconcile-index-{record.credential_id}",
            )
            self._tasks[record.credential_id] = task
            task.add_done_callback(
                lambda done, cid=record.credential_id: self._forget(cid, done)
            )

    def supersede(self, record: CredentialRecord) -> None:
        """Drop any queued state that ``record``, just written to the
        index directly, has overtaken."""
        queued = self._pending.get(record.credential_id)
        if queued is not None and record.may_overwrite(queued):
            del self._pending[record.credential_id]
            RECONCILIATION_BACKLOG.set(len(self._pending))
            logger.info(
                "Dropped queued index write (status=%s), overtaken by %s",
                queued.status,
                record.status,
                extra={"credential_id": record.credential_id},
            )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for every queued write to land (or ``timeout`` to pass)."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        if not tasks:
            return
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        if still_running:
            logger.warning("%d index writes still pending after drain", len(still_running))

    async def close(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._pending:
            logger.error(
                "Reconciler closed with %d unwritten index records: %s",
                len(self._pending),
                sorted(self._pending),
            )
        self._tasks.clear()

    async def _run(self, credential_id: str) -> None:
        attempt = 0
        try:
            while True:
                record = self._pending.get(credential_id)
                if record is None:
                    return
                try:
                    await asyncio.wait_for(self._index.upsert(record), timeout=self._timeout)
                except (TransientStoreError, TimeoutError) as exc:
                    delay = min(self._max_delay, self._base_delay * (2**attempt))
                    attempt += 1
                    logger.warning(
                        "Reconciler upsert failed (attempt %d), retrying in %.1fs: %s",
                        attempt,
                        delay,
                        exc or "timeout",
                        extra={"credential_id": credential_id},
                    )
                    await asyncio.sleep(delay)
                    continue

                # A newer state may have been queued while we were writing.
                if self._pending.get(credential_id) is record:
                    del self._pending[credential_id]
                    logger.info(
                        "Reconciler wrote index record (status=%s)",
                        record.status,
                        extra={"credential_id": credential_id},
                    )
                    return
        finally:
            RECONCILIATION_BACKLOG.set(len(self._pending))

    def _forget(self, credential_id: str, task: asyncio.Task[None]) -> None:
        # A newer task may already own the slot.
        if self._tasks.get(credential_id) is task:
            del self._tasks[credential_id]


# ---------------------------------------------------------------------------
# Ledger event reconciler
# ---------------------------------------------------------------------------


class HeightStore(Protocol):
    async def load(self) -> int: ...
    async def save(self, height: int) -> None: ...


class InMemoryHeightStore:
    def __init__(self, height: int = 0) -> None:
        self.height = height

    async def load(self) -> int:
        return self.height

    async def save(self, height: int) -> None:
        self.height = height


class RedisHeightStore:
    _KEY = "reconciler:ledger-height"

    def __init__(self, redis: RedisConnection) -> None:
        self._redis = redis

    async def load(self) -> int:
        try:
            raw = await self._redis.client.get(self._KEY)
        except RedisError as exc:
            raise TransientStoreError("height_store", "load", str(exc)) from exc
        return int(raw or 0)

    async def save(self, height: int) -> None:
        try:
            await self._redis.client.set(self._KEY, str(height))
        except RedisError as exc:
            raise TransientStoreError("height_store", "save", str(exc)) from exc


class LedgerEventReconciler:
    def __init__(
        self,
        ledger: LedgerAdapter,
        index: CredentialIndex,
        heights: HeightStore,
        *,
        clock: Clock,
        retry_policy: RetryPolicy,
        poll_seconds: float = 5.0,
    ) -> None:
        self._ledger = ledger
        self._index = index
        self._heights = heights
        self._clock = clock
        self._retry = retry_policy
        self._poll_seconds = poll_seconds

    async def run_once(self, from_height: int = 0) -> int:
        """Apply every event at or above ``from_height``.

        Returns the height to resume from next time.
        """
        next_height = from_height
        async for event in self._ledger.events(from_height):
            try:
                action = await self._apply(event)
            except ConsistencyError as exc:
                action = "orphaned"
                logger.error(
                    "Ledger/index divergence at height %d: %s",
                    event.height,
                    exc,
                    extra={"credential_id": event.credential_id},
                )
            LEDGER_EVENTS_PROCESSED.labels(kind=event.kind, action=action).inc()
            next_height = max(next_height, event.height + 1)
        return next_height

    async def run(self, stop: asyncio.Event) -> None:
        height = await self._heights.load()
        logger.info("Ledger event reconciler starting at height %d", height)
        while not stop.is_set():
            try:
                new_height = await self.run_once(height)
                if new_height != height:
                    await self._heights.save(new_height)
                    logger.info("Reconciled ledger events up to height %d", new_height - 1)
                    height = new_height
            except TransientStoreError as exc:
                logger.warning("Reconciliation pass interrupted: %s", exc)

            try:
                await asyncio.wait_for(stop.wait(), timeout=self._poll_seconds)
            except TimeoutError:
                pass
        logger.info("Ledger event reconciler stopped at height %d", height)

    async def _apply(self, event: LedgerEvent) -> str:
        record = await call_with_retries(
            lambda: self._index.find_by_id(event.credential_id),
            policy=self._retry,
            store="index",
            operation="find_by_id",
        )
        if record is None or record.status == "failed":
            state = "missing" if record is None else "failed"
            raise ConsistencyError(
                f"{event.kind} event for a credential the index has as {state}"
            )
        if event.kind == "committed" and event.canonical_hash != record.canonical_hash:
            raise ConsistencyError(
                f"ledger hash {event.canonical_hash} != index hash {record.canonical_hash}"
            )

        if event.kind == "committed":
            if record.status != "pending":
                return "in_sync"
            repaired = record.confirm(LedgerReference(event.transaction_id, event.height))
            await self._write(repaired, "confirmed")
            return "repaired"

        if event.kind == "revoked":
            if record.status == "revoked":
                return "in_sync"
            if record.status == "pending":
                # The committed event is earlier in the stream; this only
                # happens when the reconciler starts past it.
                entry = await call_with_retries(
                    lambda: self._ledger.query(record.credential_id),
                    policy=self._retry,
                    store="ledger",
                    operation="query",
                )
                receipt = entry.receipt()
                if receipt is None:
                    raise ConsistencyError("revoked on ledger but commit not visible")
                record = record.confirm(
                    LedgerReference(receipt.transaction_id, receipt.block_height)
                )
            repaired = record.revoke(
                Revocation(
                    reason="revoked on ledger",
                    actor=LEDGER_ACTOR,
                    at=self._clock.now(),
                    transaction_id=event.transaction_id,
                )
            )
            await self._write(repaired, "revoked")
            return "repaired"

        logger.warning("Ignoring unknown ledger event kind %r", event.kind)
        return "unknown"

    async def _write(self, record: CredentialRecord, status: str) -> None:
        await call_with_retries(
            lambda: self._index.upsert(record),
            policy=self._retry,
            store="index",
            operation="upsert",
        )
        logger.info(
            "Repaired index from ledger event: now %s",
            status,
            extra={"credential_id": record.credential_id},
        )
