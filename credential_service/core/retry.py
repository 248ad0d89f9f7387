"""Bounded exponential backoff for calls to backing stores.

Every network-bound call in the core goes through ``call_with_retries``:

  - each attempt is bounded by ``policy.timeout`` (asyncio.wait_for); a
    timeout is reported as a TransientStoreError like any other outage
  - TransientStoreError is retried up to ``policy.max_attempts`` times,
    sleeping base_delay * 2**attempt between attempts (capped at max_delay)
  - anything else (validation, rejection, authorization) propagates on
    the first occurrence

When the attempts run out the last TransientStoreError is re-raised;
the caller decides what exhaustion means (IssuanceFailed, a
LEDGER_UNREACHABLE verdict, a handoff to the reconciler, ...).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from credential_service.core.errors import TransientStoreError
from credential_service.core.metrics import STORE_RETRIES

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 4
    base_delay: float = 0.2
    max_delay: float = 5.0
    timeout: float = 5.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before attempt ``attempt + 1`` (attempt is 0-based)."""
        return min(self.max_delay, self.base_delay * (2**attempt))


async def call_with_retries(
    op: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    store: str,
    operation: str,
    on_retry: Callable[[TransientStoreError], Awaitable[T | None]] | None = None,
) -> T:
    """Run ``op`` until it succeeds, a non-transient error escapes, or
    the policy is exhausted.

    ``on_retry`` runs after a failed attempt and before the backoff.  If
    it returns a value other than None, that value is used as the result
    and no further attempt is made.  The issuance coordinator uses this
    to query the ledger before re-submitting a commit that may have landed.
    """
    last_exc: TransientStoreError | None = None
    for attempt in range(policy.max_attempts):
        try:
            return await asyncio.wait_for(op(), timeout=policy.timeout)
        except TimeoutError:
            last_exc = TransientStoreError(
                store, operation, f"timed out after {policy.timeout}s"
            )
        except TransientStoreError as exc:
            last_exc = exc

        if attempt + 1 >= policy.max_attempts:
            break

        STORE_RETRIES.labels(store=store, operation=operation).inc()
        delay = policy.delay_for(attempt)
        logger.warning(
            "%s.%s failed (attempt %d/%d), retrying in %.2fs: %s",
            store,
            operation,
            attempt + 1,
            policy.max_attempts,
            delay,
            last_exc,
        )

        if on_retry is not None:
            recovered = await on_retry(last_exc)
            if recovered is not None:
                return recovered

        if delay > 0:
            await asyncio.sleep(delay)

    assert last_exc is not None
    logger.error(
        "%s.%s gave up after %d attempts: %s",
        store,
        operation,
        policy.max_attempts,
        last_exc,
    )
    raise last_exc
