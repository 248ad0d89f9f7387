"""Application metrics using the Prometheus client library.

All metrics live here, in one inventory.  The component that owns a
behavior imports the metric and increments it at the point of action.

What we watch, beyond plain HTTP traffic:

  ISSUANCE_OUTCOMES       : confirmed / failed / duplicate.  A rising
                             "failed" rate means the ledger is sick.
  COMPENSATIONS           : blobs unpinned after a failed commit.
  VERIFICATION_VERDICTS   : verdicts by reason code.  HASH_MISMATCH
                             should be ~0; anything else is tampering or
                             a bug and deserves an alert.
  STORE_RETRIES           : transient failures absorbed by retries, per
                             store and operation.
  RATE_LIMIT_DECISIONS    : includes "fail_open", which tells you the
                             limiter is running without its Redis.
  RECONCILIATION_BACKLOG  : index writes still being retried after a
                             successful ledger commit.  Should drain to 0.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# Core metrics
# ---------------------------------------------------------------------------

ISSUANCE_OUTCOMES = Counter(
    "credential_issuance_total",
    "Issuance calls by outcome",
    ["outcome"],  # confirmed | failed | duplicate
)

COMPENSATIONS = Counter(
    "credential_compensations_total",
    "Compensating actions taken after a later issuance step failed",
    ["action", "result"],  # action: unpin | mark_failed; result: ok | shared | error
)

VERIFICATION_VERDICTS = Counter(
    "credential_verifications_total",
    "Verification verdicts by reason code",
    ["reason_code"],
)

VERIFICATION_DURATION = Histogram(
    "credential_verification_duration_seconds",
    "Time to compute a verdict (cache misses only)",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

CACHE_OPERATIONS = Counter(
    "verification_cache_operations_total",
    "Verdict cache lookups by result",
    ["operation"],  # hit | miss | error
)

STORE_RETRIES = Counter(
    "store_retries_total",
    "Transient store failures that were retried",
    ["store", "operation"],
)

RATE_LIMIT_DECISIONS = Counter(
    "rate_limit_decisions_total",
    "Rate limiter decisions",
    ["result"],  # allowed | denied | fail_open
)

REVOCATIONS = Counter(
    "credential_revocations_total",
    "Revocation calls by outcome",
    ["outcome"],  # revoked | unauthorized | rejected | failed
)

RECONCILIATION_BACKLOG = Gauge(
    "index_reconciliation_backlog",
    "Index writes being retried in the background after a ledger write",
)

LEDGER_EVENTS_PROCESSED = Counter(
    "ledger_events_processed_total",
    "Ledger events consumed by the reconciler",
    ["kind", "action"],  # action: in_sync | repaired | orphaned | unknown
)
