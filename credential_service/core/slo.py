"""Service level objectives for credential-service.

Three promises, each an SLI with a target:

  availability      share of HTTP responses that are not 5xx
  latency_p95       share of requests answered within 500ms, read off p95
  issuance_success  share of issuance attempts that end confirmed

Issuance gets its own objective because its failures rarely show up as
5xx noise: a ledger outage turns into compensated, cleanly reported
IssuanceFailed responses, and a dashboard of HTTP status codes would
look almost normal while nobody can get a credential.

ERROR BUDGET
------------
``budget_remaining`` is ``current - target``.  Positive means there is
room to spend on risky deploys; negative means the objective is
breached.

The evaluators are pure functions (numbers in, status out).  The
/health endpoint feeds them from in-process Prometheus counters, which
is a per-instance approximation; the real numbers come from Prometheus
aggregating all instances.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class SLODefinition:
    """A single SLO target.

    name:        identifier used in /health output
    description: what is measured
    target:      target percentage (99.5 means 99.5%)
    window:      rolling evaluation window, e.g. "30d"
    """

    name: str
    description: str
    target: float
    window: str


@dataclass(frozen=True, slots=True)
class SLOStatus:
    slo: SLODefinition
    current: float
    budget_remaining: float
    healthy: bool


AVAILABILITY_SLO = SLODefinition(
    name="availability",
    description="Percentage of non-5xx responses",
    target=99.5,
    window="30d",
)

LATENCY_SLO = SLODefinition(
    name="latency_p95",
    description="95th percentile response time under 500ms",
    target=95.0,
    window="30d",
)

ISSUANCE_SUCCESS_SLO = SLODefinition(
    name="issuance_success",
    description="Percentage of new issuance attempts that end confirmed",
    target=99.0,
    window="7d",
)

ALL_SLOS = [AVAILABILITY_SLO, LATENCY_SLO, ISSUANCE_SUCCESS_SLO]

LATENCY_THRESHOLD_MS = 500.0


def _status(slo: SLODefinition, current: float) -> SLOStatus:
    return SLOStatus(
        slo=slo,
        current=round(current, 3),
        budget_remaining=round(current - slo.target, 3),
        healthy=current >= slo.target,
    )


def evaluate_availability(total_requests: int, error_requests: int) -> SLOStatus:
    """availability = (total - errors) / total * 100

    10,000 requests with 10 errors -> 99.9, healthy.
    10,000 requests with 100 errors -> 99.0, breached.
    """
    if total_requests == 0:
        return _status(AVAILABILITY_SLO, 100.0)
    current = (total_requests - error_requests) / total_requests * 100
    return _status(AVAILABILITY_SLO, current)


def evaluate_latency(p95_ms: float) -> SLOStatus:
    """Approximate "share of requests under 500ms" from the p95.

    A p95 at or under the threshold means at least 95% are fast enough;
    the further below, the closer to 100.  Above the threshold the share
    drops below 95 in proportion to the overshoot.
    """
    if p95_ms <= LATENCY_THRESHOLD_MS:
        current = min(100.0, 95.0 + (LATENCY_THRESHOLD_MS - p95_ms) / LATENCY_THRESHOLD_MS * 5.0)
    else:
        current = max(
            0.0, 95.0 - (p95_ms - LATENCY_THRESHOLD_MS) / LATENCY_THRESHOLD_MS * 95.0
        )
    return _status(LATENCY_SLO, current)


def evaluate_issuance_success(confirmed: int, failed: int) -> SLOStatus:
    # Duplicates are replays of an earlier attempt and do not count.
    attempts = confirmed + failed
    if attempts == 0:
        return _status(ISSUANCE_SUCCESS_SLO, 100.0)
    return _status(ISSUANCE_SUCCESS_SLO, confirmed / attempts * 100)
