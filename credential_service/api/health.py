"""Health and readiness endpoints.

  /health  (liveness)   "is the process alive?"  Always 200; the body
                         says ok or degraded, per dependency, plus SLOs.
                         A 503 here would get the container restarted,
                         which does not fix a Redis outage.
  /ready   (readiness)  "should the load balancer send traffic here?"
                         503 when a store we cannot work without is down.

What counts as critical:

  database   critical when configured: no index, no verification
  redis      not critical: the cache degrades to a miss and the rate
             limiter fails open
  ledger     not checked per probe: verification already reports
             LEDGER_UNREACHABLE, and issuance fails cleanly

The SLO numbers are per-process approximations read from the local
Prometheus registry; Prometheus itself aggregates across instances.
"""

from __future__ import annotations

from fastapi import APIRouter, Response
from prometheus_client import REGISTRY
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from credential_service.api.dependencies import ContainerDep
from credential_service.container import ServiceContainer
from credential_service.core.slo import (
    evaluate_availability,
    evaluate_issuance_success,
    evaluate_latency,
)

router = APIRouter(tags=["health"])


def _sum_samples(sample_name: str, label_filter: dict | None = None) -> float:
    """Sum a metric's samples across every label combination that
    matches ``label_filter``."""
    total = 0.0
    for metric in REGISTRY.collect():
        for sample in metric.samples:
            if sample.name != sample_name:
                continue
            if label_filter and not all(
                sample.labels.get(k) == v for k, v in label_filter.items()
            ):
                continue
            total += sample.value
    return total


async def _database_ok(container: ServiceContainer) -> bool:
    if container.database is None:
        return True
    try:
        async with container.database.session() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError, RuntimeError):
        return False
    return True


@router.get("/health")
async def health(container: ContainerDep) -> dict:
    checks: dict[str, str] = {}
    overall = "ok"

    if container.redis is not None:
        if await container.redis.ping():
            checks["redis"] = "ok"
        else:
            checks["redis"] = "degraded"
            overall = "degraded"
    else:
        checks["redis"] = "not_configured"

    if container.database is not None:
        if await _database_ok(container):
            checks["database"] = "ok"
        else:
            checks["database"] = "down"
            overall = "degraded"
    else:
        checks["database"] = "not_configured"

    backlog = container.reconciler.backlog
    checks["index_reconciliation"] = "ok" if backlog == 0 else f"backlog={backlog}"

    total = _sum_samples("http_requests_total")
    errors = sum(
        _sum_samples("http_requests_total", {"status_code": str(code)})
        for code in range(500, 512)
    )
    availability = evaluate_availability(int(total), int(errors))

    # avg * 2 stands in for p95; the Python client only exposes sum and
    # count, and Prometheus computes the real quantile from the buckets.
    duration_sum = _sum_samples("http_request_duration_seconds_sum")
    duration_count = _sum_samples("http_request_duration_seconds_count")
    p95_estimate_ms = (duration_sum / duration_count) * 1000 * 2.0 if duration_count else 0.0
    latency = evaluate_latency(p95_estimate_ms)

    issuance = evaluate_issuance_success(
        confirmed=int(_sum_samples("credential_issuance_total", {"outcome": "confirmed"})),
        failed=int(_sum_samples("credential_issuance_total", {"outcome": "failed"})),
    )

    slos = {
        s.slo.name: {"current": s.current, "target": s.slo.target, "healthy": s.healthy}
        for s in (availability, latency, issuance)
    }
    return {"status": overall, "checks": checks, "slos": slos}


@router.get("/ready")
async def ready(container: ContainerDep) -> Response:
    if not await _database_ok(container):
        return Response(status_code=503)
    return Response(status_code=200)
