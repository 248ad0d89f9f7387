"""Prometheus scrape endpoint.

Plain-text exposition format, not JSON.  Restrict it at the ingress in
production: request rates and verdict counts by reason code say a lot
about the service.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
