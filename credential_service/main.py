"""FastAPI application factory.

RUN:  uvicorn credential_service.main:create_app --factory --port 8000
  or  python -m credential_service.main

There is no module-level ``app``: the factory builds one around a
ServiceContainer, and the lifespan opens and closes that container.
Tests pass their own in-memory container.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from credential_service.api.credentials import router as credentials_router
from credential_service.api.health import router as health_router
from credential_service.api.metrics_endpoint import router as metrics_router
from credential_service.container import ServiceContainer
from credential_service.core.config import load_settings
from credential_service.core.logging import setup_logging
from credential_service.middleware.metrics import MetricsMiddleware
from credential_service.middleware.request_context import (
    RequestContextMiddleware,
    install_request_context_filter,
)

logger = logging.getLogger(__name__)


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    if container is None:
        settings = load_settings()
        # Configure logging before anything else logs.
        setup_logging(settings.log_level, json_format=settings.log_json)
        container = ServiceContainer.from_settings(settings)
    settings = container.settings
    install_request_context_filter()

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
        await container.open()
        try:
            yield
        finally:
            await container.close()

    app = FastAPI(
        title="credential-service",
        lifespan=lifespan,
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
    )
    app.state.container = container

    # Last added runs first: RequestContext -> Metrics -> route.
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestContextMiddleware)

    app.include_router(metrics_router)
    app.include_router(health_router)
    app.include_router(credentials_router)

    logger.info(
        "credential-service created  env=%s database=%s redis=%s ledger=%s blobs=%s",
        settings.app_env,
        "postgres" if settings.database_url else "memory",
        "redis" if settings.redis_url else "memory",
        "http" if settings.ledger_url else "memory",
        "http" if settings.blob_store_url else "memory",
    )
    return app


def main() -> None:
    settings = load_settings()
    uvicorn.run(
        "credential_service.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=settings.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
