"""Shared plumbing for the httpx-based store clients."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx

from credential_service.core.errors import TransientStoreError

# Upstream status codes worth retrying.  Everything else in 4xx is a
# rejection of the request itself.
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


class HttpStoreClient:
    """Owns one httpx.AsyncClient with an explicit open/close lifecycle."""

    store_name = "http"

    def __init__(self, base_url: str, *, timeout: float = 5.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url, timeout=self._timeout
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(f"{self.store_name} client not open. Call open() first.")
        return self._client

    @asynccontextmanager
    async def transport_errors(self, operation: str) -> AsyncIterator[None]:
        """Translate httpx transport failures into TransientStoreError."""
        try:
            yield
        except httpx.TimeoutException as exc:
            raise TransientStoreError(self.store_name, operation, "timeout") from exc
        except httpx.TransportError as exc:
            raise TransientStoreError(self.store_name, operation, str(exc)) from exc

    def raise_for_retryable(self, response: httpx.Response, operation: str) -> None:
        if response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientStoreError(
                self.store_name, operation, f"upstream returned {response.status_code}"
            )
