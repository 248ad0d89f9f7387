"""Content-addressed storage for documents attached to credentials.

The blob store is an external pinning service (IPFS-style).  The core
only needs four things from it, captured by the BlobStore protocol:

  upload(bytes) -> reference     pin a document, get its content address
  unpin(reference)               compensation after a failed commit
  fetch(reference) -> bytes      read a document back
  probe(reference) -> bool       cheap reachability check for verification

References are content addresses, so uploading the same bytes twice
yields the same reference.  Unpinning an unknown reference is not an
error: compensation may run more than once.
"""

from __future__ import annotations

import hashlib
from typing import Protocol, runtime_checkable

from credential_service.core.errors import CredentialServiceError
from credential_service.services._http import HttpStoreClient


class BlobNotFound(CredentialServiceError, LookupError):
    pass


class BlobRejected(CredentialServiceError):
    """The blob store refused the upload (size, type, quota)."""


@runtime_checkable
class BlobStore(Protocol):
    async def upload(self, content: bytes) -> str: ...
    async def unpin(self, reference: str) -> None: ...
    async def fetch(self, reference: str) -> bytes: ...
    async def probe(self, reference: str) -> bool: ...


def content_address(content: bytes) -> str:
    return "sha256-" + hashlib.sha256(content).hexdigest()


class InMemoryBlobStore:
    """Dict-backed blob store for tests and local dev."""

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}

    async def upload(self, content: bytes) -> str:
        reference = content_address(content)
        self._blobs[reference] = bytes(content)
        return reference

    async def unpin(self, reference: str) -> None:
        self._blobs.pop(reference, None)

    async def fetch(self, reference: str) -> bytes:
        try:
            return self._blobs[reference]
        except KeyError:
            raise BlobNotFound(reference) from None

    async def probe(self, reference: str) -> bool:
        return reference in self._blobs

    def is_pinned(self, reference: str) -> bool:
        return reference in self._blobs


class HttpBlobStore(HttpStoreClient):
    """Client for a pinning service speaking a small JSON/REST dialect.

      POST   /pins             body: raw bytes   -> {"reference": "..."}
      DELETE /pins/{ref}                         -> 200/204, 404 if unknown
      GET    /blobs/{ref}                        -> raw bytes
      HEAD   /blobs/{ref}                        -> 200 if reachable
    """

    store_name = "blob_store"

    async def upload(self, content: bytes) -> str:
        async with self.transport_errors("upload"):
            response = await self.client.post(
                "/pins",
                content=content,
                headers={"Content-Type": "application/octet-stream"},
            )
        self.raise_for_retryable(response, "upload")
        if response.status_code >= 400:
            raise BlobRejected(f"upload rejected with {response.status_code}")
        return str(response.json()["reference"])

    async def unpin(self, reference: str) -> None:
        async with self.transport_errors("unpin"):
            response = await self.client.delete(f"/pins/{reference}")
        self.raise_for_retryable(response, "unpin")
        if response.status_code == 404:
            return
        if response.status_code >= 400:
            raise BlobRejected(f"unpin rejected with {response.status_code}")

    async def fetch(self, reference: str) -> bytes:
        async with self.transport_errors("fetch"):
            response = await self.client.get(f"/blobs/{reference}")
        self.raise_for_retryable(response, "fetch")
        if response.status_code == 404:
            raise BlobNotFound(reference)
        if response.status_code >= 400:
            raise BlobRejected(f"fetch rejected with {response.status_code}")
        return response.content

    async def probe(self, reference: str) -> bool:
        async with self.transport_errors("probe"):
            response = await self.client.head(f"/blobs/{reference}")
        self.raise_for_retryable(response, "probe")
        return response.status_code == 200
