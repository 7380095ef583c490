"""
Blob store clients.

``BlobStoreClient`` enforces the size limit before any network traffic and
never exposes update or delete: health-record blobs are write-once.
``HttpBlobStoreClient`` talks to a publisher/aggregator pair over HTTP;
``InMemoryBlobStore`` is a content-addressed store for development and tests.
"""

from __future__ import annotations

import base64
import hashlib
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, cast
from urllib.parse import quote

import httpx

from healthvault.core.errors import BlobNotFoundError, BlobTransportError, UploadFailure
from healthvault.core.logging import get_logger
from healthvault.modules.blobstore.models import BlobMetadata, BlobReference

logger = get_logger(__name__)

METADATA_HEADER_PREFIX = "X-Blob-Meta-"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BlobStoreClient(ABC):
    """Write-once blob storage with a client-side size limit."""

    def __init__(self, *, max_bytes: int, clock: Callable[[], datetime] | None = None) -> None:
        self.max_bytes = max_bytes
        self._clock = clock or _utcnow

    async def put(self, data: bytes, metadata: BlobMetadata | None = None) -> BlobReference:
        """Store ``data`` and return its reference.

        Raises ``UploadFailure`` when ``data`` exceeds ``max_bytes``; the check
        happens before any transport is touched.
        """
        if len(data) > self.max_bytes:
            logger.warning("blob_upload_rejected_size", size=len(data), max_bytes=self.max_bytes)
            raise UploadFailure(
                f"blob of {len(data)} bytes exceeds the {self.max_bytes}-byte limit"
            )
        meta = metadata or BlobMetadata()
        blob_id = await self._store(data, meta)
        reference = BlobReference(blob_id=blob_id, size=len(data), uploaded_at=self._clock())
        logger.info(
            "blob_uploaded",
            blob_id=blob_id,
            size=len(data),
            report_id=meta.report_id,
            policy_id=meta.policy_id,
        )
        return reference

    async def get(self, blob_id: str) -> bytes:
        """Fetch the bytes for ``blob_id``; raises ``BlobNotFoundError`` if absent."""
        data = await self._fetch(blob_id)
        logger.debug("blob_downloaded", blob_id=blob_id, size=len(data))
        return data

    async def close(self) -> None:
        """Release transport resources; a no-op for in-process stores."""

    @abstractmethod
    async def _store(self, data: bytes, metadata: BlobMetadata) -> str: ...

    @abstractmethod
    async def _fetch(self, blob_id: str) -> bytes: ...


def content_blob_id(data: bytes) -> str:
    """Content address: unpadded URL-safe base64 of the SHA-256 digest."""
    return base64.urlsafe_b64encode(hashlib.sha256(data).digest()).rstrip(b"=").decode("ascii")


def metadata_headers(metadata: BlobMetadata) -> dict[str, str]:
    """Upload headers carrying ``metadata``; unset fields and empty tag lists are omitted.

    Values are percent-encoded so report ids outside ASCII survive the transport.
    """
    headers = {"Content-Type": metadata.content_type}
    for name, value in metadata.model_dump(exclude={"content_type"}, exclude_none=True).items():
        if isinstance(value, list):
            if not value:
                continue
            value = ",".join(value)
        header = METADATA_HEADER_PREFIX + name.replace("_", "-").title()
        headers[header] = quote(str(value), safe=",:")
    return headers


class InMemoryBlobStore(BlobStoreClient):
    """Content-addressed in-process store; identical bytes share one blob."""

    def __init__(self, *, max_bytes: int, clock: Callable[[], datetime] | None = None) -> None:
        super().__init__(max_bytes=max_bytes, clock=clock)
        self._blobs: dict[str, bytes] = {}
        self._metadata: dict[str, BlobMetadata] = {}
        self.put_calls = 0

    async def _store(self, data: bytes, metadata: BlobMetadata) -> str:
        self.put_calls += 1
        blob_id = content_blob_id(data)
        if blob_id not in self._blobs:
            self._blobs[blob_id] = bytes(data)
            self._metadata[blob_id] = metadata
        return blob_id

    async def _fetch(self, blob_id: str) -> bytes:
        try:
            return self._blobs[blob_id]
        except KeyError:
            raise BlobNotFoundError(f"blob {blob_id!r} not found") from None

    def __contains__(self, blob_id: object) -> bool:
        return blob_id in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)

    def metadata_for(self, blob_id: str) -> BlobMetadata | None:
        return self._metadata.get(blob_id)

    def corrupt(self, blob_id: str, *, bit: int = 0) -> None:
        """Flip a single bit of a stored blob to simulate storage corruption."""
        data = bytearray(self._blobs[blob_id])
        data[bit // 8] ^= 1 << (bit % 8)
        self._blobs[blob_id] = bytes(data)


class HttpBlobStoreClient(BlobStoreClient):
    """
    Client for a publisher/aggregator blob service.

    Uploads go to ``PUT {publisher}/v1/blobs?epochs=N`` with the upload
    metadata in ``X-Blob-Meta-*`` headers; downloads to
    ``GET {aggregator}/v1/blobs/{blob_id}``.
    """

    def __init__(
        self,
        publisher_url: str,
        aggregator_url: str,
        *,
        max_bytes: int,
        epochs: int,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__(max_bytes=max_bytes, clock=clock)
        self._publisher_url = publisher_url.rstrip("/")
        self._aggregator_url = aggregator_url.rstrip("/")
        self._epochs = epochs
        self._timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=False)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _store(self, data: bytes, metadata: BlobMetadata) -> str:
        client = self._get_client()
        # Blobs are never deletable: no "deletable" flag is ever sent.
        params = {"epochs": str(self._epochs)}
        headers = metadata_headers(metadata)
        try:
            response = await client.put(
                f"{self._publisher_url}/v1/blobs",
                params=params,
                content=data,
                headers=headers,
            )
        except httpx.TimeoutException as exc:
            raise UploadFailure("blob upload timed out") from exc
        except httpx.HTTPError as exc:
            raise UploadFailure(f"blob upload failed: {exc}") from exc

        if response.status_code >= 400:
            logger.warning(
                "blob_upload_http_error",
                status_code=response.status_code,
                report_id=metadata.report_id,
            )
            raise UploadFailure(f"blob publisher returned HTTP {response.status_code}")

        try:
            payload = cast(dict[str, Any], response.json())
        except ValueError as exc:
            raise UploadFailure("blob publisher returned a non-JSON response") from exc
        return _blob_id_from_publish_response(payload)

    async def _fetch(self, blob_id: str) -> bytes:
        client = self._get_client()
        try:
            response = await client.get(f"{self._aggregator_url}/v1/blobs/{blob_id}")
        except httpx.HTTPError as exc:
            raise BlobTransportError(f"blob {blob_id!r} could not be fetched: {exc}") from exc
        if response.status_code == 404:
            raise BlobNotFoundError(f"blob {blob_id!r} not found")
        if response.status_code >= 400:
            raise BlobTransportError(
                f"blob aggregator returned HTTP {response.status_code} for {blob_id!r}"
            )
        return response.content


def _blob_id_from_publish_response(payload: dict[str, Any]) -> str:
    """Extract the blob id from a ``newlyCreated`` or ``alreadyCertified`` response."""
    newly_created = payload.get("newlyCreated")
    if isinstance(newly_created, dict):
        blob_object = newly_created.get("blobObject") or {}
        blob_id = blob_object.get("blobId") if isinstance(blob_object, dict) else None
        if blob_id:
            return str(blob_id)
    already_certified = payload.get("alreadyCertified")
    if isinstance(already_certified, dict) and already_certified.get("blobId"):
        return str(already_certified["blobId"])
    raise UploadFailure("blob publisher response did not contain a blob id")

