"""
Threshold key servers.

Each server holds one share of every record key, wrapped under a key derived
from its own master secret, the encryption identity and the policy id. A
server releases its share only after its verifier confirms, against current
ledger state, that the presented ``AccessProof`` is backed by a live grant.
"""

from __future__ import annotations

import os
from typing import Any, Protocol, cast

import httpx
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from healthvault.core.errors import EncryptionFailure, PermissionDenied
from healthvault.core.logging import get_logger
from healthvault.modules.access.proofs import AccessProof, AccessVerifier
from healthvault.modules.encryption.envelope import (
    NONCE_SIZE,
    WrappedShare,
    b64decode,
    b64encode,
)
from healthvault.modules.encryption.shamir import Share

logger = get_logger(__name__)


class KeyServer(Protocol):
    @property
    def server_id(self) -> str: ...

    async def wrap_share(self, identity: str, policy_id: str, share: Share) -> WrappedShare: ...

    async def release_share(
        self,
        identity: str,
        policy_id: str,
        wrapped: WrappedShare,
        proof: AccessProof,
    ) -> Share: ...

    async def close(self) -> None: ...


class LocalKeyServer:
    """In-process key server with its own master secret and ledger verifier."""

    def __init__(
        self,
        server_id: str,
        verifier: AccessVerifier,
        *,
        master_secret: bytes | None = None,
    ) -> None:
        self._server_id = server_id
        self._verifier = verifier
        self._master_secret = master_secret or os.urandom(32)
        self.released = 0

    @property
    def server_id(self) -> str:
        return self._server_id

    async def close(self) -> None:
        return None

    def _wrapping_key(self, identity: str, policy_id: str) -> AESGCM:
        info = f"healthvault/share/{self._server_id}|{identity}|{policy_id}".encode()
        key = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=info).derive(
            self._master_secret
        )
        return AESGCM(key)

    async def wrap_share(self, identity: str, policy_id: str, share: Share) -> WrappedShare:
        nonce = os.urandom(NONCE_SIZE)
        aad = str(share.index).encode()
        sealed = self._wrapping_key(identity, policy_id).encrypt(nonce, share.value, aad)
        return WrappedShare(
            server_id=self._server_id,
            index=share.index,
            wrapped=b64encode(nonce + sealed),
        )

    async def release_share(
        self,
        identity: str,
        policy_id: str,
        wrapped: WrappedShare,
        proof: AccessProof,
    ) -> Share:
        if wrapped.server_id != self._server_id:
            raise EncryptionFailure(f"share belongs to {wrapped.server_id}, not {self._server_id}")

        grant = await self._verifier.verify(proof, identity)

        raw = b64decode(wrapped.wrapped)
        if len(raw) <= NONCE_SIZE:
            raise EncryptionFailure(f"wrapped share for {self._server_id} is truncated")
        nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            value = self._wrapping_key(identity, policy_id).decrypt(
                nonce, sealed, str(wrapped.index).encode()
            )
        except InvalidTag as exc:
            raise EncryptionFailure(f"{self._server_id} could not unwrap its share") from exc

        self.released += 1
        logger.info(
            "key_share_released",
            server_id=self._server_id,
            requester=proof.requester,
            record_id=proof.record_id,
            grant_kind=grant.kind.value,
        )
        return Share(index=wrapped.index, value=value)


class HttpKeyServer:
    """Remote key server reached over HTTP.

    ``POST /v1/shares/wrap`` and ``POST /v1/shares/release``; a 403 on
    release means the server's own ledger check refused the proof.
    """

    def __init__(
        self,
        server_id: str,
        base_url: str,
        *,
        timeout: float = 5.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._server_id = server_id
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def server_id(self) -> str:
        return self._server_id

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            response = await self._get_client().post(url, json=payload)
        except httpx.HTTPError as exc:
            raise EncryptionFailure(f"key server {self._server_id} unreachable: {exc}") from exc

        if response.status_code == 403:
            detail = _error_detail(response)
            raise PermissionDenied(f"key server {self._server_id} refused: {detail}")
        if response.status_code >= 400:
            raise EncryptionFailure(
                f"key server {self._server_id} returned HTTP {response.status_code}"
            )
        try:
            return cast(dict[str, Any], response.json())
        except ValueError as exc:
            raise EncryptionFailure(f"key server {self._server_id} sent invalid JSON") from exc

    async def wrap_share(self, identity: str, policy_id: str, share: Share) -> WrappedShare:
        body = await self._post(
            "/v1/shares/wrap",
            {
                "identity": identity,
                "policy_id": policy_id,
                "index": share.index,
                "share": b64encode(share.value),
            },
        )
        return WrappedShare(
            server_id=self._server_id, index=share.index, wrapped=self._field(body, "wrapped")
        )

    async def release_share(
        self,
        identity: str,
        policy_id: str,
        wrapped: WrappedShare,
        proof: AccessProof,
    ) -> Share:
        body = await self._post(
            "/v1/shares/release",
            {
                "identity": identity,
                "policy_id": policy_id,
                "index": wrapped.index,
                "wrapped": wrapped.wrapped,
                "proof": proof.model_dump(mode="json"),
            },
        )
        return Share(index=wrapped.index, value=b64decode(self._field(body, "share")))

    def _field(self, body: dict[str, Any], name: str) -> str:
        value = body.get(name)
        if not isinstance(value, str) or not value:
            raise EncryptionFailure(f"key server {self._server_id} response lacks {name!r}")
        return value


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("error") or body)
    return str(body)
