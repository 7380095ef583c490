"""Tests for local and HTTP key servers and ledger-backed proof verification."""

from __future__ import annotations

import json
from datetime import timedelta

import httpx
import pytest

from healthvault.core.errors import EncryptionFailure, PermissionDenied
from healthvault.modules.access.proofs import AccessProof, LedgerAccessVerifier
from healthvault.modules.access.rules import AccessGrant
from healthvault.modules.encryption.envelope import WrappedShare, b64encode
from healthvault.modules.encryption.key_servers import HttpKeyServer, LocalKeyServer
from healthvault.modules.encryption.shamir import Share
from healthvault.modules.ledger.models import GrantKind


def _owner_proof(patient_ctx, record_id: str, clock) -> AccessProof:  # type: ignore[no-untyped-def]
    return AccessProof.issue(
        patient_ctx,
        record_id=record_id,
        subject=patient_ctx.identity,
        grant=AccessGrant(kind=GrantKind.OWNER),
        now=clock(),
        ttl=timedelta(minutes=5),
    )


class TestLedgerAccessVerifier:
    """Proofs are re-validated against ledger state at use time."""

    @pytest.mark.asyncio
    async def test_owner_proof_is_accepted(
        self, ledger, clock, patient_ctx, patient_record
    ) -> None:
        verifier = LedgerAccessVerifier(ledger, clock=clock)
        proof = _owner_proof(patient_ctx, patient_record.record_id, clock)

        grant = await verifier.verify(proof, patient_ctx.identity)

        assert grant.kind is GrantKind.OWNER

    @pytest.mark.asyncio
    async def test_expired_proof_is_rejected(
        self, ledger, clock, patient_ctx, patient_record
    ) -> None:
        verifier = LedgerAccessVerifier(ledger, clock=clock)
        proof = _owner_proof(patient_ctx, patient_record.record_id, clock)
        clock.advance(minutes=6)

        with pytest.raises(PermissionDenied, match="validity window"):
            await verifier.verify(proof, patient_ctx.identity)

    @pytest.mark.asyncio
    async def test_forged_signature_is_rejected(
        self, ledger, clock, patient_ctx, patient_record
    ) -> None:
        verifier = LedgerAccessVerifier(ledger, clock=clock)
        proof = _owner_proof(patient_ctx, patient_record.record_id, clock)
        forged = proof.model_copy(update={"grant_kind": GrantKind.EMERGENCY})

        with pytest.raises(PermissionDenied, match="signature"):
            await verifier.verify(forged, patient_ctx.identity)

    @pytest.mark.asyncio
    async def test_proof_for_other_identity_is_rejected(
        self, ledger, clock, patient_ctx, patient_record
    ) -> None:
        verifier = LedgerAccessVerifier(ledger, clock=clock)
        proof = _owner_proof(patient_ctx, patient_record.record_id, clock)

        with pytest.raises(PermissionDenied, match="subject"):
            await verifier.verify(proof, "0xb0b")

    @pytest.mark.asyncio
    async def test_requester_without_grant_is_rejected(
        self, ledger, clock, unauthorized_ctx, patient_ctx, patient_record
    ) -> None:
        verifier = LedgerAccessVerifier(ledger, clock=clock)
        proof = AccessProof.issue(
            unauthorized_ctx,
            record_id=patient_record.record_id,
            subject=patient_ctx.identity,
            grant=AccessGrant(kind=GrantKind.PERMISSION, grant_id="made-up"),
            now=clock(),
            ttl=timedelta(minutes=5),
        )

        with pytest.raises(PermissionDenied, match="no active grant"):
            await verifier.verify(proof, patient_ctx.identity)


class TestLocalKeyServer:
    """Tests for share wrapping and proof-gated release."""

    @pytest.mark.asyncio
    async def test_wrap_and_release(self, ledger, clock, patient_ctx, patient_record) -> None:
        server = LocalKeyServer("ks-1", LedgerAccessVerifier(ledger, clock=clock))
        share = Share(index=1, value=b"\x01" * 32)
        policy_id = patient_record.policy_id

        wrapped = await server.wrap_share(patient_ctx.identity, policy_id, share)
        proof = _owner_proof(patient_ctx, patient_record.record_id, clock)
        released = await server.release_share(patient_ctx.identity, policy_id, wrapped, proof)

        assert released == share
        assert server.released == 1

    @pytest.mark.asyncio
    async def test_share_bound_to_policy(self, ledger, clock, patient_ctx, patient_record) -> None:
        server = LocalKeyServer("ks-1", LedgerAccessVerifier(ledger, clock=clock))
        wrapped = await server.wrap_share(patient_ctx.identity, "policy-a", Share(1, b"\x02" * 32))
        proof = _owner_proof(patient_ctx, patient_record.record_id, clock)

        with pytest.raises(EncryptionFailure, match="unwrap"):
            await server.release_share(patient_ctx.identity, "policy-b", wrapped, proof)

    @pytest.mark.asyncio
    async def test_foreign_share_is_rejected(
        self, ledger, clock, patient_ctx, patient_record
    ) -> None:
        server = LocalKeyServer("ks-1", LedgerAccessVerifier(ledger, clock=clock))
        wrapped = WrappedShare(server_id="ks-2", index=1, wrapped=b64encode(b"\x00" * 40))
        proof = _owner_proof(patient_ctx, patient_record.record_id, clock)

        with pytest.raises(EncryptionFailure, match="belongs to"):
            await server.release_share(patient_ctx.identity, "p", wrapped, proof)

    @pytest.mark.asyncio
    async def test_truncated_share_is_rejected(
        self, ledger, clock, patient_ctx, patient_record
    ) -> None:
        server = LocalKeyServer("ks-1", LedgerAccessVerifier(ledger, clock=clock))
        wrapped = WrappedShare(server_id="ks-1", index=1, wrapped=b64encode(b"\x00" * 4))
        proof = _owner_proof(patient_ctx, patient_record.record_id, clock)

        with pytest.raises(EncryptionFailure, match="truncated"):
            await server.release_share(patient_ctx.identity, "p", wrapped, proof)


class TestHttpKeyServer:
    """Tests for the remote key-server client."""

    @staticmethod
    def _server(handler) -> HttpKeyServer:  # type: ignore[no-untyped-def]
        return HttpKeyServer(
            "ks-remote",
            "http://keys.test/",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

    @pytest.mark.asyncio
    async def test_wrap_share(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/shares/wrap"
            body = json.loads(request.content)
            assert body["identity"] == "0xa11ce"
            assert body["index"] == 2
            return httpx.Response(200, json={"wrapped": "d3JhcHBlZA=="})

        wrapped = await self._server(handler).wrap_share("0xa11ce", "pid", Share(2, b"\x05"))

        assert wrapped == WrappedShare(server_id="ks-remote", index=2, wrapped="d3JhcHBlZA==")

    @pytest.mark.asyncio
    async def test_release_share_sends_proof(self, clock, patient_ctx) -> None:
        proof = _owner_proof(patient_ctx, "rec-1", clock)

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/shares/release"
            body = json.loads(request.content)
            assert body["proof"]["signature"] == proof.signature
            return httpx.Response(200, json={"share": b64encode(b"\x09\x09")})

        wrapped = WrappedShare(server_id="ks-remote", index=3, wrapped="eA==")
        share = await self._server(handler).release_share("0xa11ce", "pid", wrapped, proof)

        assert share == Share(index=3, value=b"\x09\x09")

    @pytest.mark.asyncio
    async def test_forbidden_is_permission_denied(self, clock, patient_ctx) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={"detail": "no active grant"})

        wrapped = WrappedShare(server_id="ks-remote", index=1, wrapped="eA==")
        proof = _owner_proof(patient_ctx, "rec-1", clock)

        with pytest.raises(PermissionDenied, match="no active grant"):
            await self._server(handler).release_share("0xa11ce", "pid", wrapped, proof)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(500),
            httpx.Response(200, text="not json"),
            httpx.Response(200, json={"wrapped": ""}),
        ],
    )
    async def test_bad_responses_are_encryption_failures(self, response: httpx.Response) -> None:
        with pytest.raises(EncryptionFailure):
            await self._server(lambda request: response).wrap_share("0xa11ce", "p", Share(1, b"x"))

    @pytest.mark.asyncio
    async def test_unreachable_server(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(EncryptionFailure, match="unreachable"):
            await self._server(handler).wrap_share("0xa11ce", "p", Share(1, b"x"))
