"""
Encryption gateway: identity-bound threshold encryption of record payloads.

``encrypt`` seals the payload under a fresh data key with AES-256-GCM, splits
the data key into one Shamir share per key server, and has every server wrap
its own share. ``decrypt`` asks all servers concurrently to release their
shares against an ``AccessProof``; any ``threshold`` of them recover the key.
No single server, and not the client, can decrypt alone.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Sequence
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from healthvault.core.errors import (
    EncryptionFailure,
    HealthVaultError,
    PermissionDenied,
    PolicyError,
)
from healthvault.core.logging import get_logger
from healthvault.modules.access.proofs import AccessProof
from healthvault.modules.encryption.envelope import (
    DEK_SIZE,
    NONCE_SIZE,
    EnvelopeHeader,
    WrappedShare,
    decode_envelope,
    encode_envelope,
)
from healthvault.modules.encryption.key_servers import KeyServer
from healthvault.modules.encryption.policy import EncryptionPolicy, build_policy
from healthvault.modules.encryption.shamir import Share, combine_shares, split_secret

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class EncryptedPayload:
    ciphertext: bytes
    policy: EncryptionPolicy

    @property
    def policy_id(self) -> str:
        return self.policy.policy_id


class EncryptionGateway:
    """Threshold encryption against a pool of independent key servers."""

    def __init__(
        self,
        key_servers: Sequence[KeyServer],
        *,
        contract_address: str,
        compliance_tags: Sequence[str] = ("GDPR", "KVKK", "HIPAA"),
        timeout: float = 5.0,
    ) -> None:
        if not key_servers:
            raise ValueError("at least one key server is required")
        ids = [server.server_id for server in key_servers]
        if len(set(ids)) != len(ids):
            raise ValueError("key server ids must be unique")
        self._servers = {server.server_id: server for server in key_servers}
        self._contract_address = contract_address
        self._compliance_tags = tuple(compliance_tags)
        self._timeout = timeout

    @property
    def server_count(self) -> int:
        return len(self._servers)

    def build_policy(self, identity: str, threshold: int) -> EncryptionPolicy:
        policy = build_policy(
            identity,
            threshold=threshold,
            contract_address=self._contract_address,
            compliance_tags=self._compliance_tags,
        )
        if threshold > self.server_count:
            raise PolicyError(
                f"threshold {threshold} exceeds the {self.server_count} configured key servers"
            )
        return policy

    async def encrypt(self, payload: bytes, identity: str, threshold: int) -> EncryptedPayload:
        """Encrypt ``payload`` for ``identity``.

        Raises
        ------
        PolicyError
            If ``threshold < 1``, exceeds the pool size, or ``identity`` is malformed.
        EncryptionFailure
            If any key server fails to wrap its share.
        """
        policy = self.build_policy(identity, threshold)
        policy_id = policy.policy_id

        dek = AESGCM.generate_key(bit_length=DEK_SIZE * 8)
        nonce = os.urandom(NONCE_SIZE)
        body = nonce + AESGCM(dek).encrypt(nonce, payload, policy_id.encode())

        shares = split_secret(dek, threshold=threshold, shares=self.server_count)
        servers = list(self._servers.values())
        try:
            wrapped = await asyncio.wait_for(
                asyncio.gather(
                    *(
                        server.wrap_share(policy.identity, policy_id, share)
                        for server, share in zip(servers, shares, strict=True)
                    )
                ),
                timeout=self._timeout,
            )
        except TimeoutError as exc:
            raise EncryptionFailure("key servers did not wrap shares in time") from exc
        except EncryptionFailure:
            raise
        except HealthVaultError as exc:
            raise EncryptionFailure(f"key server rejected share wrapping: {exc.message}") from exc

        header = EnvelopeHeader(
            identity=policy.identity,
            policy_id=policy_id,
            policy=policy,
            threshold=threshold,
            shares=tuple(wrapped),
        )
        ciphertext = encode_envelope(header, body)
        logger.info(
            "payload_encrypted",
            identity=policy.identity,
            policy_id=policy_id,
            threshold=threshold,
            servers=self.server_count,
            plaintext_size=len(payload),
            ciphertext_size=len(ciphertext),
        )
        return EncryptedPayload(ciphertext=ciphertext, policy=policy)

    async def decrypt(self, ciphertext: bytes, identity: str, proof: AccessProof) -> bytes:
        """Recover the plaintext of ``ciphertext`` using ``proof``.

        Raises
        ------
        PermissionDenied
            If too few servers released a share and at least one refused the proof.
        EncryptionFailure
            If the ciphertext is malformed, or too few servers were reachable.
        """
        header, body = decode_envelope(ciphertext)
        if header.identity != identity:
            raise PermissionDenied("ciphertext is bound to a different identity")

        results = await asyncio.gather(
            *(self._release(header, wrapped_share, proof) for wrapped_share in header.shares),
            return_exceptions=True,
        )

        shares: list[Share] = []
        denials = 0
        for result in results:
            if isinstance(result, Share):
                shares.append(result)
            elif isinstance(result, PermissionDenied):
                denials += 1
            elif isinstance(result, HealthVaultError):
                logger.warning("key_share_unavailable", error=result.message, code=result.code)
            elif isinstance(result, BaseException):
                raise result

        if len(shares) < header.threshold:
            logger.info(
                "decrypt_quorum_not_met",
                requester=proof.requester,
                identity=identity,
                released=len(shares),
                threshold=header.threshold,
                denials=denials,
            )
            if denials:
                raise PermissionDenied(
                    f"{denials} key server(s) refused access for {proof.requester}"
                )
            raise EncryptionFailure(
                f"only {len(shares)} of {header.threshold} required key shares were released"
            )

        try:
            dek = combine_shares(shares[: header.threshold])
            nonce, sealed = body[:NONCE_SIZE], body[NONCE_SIZE:]
            plaintext = AESGCM(dek).decrypt(nonce, sealed, header.policy_id.encode())
        except (InvalidTag, ValueError) as exc:
            raise EncryptionFailure("ciphertext failed authentication") from exc

        logger.info(
            "payload_decrypted",
            requester=proof.requester,
            identity=identity,
            policy_id=header.policy_id,
        )
        return plaintext

    async def _release(
        self, header: EnvelopeHeader, wrapped_share: WrappedShare, proof: AccessProof
    ) -> Share:
        server = self._servers.get(wrapped_share.server_id)
        if server is None:
            raise EncryptionFailure(f"unknown key server {wrapped_share.server_id}")
        try:
            return await asyncio.wait_for(
                server.release_share(header.identity, header.policy_id, wrapped_share, proof),
                timeout=self._timeout,
            )
        except TimeoutError as exc:
            raise EncryptionFailure(f"key server {server.server_id} timed out") from exc

    async def close(self) -> None:
        for server in self._servers.values():
            await server.close()
