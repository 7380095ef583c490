"""
Access proofs and their ledger-backed verification.

An ``AccessProof`` is a short-lived statement, signed by the requester, that
they are entitled to decrypt a given record. Key servers never trust it on
its own: ``LedgerAccessVerifier`` re-checks the signature against the
requester's on-ledger account and re-resolves the grant from current ledger
state before any share is released.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import NoReturn, Protocol

from pydantic import BaseModel, ConfigDict

from healthvault.core.crypto.canonicalization import canonicalize_jcs_bytes
from healthvault.core.crypto.signing import verify_message
from healthvault.core.errors import PermissionDenied, RecordNotFound
from healthvault.core.logging import get_logger
from healthvault.core.security.identity import SignerContext
from healthvault.modules.access.rules import AccessGrant, find_grant
from healthvault.modules.ledger.backend import LedgerBackend
from healthvault.modules.ledger.models import GrantKind

logger = get_logger(__name__)


class AccessProof(BaseModel):
    model_config = ConfigDict(frozen=True)

    requester: str
    record_id: str
    subject: str
    grant_kind: GrantKind
    grant_id: str | None = None
    issued_at: datetime
    expires_at: datetime
    signature: str = ""

    def signing_bytes(self) -> bytes:
        return canonicalize_jcs_bytes(self.model_dump(mode="json", exclude={"signature"}))

    @classmethod
    def issue(
        cls,
        context: SignerContext,
        *,
        record_id: str,
        subject: str,
        grant: AccessGrant,
        now: datetime,
        ttl: timedelta,
    ) -> AccessProof:
        unsigned = cls(
            requester=context.identity,
            record_id=record_id,
            subject=subject,
            grant_kind=grant.kind,
            grant_id=grant.grant_id,
            issued_at=now,
            expires_at=now + ttl,
        )
        return unsigned.model_copy(
            update={"signature": context.signer.sign(unsigned.signing_bytes())}
        )


class AccessVerifier(Protocol):
    async def verify(self, proof: AccessProof, identity: str) -> AccessGrant:
        """Return the live grant backing ``proof`` or raise ``PermissionDenied``."""
        ...


class LedgerAccessVerifier:
    """Validates access proofs against the ledger at use time."""

    def __init__(
        self,
        ledger: LedgerBackend,
        *,
        clock: Callable[[], datetime] | None = None,
        max_clock_skew: timedelta = timedelta(seconds=5),
    ) -> None:
        self._ledger = ledger
        self._clock = clock or (lambda: datetime.now(UTC))
        self._max_clock_skew = max_clock_skew

    async def verify(self, proof: AccessProof, identity: str) -> AccessGrant:
        now = self._clock()
        if proof.subject != identity:
            self._deny(proof, "proof subject does not match the encryption identity")
        if now > proof.expires_at or now + self._max_clock_skew < proof.issued_at:
            self._deny(proof, "access proof is outside its validity window")

        account = await self._ledger.get_account(proof.requester)
        if account is None:
            self._deny(proof, "requester has no ledger account")
        if not verify_message(proof.signing_bytes(), proof.signature, account.public_key_pem):
            self._deny(proof, "access proof signature is invalid")

        try:
            record = await self._ledger.get_record(proof.record_id)
        except RecordNotFound:
            self._deny(proof, "record does not exist")
        if record.owner != identity:
            self._deny(proof, "record is not owned by the encryption identity")

        grant = find_grant(record, proof.requester, now)
        if grant is None:
            self._deny(proof, "no active grant on ledger")
        return grant

    @staticmethod
    def _deny(proof: AccessProof, reason: str) -> NoReturn:
        logger.info(
            "access_proof_rejected",
            requester=proof.requester,
            record_id=proof.record_id,
            reason=reason,
        )
        raise PermissionDenied(reason)
