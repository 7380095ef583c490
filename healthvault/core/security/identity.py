"""
Signing capability supplied by the authentication collaborator.

The login flow that produces a signing capability lives outside this
package; the pipeline only depends on the ``Signer`` protocol below.
``KeypairSigner`` is a local Ed25519 implementation used for development
and tests. Identities are always supplied by the caller and never derived
from key material here.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol, runtime_checkable

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from healthvault.core.crypto.signing import load_private_key, sign_message
from healthvault.core.errors import SessionExpired


class CapabilityKind(str, Enum):
    """On-ledger capability objects an actor may hold."""

    MASTER_KEY = "master_key"
    DOCTOR = "doctor"
    LAB = "lab"


@runtime_checkable
class Signer(Protocol):
    """Signing interface consumed from the authentication collaborator."""

    @property
    def public_key_pem(self) -> str: ...

    def current_identity(self) -> str: ...

    def is_session_valid(self) -> bool: ...

    def sign(self, message: bytes) -> str: ...


class KeypairSigner:
    """Ed25519 signer bound to a caller-supplied identity.

    An optional ``session_expires_at`` emulates a time-limited login
    session; once it passes, ``sign`` raises ``SessionExpired``.
    """

    def __init__(
        self,
        identity: str,
        private_key: Ed25519PrivateKey,
        *,
        session_expires_at: datetime | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._identity = identity
        self._private_key = private_key
        self._session_expires_at = session_expires_at
        self._clock = clock or (lambda: datetime.now(UTC))
        self._public_key_pem = (
            private_key.public_key()
            .public_bytes(encoding=Encoding.PEM, format=PublicFormat.SubjectPublicKeyInfo)
            .decode("utf-8")
        )

    @classmethod
    def generate(
        cls,
        identity: str,
        *,
        session_expires_at: datetime | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> KeypairSigner:
        return cls(
            identity,
            Ed25519PrivateKey.generate(),
            session_expires_at=session_expires_at,
            clock=clock,
        )

    @classmethod
    def from_pem(cls, identity: str, private_key_pem: str) -> KeypairSigner:
        return cls(identity, load_private_key(private_key_pem))

    @property
    def public_key_pem(self) -> str:
        return self._public_key_pem

    def current_identity(self) -> str:
        return self._identity

    def is_session_valid(self) -> bool:
        if self._session_expires_at is None:
            return True
        return self._clock() < self._session_expires_at

    def expire_session(self) -> None:
        self._session_expires_at = self._clock()

    def sign(self, message: bytes) -> str:
        if not self.is_session_valid():
            raise SessionExpired(f"signing session for {self._identity} has expired")
        return sign_message(message, self._private_key)


@dataclass(frozen=True)
class SignerContext:
    """Explicit authorization context: who is acting and which capabilities they claim."""

    signer: Signer
    capabilities: frozenset[CapabilityKind] = field(default_factory=frozenset)

    @classmethod
    def of(cls, signer: Signer, capabilities: Iterable[CapabilityKind] = ()) -> SignerContext:
        return cls(signer=signer, capabilities=frozenset(capabilities))

    @property
    def identity(self) -> str:
        return self.signer.current_identity()

    def holds(self, capability: CapabilityKind) -> bool:
        return capability in self.capabilities


def ensure_session(context: SignerContext) -> None:
    """Raise ``SessionExpired`` when the collaborator reports an invalid session."""
    if not context.signer.is_session_valid():
        raise SessionExpired(f"session for {context.identity} is no longer valid")
