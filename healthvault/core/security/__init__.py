"""Identity and capability context passed explicitly into every pipeline operation."""

from healthvault.core.security.identity import (
    CapabilityKind,
    KeypairSigner,
    Signer,
    SignerContext,
    ensure_session,
)

__all__ = [
    "CapabilityKind",
    "KeypairSigner",
    "Signer",
    "SignerContext",
    "ensure_session",
]
