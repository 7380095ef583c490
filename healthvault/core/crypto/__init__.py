"""
Cryptographic primitives shared by the ledger, key servers and audit trail.

- **canonicalization**: RFC 8785 canonical JSON for signing and digests
- **hash_chain**: SHA-256 chaining of ledger events
- **signing**: Ed25519 signatures for transactions and access proofs
- **verification**: event-chain verification
"""

from healthvault.core.crypto.canonicalization import (
    SHA256_ALGORITHM,
    canonicalize_jcs_bytes,
    sha256_hex,
    sha256_hex_jcs,
)
from healthvault.core.crypto.hash_chain import GENESIS_HASH, compute_event_hash
from healthvault.core.crypto.signing import (
    generate_signing_keypair,
    sign_message,
    verify_message,
)
from healthvault.core.crypto.verification import ChainVerificationResult, verify_hash_chain

__all__ = [
    "SHA256_ALGORITHM",
    "canonicalize_jcs_bytes",
    "sha256_hex",
    "sha256_hex_jcs",
    "GENESIS_HASH",
    "compute_event_hash",
    "generate_signing_keypair",
    "sign_message",
    "verify_message",
    "ChainVerificationResult",
    "verify_hash_chain",
]
