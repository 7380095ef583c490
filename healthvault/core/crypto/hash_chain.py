"""
SHA-256 hash chaining for ledger event integrity.

Each event hash is computed as ``SHA256(jcs(event_data) + prev_hash)``,
creating a tamper-evident chain where modifying any event invalidates all
subsequent hashes.
"""

from __future__ import annotations

import hashlib
from typing import Any

from healthvault.core.crypto.canonicalization import SHA256_ALGORITHM, canonicalize_jcs_bytes

# Hash used as ``prev_hash`` for the first event in a chain.
GENESIS_HASH: str = "0" * 64


def compute_event_hash(
    event_data: dict[str, Any],
    prev_hash: str,
    *,
    hash_algorithm: str = SHA256_ALGORITHM,
) -> str:
    """Compute the SHA-256 hash for an event in a chain.

    Parameters
    ----------
    event_data:
        JSON-compatible event fields, without the chain metadata.
    prev_hash:
        Hex digest of the previous event, or ``GENESIS_HASH``.

    Returns
    -------
    str
        Hex-encoded SHA-256 digest.
    """
    if hash_algorithm != SHA256_ALGORITHM:
        raise ValueError(f"Unsupported hash algorithm: {hash_algorithm}")
    hasher = hashlib.sha256()
    hasher.update(canonicalize_jcs_bytes(event_data))
    hasher.update(prev_hash.encode("utf-8"))
    return hasher.hexdigest()
