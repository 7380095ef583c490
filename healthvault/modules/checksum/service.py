"""Content digests recorded on-ledger at registration and re-checked at retrieval."""

from __future__ import annotations

import hashlib
import hmac

from healthvault.core.crypto.canonicalization import SHA256_ALGORITHM
from healthvault.core.errors import ChecksumMismatch
from healthvault.core.logging import get_logger

logger = get_logger(__name__)


class ChecksumService:
    """SHA-256 content hashing with constant-time comparison."""

    algorithm = SHA256_ALGORITHM

    def digest(self, data: bytes) -> str:
        """Return the hex-encoded SHA-256 digest of ``data``."""
        return hashlib.sha256(data).hexdigest()

    def verify(self, data: bytes, expected: str) -> bool:
        """Check ``data`` against a previously recorded hex digest."""
        actual = self.digest(data).encode("ascii")
        # bytes, so a non-ASCII digest read back from the ledger compares unequal
        return hmac.compare_digest(actual, expected.strip().lower().encode("utf-8"))

    def ensure(self, data: bytes, expected: str, *, blob_id: str | None = None) -> None:
        """Raise ``ChecksumMismatch`` unless ``data`` matches ``expected``.

        A mismatch means storage corruption or tampering, so it is always fatal.
        """
        if self.verify(data, expected):
            return
        logger.error("checksum_mismatch", blob_id=blob_id, expected=expected)
        raise ChecksumMismatch(
            f"ciphertext digest does not match the on-ledger checksum for blob {blob_id!r}"
        )
