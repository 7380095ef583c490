"""
Error taxonomy shared by every stage of the record pipeline.

Each error carries a stable ``code`` that doubles as the ledger abort code,
so failures raised by the on-ledger contract and by client-side checks map
onto the same classes. The pipeline fills in ``stage`` before re-raising.
"""

from __future__ import annotations


class HealthVaultError(Exception):
    """Base class for all pipeline failures."""

    code: str = "E_INTERNAL"

    def __init__(self, message: str = "", *, stage: str | None = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.stage = stage

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else ""


class PolicyError(HealthVaultError):
    """Encryption policy could not be built (bad identity or threshold)."""

    code = "E_POLICY"


class EncryptionFailure(HealthVaultError):
    """Key-server or AEAD failure, or a malformed ciphertext."""

    code = "E_ENCRYPTION"


class UploadFailure(HealthVaultError):
    """Blob upload rejected, including client-side size-limit violations."""

    code = "E_UPLOAD"


class BlobNotFoundError(HealthVaultError):
    """The blob store has no blob for the requested id."""

    code = "E_BLOB_NOT_FOUND"


class BlobTransportError(HealthVaultError):
    """The blob store could not be reached or answered with a server error."""

    code = "E_BLOB_TRANSPORT"


class ChecksumMismatch(HealthVaultError):
    """Downloaded ciphertext does not match its on-ledger digest."""

    code = "E_CHECKSUM"


class RegistrationFailure(HealthVaultError):
    """Ledger transaction could not be committed."""

    code = "E_REGISTRATION"


class StaleObjectError(RegistrationFailure):
    """Transaction was built against an outdated object version."""

    code = "E_STALE_VERSION"


class PermissionDenied(HealthVaultError):
    """Caller lacks the permission, capability, or identity for the action."""

    code = "E_NOT_AUTHORIZED"


class SessionExpired(HealthVaultError):
    """Signing session is no longer valid; re-authenticate with the identity provider."""

    code = "E_SESSION_EXPIRED"


class InvalidState(HealthVaultError):
    """Illegal state-machine transition, e.g. approving a request twice."""

    code = "E_INVALID_STATE"


class RecordNotFound(HealthVaultError):
    """No ledger record object exists for the given id or owner."""

    code = "E_RECORD_NOT_FOUND"


_ERRORS_BY_CODE: dict[str, type[HealthVaultError]] = {
    cls.code: cls
    for cls in (
        PolicyError,
        EncryptionFailure,
        UploadFailure,
        BlobNotFoundError,
        BlobTransportError,
        ChecksumMismatch,
        RegistrationFailure,
        StaleObjectError,
        PermissionDenied,
        SessionExpired,
        InvalidState,
        RecordNotFound,
    )
}


def error_for_code(code: str, message: str) -> HealthVaultError:
    """Rebuild a typed error from a ledger abort code.

    Unknown codes surface as ``RegistrationFailure`` since the transaction
    was rejected for a reason the client cannot act on.
    """
    cls = _ERRORS_BY_CODE.get(code, RegistrationFailure)
    return cls(message)
