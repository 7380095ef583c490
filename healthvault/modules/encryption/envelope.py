"""
Ciphertext envelope codec.

Wire layout::

    b"HVC1" | u32 big-endian header length | RFC 8785 JSON header | body

The body is ``nonce (12) | AES-256-GCM ciphertext | tag (16)``, so its length
is always the plaintext length plus ``AEAD_OVERHEAD``. The header carries the
policy and one wrapped key share per key server.
"""

from __future__ import annotations

import base64
import binascii
import json
import struct

from pydantic import BaseModel, ConfigDict, ValidationError

from healthvault.core.crypto.canonicalization import canonicalize_jcs_bytes
from healthvault.core.errors import EncryptionFailure
from healthvault.modules.encryption.policy import EncryptionPolicy

MAGIC = b"HVC1"
NONCE_SIZE = 12
TAG_SIZE = 16
AEAD_OVERHEAD = NONCE_SIZE + TAG_SIZE
DEK_SIZE = 32
SCHEME = "threshold-shamir-aes256gcm"

_LENGTH = struct.Struct(">I")


class WrappedShare(BaseModel):
    model_config = ConfigDict(frozen=True)

    server_id: str
    index: int
    wrapped: str  # base64


class EnvelopeHeader(BaseModel):
    model_config = ConfigDict(frozen=True)

    scheme: str = SCHEME
    identity: str
    policy_id: str
    policy: EncryptionPolicy
    threshold: int
    shares: tuple[WrappedShare, ...]


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise EncryptionFailure("malformed base64 in ciphertext envelope") from exc


def encode_envelope(header: EnvelopeHeader, body: bytes) -> bytes:
    header_bytes = canonicalize_jcs_bytes(header.model_dump(mode="json"))
    return MAGIC + _LENGTH.pack(len(header_bytes)) + header_bytes + body


def decode_envelope(blob: bytes) -> tuple[EnvelopeHeader, bytes]:
    """Split a serialized ciphertext into its header and AEAD body.

    Raises ``EncryptionFailure`` for anything that is not a well-formed envelope.
    """
    prefix = len(MAGIC) + _LENGTH.size
    if len(blob) < prefix or not blob.startswith(MAGIC):
        raise EncryptionFailure("ciphertext is not a recognized envelope")
    (header_len,) = _LENGTH.unpack_from(blob, len(MAGIC))
    header_end = prefix + header_len
    if header_end > len(blob):
        raise EncryptionFailure("ciphertext envelope header is truncated")

    try:
        header = EnvelopeHeader.model_validate(json.loads(blob[prefix:header_end]))
    except (ValueError, ValidationError) as exc:
        raise EncryptionFailure("ciphertext envelope header is malformed") from exc

    if header.scheme != SCHEME:
        raise EncryptionFailure(f"unsupported encryption scheme {header.scheme!r}")
    if header.policy.policy_id != header.policy_id:
        raise EncryptionFailure("envelope policy does not match its policy id")

    body = blob[header_end:]
    if len(body) < AEAD_OVERHEAD:
        raise EncryptionFailure("ciphertext body is shorter than the AEAD overhead")
    return header, body
