"""
Ed25519 signing for ledger transactions and access proofs.

Uses the ``cryptography`` library. Signatures are base64 strings so they can
travel inside JSON transaction envelopes.
"""

from __future__ import annotations

import base64
import binascii

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_pem_private_key,
    load_pem_public_key,
)


def generate_signing_keypair() -> tuple[str, str]:
    """Generate a new Ed25519 key pair.

    Returns
    -------
    tuple[str, str]
        ``(private_key_pem, public_key_pem)`` as PEM-encoded strings.
    """
    private_key = Ed25519PrivateKey.generate()
    private_pem = private_key.private_bytes(
        encoding=Encoding.PEM,
        format=PrivateFormat.PKCS8,
        encryption_algorithm=NoEncryption(),
    ).decode("utf-8")
    public_pem = private_key.public_key().public_bytes(
        encoding=Encoding.PEM,
        format=PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")
    return private_pem, public_pem


def load_private_key(private_key_pem: str) -> Ed25519PrivateKey:
    private_key = load_pem_private_key(private_key_pem.encode("utf-8"), password=None)
    if not isinstance(private_key, Ed25519PrivateKey):
        raise TypeError("Expected an Ed25519 private key")
    return private_key


def sign_message(message: bytes, private_key: Ed25519PrivateKey) -> str:
    """Sign ``message`` and return the base64-encoded signature."""
    return base64.b64encode(private_key.sign(message)).decode("utf-8")


def verify_message(message: bytes, signature: str, public_key_pem: str) -> bool:
    """Verify a base64 Ed25519 signature over ``message``.

    Malformed signatures or keys count as invalid rather than raising, since
    callers treat any failure as an authorization denial.
    """
    try:
        public_key = load_pem_public_key(public_key_pem.encode("utf-8"))
    except ValueError:
        return False
    if not isinstance(public_key, Ed25519PublicKey):
        return False
    try:
        raw_signature = base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError):
        return False
    try:
        public_key.verify(raw_signature, message)
        return True
    except InvalidSignature:
        return False
