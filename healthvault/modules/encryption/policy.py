"""
Encryption policy construction.

A policy is built fresh for every write from the patient identity, the
deployed contract address and the compliance tags. It is never edited after
creation; its identifier is the SHA-256 of its RFC 8785 canonical form, so
the same inputs always produce the same ``policy_id``.
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from healthvault.core.crypto.canonicalization import sha256_hex_jcs
from healthvault.core.errors import PolicyError

POLICY_VERSION = "1.0"
RETENTION_PERIOD = "7_years"

_IDENTITY_RE = re.compile(r"0x[0-9a-fA-F]{1,64}")


class PolicyRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    principal: str
    permissions: tuple[str, ...]
    conditions: dict[str, bool] = Field(default_factory=dict)
    description: str = ""


class EncryptionPolicy(BaseModel):
    """Identity-bound decryption policy embedded in every ciphertext envelope."""

    model_config = ConfigDict(frozen=True)

    version: str = POLICY_VERSION
    identity: str
    contract_address: str
    threshold: int
    rules: tuple[PolicyRule, ...]
    compliance_tags: tuple[str, ...]
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def policy_id(self) -> str:
        return sha256_hex_jcs(self.model_dump(mode="json"))


def validate_identity(identity: str) -> str:
    """Validate a ledger address used as an encryption identity."""
    if not isinstance(identity, str) or not _IDENTITY_RE.fullmatch(identity):
        raise PolicyError(f"malformed identity {identity!r}: expected 0x-prefixed hex address")
    return identity


def build_policy(
    identity: str,
    *,
    threshold: int,
    contract_address: str,
    compliance_tags: list[str] | tuple[str, ...],
) -> EncryptionPolicy:
    """Build the policy for a record owned by ``identity``.

    Raises
    ------
    PolicyError
        If ``threshold < 1`` or ``identity`` is not a well-formed address.
    """
    if threshold < 1:
        raise PolicyError(f"threshold must be at least 1, got {threshold}")
    patient = validate_identity(identity)
    tags = tuple(compliance_tags)

    rules = (
        PolicyRule(
            principal=patient,
            permissions=("decrypt", "read"),
            description="Patient can decrypt their own data",
        ),
        PolicyRule(
            principal=contract_address,
            permissions=("verify", "append", "read"),
            description="Record contract can verify and append data",
        ),
        PolicyRule(
            principal="permission_grantee",
            permissions=("decrypt", "read"),
            conditions={
                "hasPermission": True,
                "authorizedByPatient": True,
                "withinTimeLimit": True,
            },
            description="Grantees holding an active on-ledger permission",
        ),
        PolicyRule(
            principal="emergency_grantee",
            permissions=("decrypt", "read"),
            conditions={"hasMasterKey": True, "auditTrail": True},
            description="Emergency access holders, always audited",
        ),
    )

    return EncryptionPolicy(
        identity=patient,
        contract_address=contract_address,
        threshold=threshold,
        rules=rules,
        compliance_tags=tags,
        metadata={
            "purpose": "health_data_encryption",
            "compliance": list(tags),
            "retention": RETENTION_PERIOD,
            "keyDerivation": "patient-identity",
            "accessControl": "on-chain-verified",
        },
    )
