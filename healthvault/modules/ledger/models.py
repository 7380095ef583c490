"""
Ledger object, transaction and event models.

These mirror the on-ledger record object that owns a patient's reference
list and authorization state. They are pydantic models so the same types
serve the in-memory contract emulation and the JSON-RPC wire format.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum, IntEnum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from healthvault.core.crypto.canonicalization import canonicalize_jcs_bytes, sha256_hex_jcs
from healthvault.core.security.identity import CapabilityKind
from healthvault.modules.blobstore.models import BlobReference


def new_object_id() -> str:
    return f"0x{uuid4().hex}"


class AccessLevel(IntEnum):
    READ_ONLY = 1
    READ_APPEND = 2


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


class GrantKind(str, Enum):
    """Why a requester is allowed to decrypt a record."""

    OWNER = "owner"
    PERMISSION = "permission"
    EMERGENCY = "emergency"


class LedgerRecordUpdate(BaseModel):
    """One append-only entry in a record's reference list."""

    record_id: str
    blob_ref: BlobReference
    checksum: str
    record_type: str
    timestamp: datetime
    tx_digest: str


class AccessRequest(BaseModel):
    id: str
    requester: str
    subject_record_id: str
    reason: str
    access_level: AccessLevel
    created_at: datetime
    status: RequestStatus = RequestStatus.PENDING
    decided_at: datetime | None = None

    def status_at(self, now: datetime, ttl: timedelta) -> RequestStatus:
        """Effective status; a pending request past its window reads as expired."""
        if self.status is RequestStatus.PENDING and now > self.created_at + ttl:
            return RequestStatus.EXPIRED
        return self.status


class Permission(BaseModel):
    id: str
    subject_record_id: str
    grantee: str
    access_level: AccessLevel
    granted_at: datetime
    expires_at: datetime
    is_active: bool = True
    revoked_at: datetime | None = None
    request_id: str | None = None

    def is_valid_at(self, now: datetime) -> bool:
        return self.is_active and now <= self.expires_at


class EmergencyAccess(BaseModel):
    id: str
    grantee: str
    subject_record_id: str
    reason: str
    timestamp: datetime
    master_key_used: Literal[True] = True
    is_active: bool = True
    revoked_at: datetime | None = None


class RecordState(BaseModel):
    """Ledger record object: reference list plus authorization state."""

    record_id: str
    owner: str
    policy_id: str
    version: int = 1
    created_at: datetime
    references: list[LedgerRecordUpdate] = Field(default_factory=list)
    access_requests: dict[str, AccessRequest] = Field(default_factory=dict)
    permissions: dict[str, Permission] = Field(default_factory=dict)
    emergency_accesses: dict[str, EmergencyAccess] = Field(default_factory=dict)

    @property
    def latest_reference(self) -> LedgerRecordUpdate | None:
        return self.references[-1] if self.references else None

    def reference_for(self, blob_id: str) -> LedgerRecordUpdate | None:
        for update in reversed(self.references):
            if update.blob_ref.blob_id == blob_id:
                return update
        return None

    def active_permissions(self, now: datetime) -> list[Permission]:
        return [p for p in self.permissions.values() if p.is_valid_at(now)]


class Account(BaseModel):
    identity: str
    public_key_pem: str
    capabilities: set[CapabilityKind] = Field(default_factory=set)


class Transaction(BaseModel):
    """Unsigned call into the health-record contract."""

    sender: str
    function: str
    object_id: str | None = None
    object_version: int | None = None
    arguments: dict[str, Any] = Field(default_factory=dict)
    nonce: str = Field(default_factory=lambda: uuid4().hex)

    def signing_bytes(self) -> bytes:
        return canonicalize_jcs_bytes(self.model_dump(mode="json"))


class SignedTransaction(BaseModel):
    transaction: Transaction
    signature: str

    @property
    def digest(self) -> str:
        return sha256_hex_jcs(self.model_dump(mode="json"))


class LedgerEventType(str, Enum):
    RECORD_CREATED = "RecordCreated"
    DATA_UPLOADED = "DataUploaded"
    ACCESS_REQUESTED = "AccessRequested"
    ACCESS_GRANTED = "AccessGranted"
    ACCESS_DENIED = "AccessDenied"
    EMERGENCY_ACCESS = "EmergencyAccess"
    ACCESS_REVOKED = "AccessRevoked"
    DATA_VIEWED = "DataViewed"


class LedgerEvent(BaseModel):
    """Event emitted by a committed transaction, chained for tamper evidence."""

    id: str
    tx_digest: str
    event_type: LedgerEventType
    timestamp: datetime
    sender: str
    fields: dict[str, Any] = Field(default_factory=dict)
    event_hash: str | None = None
    prev_event_hash: str | None = None
    chain_sequence: int | None = None

    def hashable_data(self) -> dict[str, Any]:
        return self.model_dump(
            mode="json",
            exclude={"event_hash", "prev_event_hash", "chain_sequence"},
        )


class TxReceipt(BaseModel):
    tx_digest: str
    object_id: str | None = None
    object_version: int | None = None
    events: list[LedgerEvent] = Field(default_factory=list)
    effects: dict[str, Any] = Field(default_factory=dict)
