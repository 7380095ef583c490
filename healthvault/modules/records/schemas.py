"""Health record payload schema and pipeline result types."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from healthvault.modules.blobstore.models import BlobReference


class Attachment(BaseModel):
    name: str
    type: str
    size: int = Field(ge=0)
    data: str  # base64


class RecordMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    author: str
    department: str
    urgency: Literal["low", "medium", "high", "critical"] = "low"


class HealthRecordPayload(BaseModel):
    """Structured record authored by a doctor or lab; immutable once encrypted."""

    model_config = ConfigDict(extra="allow")

    report_id: str
    report_type: Literal["lab", "imaging", "consultation", "prescription", "other"] = "other"
    title: str
    description: str = ""
    findings: str = ""
    recommendations: str = ""
    attachments: list[Attachment] = Field(default_factory=list)
    metadata: RecordMetadata
    created_at: datetime | None = None

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> HealthRecordPayload:
        return cls.model_validate_json(data)


class ProcessedRecord(BaseModel):
    """Result of the write path: where the ciphertext lives and which tx recorded it."""

    record_id: str
    blob_ref: BlobReference
    checksum: str
    policy_id: str
    tx_digest: str
    ciphertext_size: int
    plaintext_size: int


class RetrievedRecord(BaseModel):
    record_id: str
    blob_id: str
    payload: dict[str, Any]
    tx_digest: str
