"""Blob store value types."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class BlobReference(BaseModel):
    """Opaque, immutable handle to a stored blob."""

    model_config = ConfigDict(frozen=True)

    blob_id: str = Field(min_length=1)
    size: int = Field(ge=0)
    uploaded_at: datetime


class BlobMetadata(BaseModel):
    """Descriptive metadata attached to an upload; never contains plaintext."""

    content_type: str = "application/octet-stream"
    encryption_scheme: str | None = None
    policy_id: str | None = None
    patient_address: str | None = None
    report_id: str | None = None
    compliance_tags: list[str] = Field(default_factory=list)
    retention: str | None = None
    sha256: str | None = None
