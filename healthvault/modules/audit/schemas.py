"""Pydantic schemas for the derived audit trail."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    ACCESS_REQUEST = "access_request"
    ACCESS_GRANTED = "access_granted"
    ACCESS_DENIED = "access_denied"
    DATA_UPLOAD = "data_upload"
    EMERGENCY_ACCESS = "emergency_access"
    ACCESS_REVOKED = "access_revoked"
    DATA_VIEWED = "data_viewed"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ComplianceFlags(BaseModel):
    gdpr: bool = True
    kvkk: bool = True
    hipaa: bool = True
    audit_trail: bool = True

    @property
    def is_compliant(self) -> bool:
        return self.gdpr and self.kvkk and self.hipaa


class AuditEventDetails(BaseModel):
    reason: str | None = None
    access_level: int | None = None
    data_type: str | None = None
    blob_id: str | None = None
    transaction_digest: str | None = None
    emergency_reason: str | None = None
    master_key_used: bool | None = None


class AuditEvent(BaseModel):
    """Read-only projection of one ledger event; never persisted on its own."""

    id: str
    timestamp: datetime
    event_type: AuditEventType
    actor: str
    target: str
    action: str
    details: AuditEventDetails
    compliance: ComplianceFlags
    severity: Severity
    is_emergency: bool
    is_revocable: bool


class AuditSummary(BaseModel):
    record_id: str
    total_events: int
    emergency_events: int
    access_requests: int
    data_access: int
    compliance_score: int = Field(ge=0, le=100)
    last_updated: datetime
    critical_alerts: int


class ReportPeriod(BaseModel):
    start: datetime
    end: datetime


class ComplianceReport(BaseModel):
    record_id: str
    period: ReportPeriod
    total_events: int
    emergency_access: int
    regular_access: int
    data_uploads: int
    access_revocations: int
    compliance_violations: int
    gdpr_compliance: int = Field(ge=0, le=100)
    kvkk_compliance: int = Field(ge=0, le=100)
    hipaa_compliance: int = Field(ge=0, le=100)


class ChainVerificationResponse(BaseModel):
    """Result of verifying the ledger event hash chain."""

    is_valid: bool
    verified_count: int
    first_break_at: int | None = None
    errors: list[str]
