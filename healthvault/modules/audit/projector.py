"""
Audit trail projection.

Audit events are never stored on their own: they are rebuilt on demand from
the ledger's event history, filtered to one record, and annotated with
severity and regulatory compliance flags.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from healthvault.core.logging import get_logger
from healthvault.modules.audit.schemas import (
    AuditEvent,
    AuditEventDetails,
    AuditEventType,
    AuditSummary,
    ChainVerificationResponse,
    ComplianceFlags,
    ComplianceReport,
    ReportPeriod,
    Severity,
)
from healthvault.modules.ledger.backend import LedgerBackend
from healthvault.modules.ledger.models import LedgerEvent, LedgerEventType

logger = get_logger(__name__)

_EVENT_TYPES: dict[LedgerEventType, AuditEventType] = {
    LedgerEventType.ACCESS_REQUESTED: AuditEventType.ACCESS_REQUEST,
    LedgerEventType.ACCESS_GRANTED: AuditEventType.ACCESS_GRANTED,
    LedgerEventType.ACCESS_DENIED: AuditEventType.ACCESS_DENIED,
    LedgerEventType.DATA_UPLOADED: AuditEventType.DATA_UPLOAD,
    LedgerEventType.EMERGENCY_ACCESS: AuditEventType.EMERGENCY_ACCESS,
    LedgerEventType.ACCESS_REVOKED: AuditEventType.ACCESS_REVOKED,
    LedgerEventType.DATA_VIEWED: AuditEventType.DATA_VIEWED,
}

_REVOCABLE = frozenset({AuditEventType.ACCESS_GRANTED, AuditEventType.EMERGENCY_ACCESS})


def compliance_for(event_type: AuditEventType, fields: dict[str, Any]) -> ComplianceFlags:
    """Emergency access is only compliant when justified and MasterKey-backed."""
    if event_type is AuditEventType.EMERGENCY_ACCESS:
        justified = bool(fields.get("emergency_reason"))
        return ComplianceFlags(
            gdpr=justified,
            kvkk=bool(fields.get("master_key_used")),
            hipaa=justified,
        )
    return ComplianceFlags()


def severity_for(event_type: AuditEventType) -> Severity:
    if event_type is AuditEventType.EMERGENCY_ACCESS:
        return Severity.CRITICAL
    if event_type is AuditEventType.ACCESS_REVOKED:
        return Severity.HIGH
    if event_type is AuditEventType.DATA_UPLOAD:
        return Severity.MEDIUM
    return Severity.LOW


def describe(event_type: AuditEventType, fields: dict[str, Any]) -> str:
    level = fields.get("access_level") or 1
    if event_type is AuditEventType.ACCESS_REQUEST:
        return f"Requested access to health records (Level {level})"
    if event_type is AuditEventType.ACCESS_GRANTED:
        return f"Granted access to health records (Level {level})"
    if event_type is AuditEventType.ACCESS_DENIED:
        return "Denied access to health records"
    if event_type is AuditEventType.DATA_UPLOAD:
        return f"Uploaded {fields.get('data_type') or 'health data'} to the ledger"
    if event_type is AuditEventType.EMERGENCY_ACCESS:
        return "Emergency access granted using MasterKey"
    if event_type is AuditEventType.ACCESS_REVOKED:
        return "Revoked access to health records"
    return "Authorized a view of health record data"


def compliance_score(events: list[AuditEvent]) -> int:
    """Percentage of events with every regulatory flag set; 100 when empty."""
    if not events:
        return 100
    compliant = sum(1 for event in events if event.compliance.is_compliant)
    return round(100 * compliant / len(events))


def _as_utc(moment: datetime) -> datetime:
    return moment.replace(tzinfo=UTC) if moment.tzinfo is None else moment


def _flag_percentage(events: list[AuditEvent], flag: str) -> int:
    if not events:
        return 100
    satisfied = sum(1 for event in events if getattr(event.compliance, flag))
    return round(100 * satisfied / len(events))


class AuditTrailProjector:
    def __init__(
        self,
        ledger: LedgerBackend,
        *,
        default_limit: int = 100,
        summary_limit: int = 1000,
        report_limit: int = 10000,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._ledger = ledger
        self._default_limit = default_limit
        self._summary_limit = summary_limit
        self._report_limit = report_limit
        self._clock = clock or (lambda: datetime.now(UTC))

    async def events(self, record_id: str, limit: int | None = None) -> list[AuditEvent]:
        """Audit events for ``record_id``, newest first."""
        limit = limit or self._default_limit
        collected: list[LedgerEvent] = []
        for ledger_type in _EVENT_TYPES:
            collected.extend(
                await self._ledger.query_events(
                    ledger_type, record_id=record_id, limit=limit, descending=True
                )
            )

        collected.sort(key=lambda e: (e.timestamp, e.chain_sequence or 0), reverse=True)
        projected = [self.project(event) for event in collected[:limit]]
        logger.debug("audit_events_projected", record_id=record_id, count=len(projected))
        return projected

    @staticmethod
    def project(event: LedgerEvent) -> AuditEvent:
        event_type = _EVENT_TYPES[event.event_type]
        fields = event.fields
        return AuditEvent(
            id=event.id,
            timestamp=event.timestamp,
            event_type=event_type,
            actor=str(fields.get("actor") or event.sender),
            target=str(fields.get("target") or "unknown"),
            action=describe(event_type, fields),
            details=AuditEventDetails(
                reason=fields.get("reason"),
                access_level=fields.get("access_level"),
                data_type=fields.get("data_type"),
                blob_id=fields.get("blob_id"),
                transaction_digest=event.tx_digest,
                emergency_reason=fields.get("emergency_reason"),
                master_key_used=fields.get("master_key_used"),
            ),
            compliance=compliance_for(event_type, fields),
            severity=severity_for(event_type),
            is_emergency=event_type is AuditEventType.EMERGENCY_ACCESS,
            is_revocable=event_type in _REVOCABLE,
        )

    async def summary(self, record_id: str) -> AuditSummary:
        events = await self.events(record_id, self._summary_limit)
        return AuditSummary(
            record_id=record_id,
            total_events=len(events),
            emergency_events=sum(1 for e in events if e.is_emergency),
            access_requests=sum(1 for e in events if e.event_type is AuditEventType.ACCESS_REQUEST),
            data_access=sum(1 for e in events if e.event_type is AuditEventType.DATA_VIEWED),
            compliance_score=compliance_score(events),
            last_updated=self._clock(),
            critical_alerts=sum(1 for e in events if e.severity is Severity.CRITICAL),
        )

    async def report(self, record_id: str, start: datetime, end: datetime) -> ComplianceReport:
        """Compliance report over events with ``start <= timestamp <= end``."""
        start, end = _as_utc(start), _as_utc(end)
        if start > end:
            raise ValueError("report start must not be after its end")
        events = [
            e
            for e in await self.events(record_id, self._report_limit)
            if start <= e.timestamp <= end
        ]

        def count(event_type: AuditEventType) -> int:
            return sum(1 for e in events if e.event_type is event_type)

        report = ComplianceReport(
            record_id=record_id,
            period=ReportPeriod(start=start, end=end),
            total_events=len(events),
            emergency_access=sum(1 for e in events if e.is_emergency),
            regular_access=count(AuditEventType.ACCESS_GRANTED),
            data_uploads=count(AuditEventType.DATA_UPLOAD),
            access_revocations=count(AuditEventType.ACCESS_REVOKED),
            compliance_violations=sum(1 for e in events if not e.compliance.is_compliant),
            gdpr_compliance=_flag_percentage(events, "gdpr"),
            kvkk_compliance=_flag_percentage(events, "kvkk"),
            hipaa_compliance=_flag_percentage(events, "hipaa"),
        )
        logger.info(
            "compliance_report_generated",
            record_id=record_id,
            total_events=report.total_events,
            violations=report.compliance_violations,
        )
        return report

    async def verify_chain(self) -> ChainVerificationResponse:
        result = await self._ledger.verify_chain()
        if not result.is_valid:
            logger.error(
                "ledger_chain_broken",
                first_break_at=result.first_break_at,
                errors=result.errors,
            )
        return ChainVerificationResponse(
            is_valid=result.is_valid,
            verified_count=result.verified_count,
            first_break_at=result.first_break_at,
            errors=result.errors,
        )
