"""Tests for the audit trail projection, summary and compliance report."""

from __future__ import annotations

from datetime import timedelta

import pytest

from healthvault.core.errors import PermissionDenied
from healthvault.modules.audit.projector import compliance_for, compliance_score, severity_for
from healthvault.modules.audit.schemas import AuditEventType, ComplianceFlags, Severity


async def _activity(  # type: ignore[no-untyped-def]
    pipeline, patient_ctx, doctor_ctx, emergency_ctx, make_payload, clock
):
    """Upload, request, grant, an unjustified emergency access and one view, an hour apart."""
    processed = await pipeline.process_record(make_payload(), patient_ctx.identity, doctor_ctx)
    clock.advance(hours=1)
    request = await pipeline.request_access(doctor_ctx, processed.record_id, "consult")
    clock.advance(hours=1)
    await pipeline.grant_access(patient_ctx, request.id)
    clock.advance(hours=1)
    await pipeline.emergency_access(emergency_ctx, request.subject_record_id, "")
    clock.advance(hours=1)
    await pipeline.retrieve_record(request.subject_record_id, doctor_ctx)
    return request.subject_record_id


class TestProjection:
    """Ledger events become audit events with severity and compliance flags."""

    def test_emergency_without_reason_is_not_compliant(self) -> None:
        flags = compliance_for(
            AuditEventType.EMERGENCY_ACCESS, {"emergency_reason": "", "master_key_used": True}
        )
        assert flags == ComplianceFlags(gdpr=False, kvkk=True, hipaa=False)
        assert not flags.is_compliant

    def test_justified_emergency_is_compliant(self) -> None:
        flags = compliance_for(
            AuditEventType.EMERGENCY_ACCESS,
            {"emergency_reason": "cardiac arrest", "master_key_used": True},
        )
        assert flags.is_compliant

    def test_severity(self) -> None:
        assert severity_for(AuditEventType.EMERGENCY_ACCESS) is Severity.CRITICAL
        assert severity_for(AuditEventType.ACCESS_REVOKED) is Severity.HIGH
        assert severity_for(AuditEventType.DATA_UPLOAD) is Severity.MEDIUM
        assert severity_for(AuditEventType.ACCESS_REQUEST) is Severity.LOW

    def test_empty_score_is_full(self) -> None:
        assert compliance_score([]) == 100

    @pytest.mark.asyncio
    async def test_events_newest_first(
        self, pipeline, patient_ctx, doctor_ctx, emergency_ctx, make_payload, clock
    ) -> None:
        await pipeline.create_record(patient_ctx)
        record_id = await _activity(
            pipeline, patient_ctx, doctor_ctx, emergency_ctx, make_payload, clock
        )

        events = await pipeline.audit_trail(record_id)

        assert [e.event_type for e in events] == [
            AuditEventType.DATA_VIEWED,
            AuditEventType.EMERGENCY_ACCESS,
            AuditEventType.ACCESS_GRANTED,
            AuditEventType.ACCESS_REQUEST,
            AuditEventType.DATA_UPLOAD,
        ]
        emergency = events[1]
        assert emergency.is_emergency and emergency.is_revocable
        assert emergency.details.master_key_used is True
        assert emergency.actor == emergency_ctx.identity
        assert emergency.target == patient_ctx.identity
        assert events[4].details.data_type == "lab"
        assert events[4].action == "Uploaded lab to the ledger"
        assert events[3].action == "Requested access to health records (Level 1)"

    @pytest.mark.asyncio
    async def test_limit_and_record_filter(
        self, pipeline, patient_ctx, doctor_ctx, emergency_ctx, make_payload, clock
    ) -> None:
        await pipeline.create_record(patient_ctx)
        record_id = await _activity(
            pipeline, patient_ctx, doctor_ctx, emergency_ctx, make_payload, clock
        )
        other = await pipeline.create_record(doctor_ctx)

        assert len(await pipeline.audit_trail(record_id, 2)) == 2
        assert await pipeline.audit_trail(other.record_id) == []

    @pytest.mark.asyncio
    async def test_newer_events_on_other_records_do_not_crowd_out_the_trail(
        self, pipeline, patient_ctx, doctor_ctx, unauthorized_ctx, make_payload, clock
    ) -> None:
        record = await pipeline.create_record(patient_ctx)
        other = await pipeline.create_record(unauthorized_ctx)
        await pipeline.process_record(make_payload(), patient_ctx.identity, doctor_ctx)
        for n in range(3):
            clock.advance(minutes=1)
            await pipeline.process_record(
                make_payload(report_id=f"other-{n}"), unauthorized_ctx.identity, doctor_ctx
            )

        trail = await pipeline.audit_trail(record.record_id, 2)
        summary = await pipeline.audit_summary(record.record_id)

        assert [e.event_type for e in trail] == [AuditEventType.DATA_UPLOAD]
        assert summary.total_events == 1
        assert len(await pipeline.audit_trail(other.record_id, 2)) == 2


class TestSummaryAndReport:
    """Aggregates over the projected trail."""

    @pytest.mark.asyncio
    async def test_summary(
        self, pipeline, patient_ctx, doctor_ctx, emergency_ctx, make_payload, clock
    ) -> None:
        await pipeline.create_record(patient_ctx)
        record_id = await _activity(
            pipeline, patient_ctx, doctor_ctx, emergency_ctx, make_payload, clock
        )

        summary = await pipeline.audit_summary(record_id)

        assert summary.total_events == 5
        assert summary.emergency_events == 1
        assert summary.critical_alerts == 1
        assert summary.access_requests == 1
        assert summary.data_access == 1
        assert summary.compliance_score == 80

    @pytest.mark.asyncio
    async def test_summary_for_quiet_record(self, pipeline, patient_record) -> None:
        summary = await pipeline.audit_summary(patient_record.record_id)

        assert summary.total_events == 0
        assert summary.compliance_score == 100

    @pytest.mark.asyncio
    async def test_report_window_is_inclusive(
        self, pipeline, patient_ctx, doctor_ctx, emergency_ctx, make_payload, clock
    ) -> None:
        start = clock()
        await pipeline.create_record(patient_ctx)
        record_id = await _activity(
            pipeline, patient_ctx, doctor_ctx, emergency_ctx, make_payload, clock
        )

        everything = await pipeline.compliance_report(record_id, start, clock())
        # the request and the grant sit exactly on the bounds
        middle = await pipeline.compliance_report(
            record_id, start + timedelta(hours=1), start + timedelta(hours=2)
        )

        assert everything.total_events == 5
        assert everything.data_uploads == 1
        assert everything.regular_access == 1
        assert everything.emergency_access == 1
        assert everything.compliance_violations == 1
        assert everything.gdpr_compliance == 80
        assert everything.kvkk_compliance == 100
        assert everything.hipaa_compliance == 80
        assert middle.total_events == 2
        assert middle.compliance_violations == 0

    @pytest.mark.asyncio
    async def test_empty_window_is_fully_compliant(self, pipeline, patient_record, clock) -> None:
        report = await pipeline.compliance_report(
            patient_record.record_id, clock() + timedelta(days=1), clock() + timedelta(days=2)
        )

        assert report.total_events == 0
        assert report.gdpr_compliance == report.kvkk_compliance == report.hipaa_compliance == 100

    @pytest.mark.asyncio
    async def test_reversed_window_is_rejected(self, pipeline, patient_record, clock) -> None:
        with pytest.raises(ValueError, match="start"):
            await pipeline.compliance_report(
                patient_record.record_id, clock(), clock() - timedelta(seconds=1)
            )

    @pytest.mark.asyncio
    async def test_naive_bounds_are_treated_as_utc(
        self, pipeline, patient_ctx, doctor_ctx, make_payload, clock
    ) -> None:
        record = await pipeline.create_record(patient_ctx)
        await pipeline.process_record(make_payload(), patient_ctx.identity, doctor_ctx)
        naive = clock().replace(tzinfo=None)

        report = await pipeline.compliance_report(record.record_id, naive, naive)

        assert report.total_events == 1
        assert report.period.start.tzinfo is not None

    @pytest.mark.asyncio
    async def test_denied_attempt_is_audited(
        self, pipeline, patient_ctx, doctor_ctx, unauthorized_ctx, make_payload
    ) -> None:
        record = await pipeline.create_record(patient_ctx)
        await pipeline.process_record(make_payload(), patient_ctx.identity, doctor_ctx)

        with pytest.raises(PermissionDenied):
            await pipeline.retrieve_record(record.record_id, unauthorized_ctx)

        latest = (await pipeline.audit_trail(record.record_id))[0]
        assert latest.event_type is AuditEventType.ACCESS_DENIED
        assert latest.actor == unauthorized_ctx.identity
        assert latest.severity is Severity.LOW
        assert latest.action == "Denied access to health records"


class TestChainVerification:
    @pytest.mark.asyncio
    async def test_intact_then_tampered(
        self, pipeline, ledger, patient_ctx, doctor_ctx, make_payload
    ) -> None:
        await pipeline.create_record(patient_ctx)
        await pipeline.process_record(make_payload(), patient_ctx.identity, doctor_ctx)

        intact = await pipeline.projector.verify_chain()
        ledger._events[1].fields["checksum"] = "0" * 64
        broken = await pipeline.projector.verify_chain()

        assert intact.is_valid
        assert intact.verified_count == 2
        assert not broken.is_valid
        assert broken.first_break_at == 1
