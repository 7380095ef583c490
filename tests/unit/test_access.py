"""Tests for the access-control state machine and its shared rules."""

from __future__ import annotations

from datetime import timedelta

import pytest

from healthvault.core.errors import InvalidState, PermissionDenied, RecordNotFound
from healthvault.core.security.identity import CapabilityKind, SignerContext
from healthvault.modules.access import rules
from healthvault.modules.ledger.models import (
    AccessLevel,
    GrantKind,
    LedgerEventType,
    RequestStatus,
)


class TestRequests:
    """Request, approve and deny transitions."""

    @pytest.mark.asyncio
    async def test_request_is_pending(
        self, pipeline, doctor_ctx, patient_ctx, patient_record
    ) -> None:
        request = await pipeline.request_access(
            doctor_ctx, patient_record.record_id, "second opinion", AccessLevel.READ_APPEND
        )

        assert request.status is RequestStatus.PENDING
        assert request.requester == doctor_ctx.identity
        assert request.access_level is AccessLevel.READ_APPEND
        pending = await pipeline.access.pending_requests(patient_ctx)
        assert [r.id for r in pending] == [request.id]

    @pytest.mark.asyncio
    async def test_self_request_is_rejected(self, pipeline, patient_ctx, patient_record) -> None:
        with pytest.raises(PermissionDenied, match="own record"):
            await pipeline.request_access(patient_ctx, patient_record.record_id, "curious")

    @pytest.mark.asyncio
    async def test_request_for_unknown_record(self, pipeline, doctor_ctx) -> None:
        with pytest.raises(RecordNotFound):
            await pipeline.request_access(doctor_ctx, "no-such-record", "reason")

    @pytest.mark.asyncio
    async def test_request_transitions_only_once(
        self, pipeline, doctor_ctx, patient_ctx, patient_record
    ) -> None:
        request = await pipeline.request_access(doctor_ctx, patient_record.record_id, "consult")
        await pipeline.grant_access(patient_ctx, request.id)

        with pytest.raises(InvalidState, match="already approved"):
            await pipeline.grant_access(patient_ctx, request.id)
        with pytest.raises(InvalidState, match="already approved"):
            await pipeline.deny_access(patient_ctx, request.id)

        record = await pipeline.registrar.read_record(patient_record.record_id)
        assert len(record.permissions) == 1

    @pytest.mark.asyncio
    async def test_denied_request_cannot_be_approved(
        self, pipeline, doctor_ctx, patient_ctx, patient_record
    ) -> None:
        request = await pipeline.request_access(doctor_ctx, patient_record.record_id, "consult")

        denied = await pipeline.deny_access(patient_ctx, request.id, "not needed")

        assert denied.status is RequestStatus.DENIED
        assert denied.decided_at is not None
        with pytest.raises(InvalidState, match="already denied"):
            await pipeline.grant_access(patient_ctx, request.id)

    @pytest.mark.asyncio
    async def test_only_owner_may_approve(
        self, pipeline, doctor_ctx, emergency_ctx, patient_record
    ) -> None:
        request = await pipeline.request_access(doctor_ctx, patient_record.record_id, "consult")

        # emergency_ctx owns no record, so the lookup of "their" request fails
        with pytest.raises(RecordNotFound):
            await pipeline.grant_access(emergency_ctx, request.id)

    @pytest.mark.asyncio
    async def test_contract_rejects_approval_by_non_owner(
        self, pipeline, doctor_ctx, patient_record
    ) -> None:
        request = await pipeline.request_access(doctor_ctx, patient_record.record_id, "consult")

        with pytest.raises(PermissionDenied, match="owner"):
            await pipeline.registrar.call(
                "approve_access",
                {"request_id": request.id},
                doctor_ctx,
                record_id=patient_record.record_id,
            )

    @pytest.mark.asyncio
    async def test_expired_request_cannot_be_approved(
        self, pipeline, doctor_ctx, patient_ctx, patient_record, clock
    ) -> None:
        request = await pipeline.request_access(doctor_ctx, patient_record.record_id, "consult")
        clock.advance(days=7, seconds=1)

        assert await pipeline.access.pending_requests(patient_ctx) == []
        with pytest.raises(InvalidState, match="expired"):
            await pipeline.grant_access(patient_ctx, request.id)

    @pytest.mark.asyncio
    async def test_approval_refreshes_existing_permission(
        self, pipeline, doctor_ctx, patient_ctx, patient_record, clock
    ) -> None:
        first = await pipeline.request_access(doctor_ctx, patient_record.record_id, "consult")
        original = await pipeline.grant_access(patient_ctx, first.id)
        clock.advance(days=3)
        second = await pipeline.request_access(
            doctor_ctx, patient_record.record_id, "surgery", AccessLevel.READ_APPEND
        )

        refreshed = await pipeline.grant_access(patient_ctx, second.id)

        assert refreshed.id == original.id
        assert refreshed.access_level is AccessLevel.READ_APPEND
        assert refreshed.expires_at == clock() + timedelta(days=7)


class TestGrants:
    """Emergency access, revocation and authorization."""

    @pytest.mark.asyncio
    async def test_emergency_requires_master_key(
        self, pipeline, ledger, doctor_ctx, patient_record
    ) -> None:
        with pytest.raises(PermissionDenied, match="MasterKey"):
            await pipeline.emergency_access(doctor_ctx, patient_record.record_id, "trauma")

        denials = await ledger.query_events(LedgerEventType.ACCESS_DENIED)
        assert len(denials) == 1
        assert denials[0].fields["actor"] == doctor_ctx.identity
        assert "MasterKey" in denials[0].fields["reason"]
        assert await ledger.query_events(LedgerEventType.EMERGENCY_ACCESS) == []

    @pytest.mark.asyncio
    async def test_claimed_master_key_is_checked_on_ledger(
        self, pipeline, ledger, doctor_ctx, patient_record
    ) -> None:
        pretender = SignerContext.of(doctor_ctx.signer, {CapabilityKind.MASTER_KEY})

        with pytest.raises(PermissionDenied, match="MasterKey"):
            await pipeline.emergency_access(pretender, patient_record.record_id, "trauma")

        denials = await ledger.query_events(LedgerEventType.ACCESS_DENIED)
        assert [d.fields["actor"] for d in denials] == [doctor_ctx.identity]

    @pytest.mark.asyncio
    async def test_emergency_self_access_is_rejected(
        self, pipeline, ledger, emergency_ctx
    ) -> None:
        record = await pipeline.create_record(emergency_ctx)

        with pytest.raises(PermissionDenied, match="own record"):
            await pipeline.emergency_access(emergency_ctx, record.record_id, "self")

        denials = await ledger.query_events(
            LedgerEventType.ACCESS_DENIED, record_id=record.record_id
        )
        assert len(denials) == 1

    @pytest.mark.asyncio
    async def test_emergency_grant(self, pipeline, emergency_ctx, patient_record) -> None:
        grant = await pipeline.emergency_access(
            emergency_ctx, patient_record.record_id, "cardiac arrest"
        )

        assert grant.is_active
        assert grant.master_key_used is True
        assert grant.grantee == emergency_ctx.identity

    @pytest.mark.asyncio
    async def test_revocation_is_final(
        self, pipeline, doctor_ctx, patient_ctx, patient_record
    ) -> None:
        request = await pipeline.request_access(doctor_ctx, patient_record.record_id, "consult")
        permission = await pipeline.grant_access(patient_ctx, request.id)

        revoked = await pipeline.revoke_access(patient_ctx, permission.id)

        assert not revoked.is_active
        assert revoked.revoked_at is not None
        with pytest.raises(InvalidState, match="already revoked"):
            await pipeline.revoke_access(patient_ctx, permission.id)

    @pytest.mark.asyncio
    async def test_revoke_unknown_grant(self, pipeline, patient_ctx, patient_record) -> None:
        with pytest.raises(InvalidState, match="does not exist"):
            await pipeline.revoke_access(patient_ctx, "no-such-grant")

    @pytest.mark.asyncio
    async def test_authorize_owner_and_grantee(
        self, pipeline, ledger, doctor_ctx, patient_ctx, patient_record
    ) -> None:
        owner_proof = await pipeline.access.authorize(patient_ctx, patient_record.record_id)
        assert owner_proof.grant_kind is GrantKind.OWNER

        request = await pipeline.request_access(doctor_ctx, patient_record.record_id, "consult")
        permission = await pipeline.grant_access(patient_ctx, request.id)
        proof = await pipeline.access.authorize(doctor_ctx, patient_record.record_id)

        assert proof.grant_kind is GrantKind.PERMISSION
        assert proof.grant_id == permission.id
        assert proof.subject == patient_ctx.identity
        viewed = await ledger.query_events(LedgerEventType.DATA_VIEWED)
        assert len(viewed) == 2

    @pytest.mark.asyncio
    async def test_authorize_failure_records_one_denial(
        self, pipeline, ledger, unauthorized_ctx, patient_record
    ) -> None:
        with pytest.raises(PermissionDenied):
            await pipeline.access.authorize(unauthorized_ctx, patient_record.record_id)

        denials = await ledger.query_events(LedgerEventType.ACCESS_DENIED)
        assert len(denials) == 1
        assert denials[0].fields["actor"] == unauthorized_ctx.identity


class TestRules:
    """Pure rule helpers shared by the contract and the state machine."""

    @pytest.mark.asyncio
    async def test_append_rights(
        self, doctor_ctx, patient_ctx, unauthorized_ctx, patient_record, clock
    ) -> None:
        record = patient_record
        now = clock()

        rules.ensure_can_append(record, patient_ctx.identity, frozenset(), now)
        rules.ensure_can_append(record, doctor_ctx.identity, doctor_ctx.capabilities, now)
        with pytest.raises(PermissionDenied):
            rules.ensure_can_append(record, unauthorized_ctx.identity, frozenset(), now)

    @pytest.mark.asyncio
    async def test_read_append_grant_allows_append(
        self, pipeline, unauthorized_ctx, patient_ctx, patient_record, clock
    ) -> None:
        request = await pipeline.request_access(
            unauthorized_ctx, patient_record.record_id, "family carer", AccessLevel.READ_APPEND
        )
        await pipeline.grant_access(patient_ctx, request.id)
        record = await pipeline.registrar.read_record(patient_record.record_id)

        rules.ensure_can_append(record, unauthorized_ctx.identity, frozenset(), clock())

    @pytest.mark.asyncio
    async def test_find_grant_for_stranger_is_none(self, patient_record, clock) -> None:
        assert rules.find_grant(patient_record, "0x5eed", clock()) is None
