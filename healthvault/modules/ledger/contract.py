"""
Health-record contract functions.

Each function validates its preconditions against the record object and the
sender's on-ledger account, mutates a copy of the record, and returns the
events to emit. Backends apply the outcome atomically; a raised error aborts
the transaction with no state change.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from healthvault.core.errors import InvalidState, PermissionDenied
from healthvault.modules.access import rules
from healthvault.modules.blobstore.models import BlobReference
from healthvault.modules.ledger.models import (
    Account,
    AccessLevel,
    AccessRequest,
    EmergencyAccess,
    LedgerEventType,
    LedgerRecordUpdate,
    Permission,
    RecordState,
    RequestStatus,
    new_object_id,
)

_SHA256_HEX = re.compile(r"[0-9a-fA-F]{64}")


@dataclass
class CallContext:
    """Facts the contract may rely on: verified sender, ledger time, tx digest."""

    sender: Account
    now: datetime
    tx_digest: str


@dataclass
class ContractOutcome:
    record: RecordState
    events: list[tuple[LedgerEventType, dict[str, Any]]] = field(default_factory=list)
    effects: dict[str, Any] = field(default_factory=dict)

    def emit(self, event_type: LedgerEventType, **fields: Any) -> None:
        self.events.append((event_type, fields))


ContractFn = Callable[[CallContext, RecordState, dict[str, Any]], ContractOutcome]


class HealthRecordContract:
    """Deterministic transition functions for the record object."""

    CREATE_RECORD = "create_record"

    def __init__(self, *, request_ttl: timedelta, permission_ttl: timedelta) -> None:
        self.request_ttl = request_ttl
        self.permission_ttl = permission_ttl
        self._functions: dict[str, ContractFn] = {
            "append_encrypted_data": self.append_encrypted_data,
            "request_access": self.request_access,
            "approve_access": self.approve_access,
            "deny_access": self.deny_access,
            "revoke_access": self.revoke_access,
            "emergency_access": self.emergency_access,
            "log_access_denied": self.log_access_denied,
            "log_access_granted_view": self.log_access_granted_view,
        }

    def function_names(self) -> frozenset[str]:
        return frozenset(self._functions) | {self.CREATE_RECORD}

    def invoke(
        self,
        function: str,
        ctx: CallContext,
        record: RecordState,
        arguments: dict[str, Any],
    ) -> ContractOutcome:
        fn = self._functions.get(function)
        if fn is None:
            raise InvalidState(f"unknown contract function {function!r}")
        return fn(ctx, record.model_copy(deep=True), arguments)

    # ------------------------------------------------------------------
    # Record lifecycle
    # ------------------------------------------------------------------

    def create_record(self, ctx: CallContext, arguments: dict[str, Any]) -> ContractOutcome:
        record = RecordState(
            record_id=new_object_id(),
            owner=ctx.sender.identity,
            policy_id=str(arguments.get("policy_id", "")),
            created_at=ctx.now,
        )
        outcome = ContractOutcome(record=record, effects={"record_id": record.record_id})
        outcome.emit(
            LedgerEventType.RECORD_CREATED,
            record_id=record.record_id,
            actor=record.owner,
            target=record.owner,
        )
        return outcome

    def append_encrypted_data(
        self, ctx: CallContext, record: RecordState, arguments: dict[str, Any]
    ) -> ContractOutcome:
        actor = ctx.sender.identity
        rules.ensure_can_append(record, actor, ctx.sender.capabilities, ctx.now)
        blob_ref = BlobReference.model_validate(arguments["blob_ref"])
        checksum = str(arguments["checksum"])
        if not _SHA256_HEX.fullmatch(checksum):
            raise InvalidState("checksum must be a 64-character hex SHA-256 digest")
        record_type = str(arguments.get("record_type", "health_record"))
        if record.reference_for(blob_ref.blob_id) is not None:
            raise InvalidState(f"blob {blob_ref.blob_id} is already registered on this record")

        update = LedgerRecordUpdate(
            record_id=record.record_id,
            blob_ref=blob_ref,
            checksum=checksum,
            record_type=record_type,
            timestamp=ctx.now,
            tx_digest=ctx.tx_digest,
        )
        record.references.append(update)

        outcome = ContractOutcome(
            record=record, effects={"reference_index": len(record.references) - 1}
        )
        outcome.emit(
            LedgerEventType.DATA_UPLOADED,
            record_id=record.record_id,
            actor=actor,
            target=record.owner,
            blob_id=blob_ref.blob_id,
            data_type=record_type,
            checksum=checksum,
        )
        return outcome

    # ------------------------------------------------------------------
    # Access requests
    # ------------------------------------------------------------------

    def request_access(
        self, ctx: CallContext, record: RecordState, arguments: dict[str, Any]
    ) -> ContractOutcome:
        requester = ctx.sender.identity
        rules.ensure_not_self(record, requester)
        level = AccessLevel(int(arguments.get("access_level", AccessLevel.READ_ONLY)))
        request = AccessRequest(
            id=new_object_id(),
            requester=requester,
            subject_record_id=record.record_id,
            reason=str(arguments.get("reason", "")),
            access_level=level,
            created_at=ctx.now,
        )
        record.access_requests[request.id] = request

        outcome = ContractOutcome(record=record, effects={"request_id": request.id})
        outcome.emit(
            LedgerEventType.ACCESS_REQUESTED,
            record_id=record.record_id,
            actor=requester,
            target=record.owner,
            request_id=request.id,
            reason=request.reason,
            access_level=int(level),
        )
        return outcome

    def approve_access(
        self, ctx: CallContext, record: RecordState, arguments: dict[str, Any]
    ) -> ContractOutcome:
        rules.ensure_owner(record, ctx.sender.identity, "approve access requests")
        request = rules.find_request(record, str(arguments["request_id"]))
        rules.ensure_pending(request, ctx.now, self.request_ttl)

        request.status = RequestStatus.APPROVED
        request.decided_at = ctx.now
        expires_at = ctx.now + self.permission_ttl

        permission = rules.active_permission_for(record, request.requester)
        if permission is None:
            permission = Permission(
                id=new_object_id(),
                subject_record_id=record.record_id,
                grantee=request.requester,
                access_level=request.access_level,
                granted_at=ctx.now,
                expires_at=expires_at,
                request_id=request.id,
            )
            record.permissions[permission.id] = permission
        else:
            permission.access_level = request.access_level
            permission.granted_at = ctx.now
            permission.expires_at = expires_at
            permission.request_id = request.id

        outcome = ContractOutcome(record=record, effects={"permission_id": permission.id})
        outcome.emit(
            LedgerEventType.ACCESS_GRANTED,
            record_id=record.record_id,
            actor=record.owner,
            target=permission.grantee,
            request_id=request.id,
            permission_id=permission.id,
            access_level=int(permission.access_level),
            expires_at=permission.expires_at.isoformat(),
        )
        return outcome

    def deny_access(
        self, ctx: CallContext, record: RecordState, arguments: dict[str, Any]
    ) -> ContractOutcome:
        rules.ensure_owner(record, ctx.sender.identity, "deny access requests")
        request = rules.find_request(record, str(arguments["request_id"]))
        rules.ensure_pending(request, ctx.now, self.request_ttl)

        request.status = RequestStatus.DENIED
        request.decided_at = ctx.now

        outcome = ContractOutcome(record=record, effects={"request_id": request.id})
        outcome.emit(
            LedgerEventType.ACCESS_DENIED,
            record_id=record.record_id,
            actor=request.requester,
            target=record.owner,
            request_id=request.id,
            reason=str(arguments.get("reason") or "request denied by record owner"),
            decided_by=record.owner,
        )
        return outcome

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def revoke_access(
        self, ctx: CallContext, record: RecordState, arguments: dict[str, Any]
    ) -> ContractOutcome:
        rules.ensure_owner(record, ctx.sender.identity, "revoke access")
        grant = rules.find_revocable(record, str(arguments["grant_id"]))
        grant.is_active = False
        grant.revoked_at = ctx.now
        is_emergency = isinstance(grant, EmergencyAccess)

        outcome = ContractOutcome(record=record, effects={"grant_id": grant.id})
        outcome.emit(
            LedgerEventType.ACCESS_REVOKED,
            record_id=record.record_id,
            actor=record.owner,
            target=grant.grantee,
            grant_id=grant.id,
            grant_kind="emergency" if is_emergency else "permission",
        )
        return outcome

    def emergency_access(
        self, ctx: CallContext, record: RecordState, arguments: dict[str, Any]
    ) -> ContractOutcome:
        grantee = ctx.sender.identity
        rules.ensure_master_key(ctx.sender.capabilities)
        rules.ensure_not_self(record, grantee)
        reason = str(arguments.get("reason", ""))
        emergency = EmergencyAccess(
            id=new_object_id(),
            grantee=grantee,
            subject_record_id=record.record_id,
            reason=reason,
            timestamp=ctx.now,
        )
        record.emergency_accesses[emergency.id] = emergency

        outcome = ContractOutcome(record=record, effects={"emergency_id": emergency.id})
        outcome.emit(
            LedgerEventType.EMERGENCY_ACCESS,
            record_id=record.record_id,
            actor=grantee,
            target=record.owner,
            grant_id=emergency.id,
            emergency_reason=reason,
            master_key_used=True,
        )
        return outcome

    # ------------------------------------------------------------------
    # Authorization check logging
    # ------------------------------------------------------------------

    def log_access_denied(
        self, ctx: CallContext, record: RecordState, arguments: dict[str, Any]
    ) -> ContractOutcome:
        outcome = ContractOutcome(record=record)
        outcome.emit(
            LedgerEventType.ACCESS_DENIED,
            record_id=record.record_id,
            actor=ctx.sender.identity,
            target=record.owner,
            reason=str(arguments.get("reason", "")),
        )
        return outcome

    def log_access_granted_view(
        self, ctx: CallContext, record: RecordState, arguments: dict[str, Any]
    ) -> ContractOutcome:
        grant = rules.find_grant(record, ctx.sender.identity, ctx.now)
        if grant is None:
            raise PermissionDenied(
                f"{ctx.sender.identity} holds no active grant on {record.record_id}"
            )
        outcome = ContractOutcome(record=record)
        outcome.emit(
            LedgerEventType.DATA_VIEWED,
            record_id=record.record_id,
            actor=ctx.sender.identity,
            target=record.owner,
            grant_kind=grant.kind.value,
            grant_id=grant.grant_id,
            blob_id=arguments.get("blob_id"),
        )
        return outcome
