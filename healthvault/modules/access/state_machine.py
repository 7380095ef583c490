"""
Access-control state machine.

Drives AccessRequest, Permission and EmergencyAccess lifecycles through
ledger transactions. The same rules the contract enforces are checked here
first so callers fail fast, but the ledger remains the authority: a client
that skips this class is still bound by the contract.

Every authorization check leaves a ledger event behind, ``DataViewed`` on
success and ``AccessDenied`` on failure.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from healthvault.core.errors import HealthVaultError, PermissionDenied, RecordNotFound
from healthvault.core.logging import get_logger
from healthvault.core.security.identity import SignerContext, ensure_session
from healthvault.modules.access import rules
from healthvault.modules.access.proofs import AccessProof
from healthvault.modules.ledger.models import (
    AccessLevel,
    AccessRequest,
    EmergencyAccess,
    Permission,
    RecordState,
    RequestStatus,
)
from healthvault.modules.ledger.registrar import LedgerRegistrar

logger = get_logger(__name__)


class AccessControlStateMachine:
    def __init__(
        self,
        registrar: LedgerRegistrar,
        *,
        request_ttl: timedelta = timedelta(days=7),
        proof_ttl: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._registrar = registrar
        self._request_ttl = request_ttl
        self._proof_ttl = proof_ttl
        self._clock = clock or (lambda: datetime.now(UTC))

    def now(self) -> datetime:
        return self._clock()

    async def _own_record(self, context: SignerContext) -> RecordState:
        record = await self._registrar.find_record(context.identity)
        if record is None:
            raise RecordNotFound(f"{context.identity} does not own a record")
        return record

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request_access(
        self,
        context: SignerContext,
        record_id: str,
        reason: str,
        level: AccessLevel = AccessLevel.READ_ONLY,
    ) -> AccessRequest:
        ensure_session(context)
        record = await self._registrar.read_record(record_id)
        rules.ensure_not_self(record, context.identity)

        receipt = await self._registrar.call(
            "request_access",
            {"reason": reason, "access_level": int(level)},
            context,
            record_id=record_id,
        )
        request_id = receipt.effects["request_id"]
        record = await self._registrar.read_record(record_id)
        logger.info(
            "access_requested",
            record_id=record_id,
            requester=context.identity,
            request_id=request_id,
            access_level=int(level),
        )
        return record.access_requests[request_id]

    async def pending_requests(self, context: SignerContext) -> list[AccessRequest]:
        """Requests on the caller's own record that still await a decision."""
        ensure_session(context)
        record = await self._own_record(context)
        now = self._clock()
        return [
            request
            for request in record.access_requests.values()
            if request.status_at(now, self._request_ttl) is RequestStatus.PENDING
        ]

    async def grant_access(self, context: SignerContext, request_id: str) -> Permission:
        """Approve a pending request on the caller's record; returns the live Permission."""
        ensure_session(context)
        record = await self._own_record(context)
        request = rules.find_request(record, request_id)
        rules.ensure_pending(request, self._clock(), self._request_ttl)

        receipt = await self._registrar.call(
            "approve_access", {"request_id": request_id}, context, record_id=record.record_id
        )
        permission_id = receipt.effects["permission_id"]
        record = await self._registrar.read_record(record.record_id)
        permission = record.permissions[permission_id]
        logger.info(
            "access_granted",
            record_id=record.record_id,
            request_id=request_id,
            permission_id=permission_id,
            grantee=permission.grantee,
            expires_at=permission.expires_at.isoformat(),
        )
        return permission

    async def deny_access(
        self, context: SignerContext, request_id: str, reason: str | None = None
    ) -> AccessRequest:
        ensure_session(context)
        record = await self._own_record(context)
        request = rules.find_request(record, request_id)
        rules.ensure_pending(request, self._clock(), self._request_ttl)

        await self._registrar.call(
            "deny_access",
            {"request_id": request_id, "reason": reason},
            context,
            record_id=record.record_id,
        )
        record = await self._registrar.read_record(record.record_id)
        logger.info("access_request_denied", record_id=record.record_id, request_id=request_id)
        return record.access_requests[request_id]

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    async def revoke_access(
        self, context: SignerContext, grant_id: str
    ) -> Permission | EmergencyAccess:
        """Revoke a Permission or EmergencyAccess on the caller's record. One-way."""
        ensure_session(context)
        record = await self._own_record(context)
        rules.find_revocable(record, grant_id)

        await self._registrar.call(
            "revoke_access", {"grant_id": grant_id}, context, record_id=record.record_id
        )
        record = await self._registrar.read_record(record.record_id)
        revoked = record.permissions.get(grant_id) or record.emergency_accesses[grant_id]
        logger.info(
            "access_revoked",
            record_id=record.record_id,
            grant_id=grant_id,
            grantee=revoked.grantee,
        )
        return revoked

    async def emergency_access(
        self, context: SignerContext, record_id: str, reason: str
    ) -> EmergencyAccess:
        """Open an emergency grant; requires a MasterKey capability.

        A refused attempt records an ``AccessDenied`` event before
        ``PermissionDenied`` propagates.
        """
        ensure_session(context)
        record = await self._registrar.read_record(record_id)
        try:
            rules.ensure_master_key(context.capabilities)
            rules.ensure_not_self(record, context.identity)
            receipt = await self._registrar.call(
                "emergency_access", {"reason": reason}, context, record_id=record_id
            )
        except PermissionDenied as exc:
            await self.record_denial(context, record_id, exc.message)
            raise
        emergency_id = receipt.effects["emergency_id"]
        record = await self._registrar.read_record(record_id)
        logger.warning(
            "emergency_access_opened",
            record_id=record_id,
            grantee=context.identity,
            emergency_id=emergency_id,
            severity="critical",
        )
        return record.emergency_accesses[emergency_id]

    # ------------------------------------------------------------------
    # Authorization checks
    # ------------------------------------------------------------------

    async def authorize(
        self, context: SignerContext, record_id: str, *, blob_id: str | None = None
    ) -> AccessProof:
        """Check the caller's live grant and return a signed proof for the key servers.

        On failure an ``AccessDenied`` event is recorded before
        ``PermissionDenied`` is raised. The ``DataViewed`` event is written
        here, before download and decryption, so it marks an authorized view
        rather than a completed one.
        """
        ensure_session(context)
        record = await self._registrar.read_record(record_id)
        now = self._clock()
        grant = rules.find_grant(record, context.identity, now)
        if grant is None:
            reason = "no active permission, emergency access or ownership"
            await self.record_denial(context, record_id, reason)
            raise PermissionDenied(f"{context.identity} may not access record {record_id}")

        await self._registrar.call(
            "log_access_granted_view", {"blob_id": blob_id}, context, record_id=record_id
        )
        return AccessProof.issue(
            context,
            record_id=record_id,
            subject=record.owner,
            grant=grant,
            now=now,
            ttl=self._proof_ttl,
        )

    async def record_denial(self, context: SignerContext, record_id: str, reason: str) -> None:
        """Emit an ``AccessDenied`` ledger event for a failed access attempt."""
        try:
            await self._registrar.call(
                "log_access_denied", {"reason": reason}, context, record_id=record_id
            )
        except HealthVaultError as exc:
            logger.error(
                "access_denial_not_recorded",
                record_id=record_id,
                requester=context.identity,
                code=exc.code,
            )
            raise PermissionDenied(
                f"access denied for {context.identity}; the denial could not be recorded"
            ) from exc
        logger.info(
            "access_denied_recorded",
            record_id=record_id,
            requester=context.identity,
            reason=reason,
        )
