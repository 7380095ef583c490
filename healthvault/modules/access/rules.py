"""
Authorization invariants for health-record access.

Every rule lives here so the contract emulation and the client-side state
machine enforce exactly the same checks. Functions are pure: they inspect a
``RecordState`` and raise a typed error, or return a result.
"""

from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass
from datetime import datetime, timedelta

from healthvault.core.errors import InvalidState, PermissionDenied
from healthvault.core.security.identity import CapabilityKind
from healthvault.modules.ledger.models import (
    AccessLevel,
    AccessRequest,
    EmergencyAccess,
    GrantKind,
    Permission,
    RecordState,
    RequestStatus,
)

APPEND_CAPABILITIES = frozenset({CapabilityKind.DOCTOR, CapabilityKind.LAB})


@dataclass(frozen=True, slots=True)
class AccessGrant:
    """The ledger fact that currently entitles a requester to decrypt."""

    kind: GrantKind
    grant_id: str | None = None
    access_level: AccessLevel = AccessLevel.READ_ONLY


def ensure_not_self(record: RecordState, requester: str) -> None:
    """An actor may never request access to a record they own."""
    if requester == record.owner:
        raise PermissionDenied("cannot request access to your own record")


def ensure_owner(record: RecordState, actor: str, action: str) -> None:
    if actor != record.owner:
        raise PermissionDenied(f"only the record owner may {action}")


def ensure_master_key(capabilities: Collection[CapabilityKind]) -> None:
    if CapabilityKind.MASTER_KEY not in capabilities:
        raise PermissionDenied("emergency access requires a MasterKey capability")


def ensure_pending(request: AccessRequest, now: datetime, ttl: timedelta) -> None:
    """A request transitions exactly once, and only while still pending."""
    status = request.status_at(now, ttl)
    if status is not RequestStatus.PENDING:
        raise InvalidState(f"access request {request.id} is already {status.value}")


def find_request(record: RecordState, request_id: str) -> AccessRequest:
    request = record.access_requests.get(request_id)
    if request is None:
        raise InvalidState(f"access request {request_id} does not exist on record")
    return request


def find_revocable(record: RecordState, grant_id: str) -> Permission | EmergencyAccess:
    """Locate an active permission or emergency grant by id."""
    grant: Permission | EmergencyAccess | None = record.permissions.get(grant_id)
    if grant is None:
        grant = record.emergency_accesses.get(grant_id)
    if grant is None:
        raise InvalidState(f"grant {grant_id} does not exist on record")
    if not grant.is_active:
        raise InvalidState(f"grant {grant_id} is already revoked")
    return grant


def active_permission_for(record: RecordState, grantee: str) -> Permission | None:
    """Most recently granted active (not revoked) permission for ``grantee``."""
    candidates = [p for p in record.permissions.values() if p.grantee == grantee and p.is_active]
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.granted_at)


def find_grant(record: RecordState, requester: str, now: datetime) -> AccessGrant | None:
    """Resolve the current access grant for ``requester``, checked at use time."""
    if requester == record.owner:
        return AccessGrant(kind=GrantKind.OWNER, access_level=AccessLevel.READ_APPEND)

    for permission in record.permissions.values():
        if permission.grantee == requester and permission.is_valid_at(now):
            return AccessGrant(
                kind=GrantKind.PERMISSION,
                grant_id=permission.id,
                access_level=permission.access_level,
            )

    for emergency in record.emergency_accesses.values():
        if emergency.grantee == requester and emergency.is_active:
            return AccessGrant(kind=GrantKind.EMERGENCY, grant_id=emergency.id)

    return None


def ensure_can_append(
    record: RecordState,
    actor: str,
    capabilities: Collection[CapabilityKind],
    now: datetime,
) -> None:
    """Owner, authoring capability holders, or ReadAppend grantees may append data."""
    if actor == record.owner:
        return
    if APPEND_CAPABILITIES.intersection(capabilities):
        return
    grant = find_grant(record, actor, now)
    if grant is not None and grant.access_level is AccessLevel.READ_APPEND:
        return
    raise PermissionDenied(f"{actor} may not append data to record {record.record_id}")
