"""Read-only audit trail endpoints: event listing, summary, report and chain verification."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from healthvault.core.errors import RecordNotFound
from healthvault.core.logging import get_logger
from healthvault.modules.audit.projector import AuditTrailProjector
from healthvault.modules.audit.schemas import (
    AuditEvent,
    AuditSummary,
    ChainVerificationResponse,
    ComplianceReport,
)
from healthvault.modules.ledger.backend import LedgerBackend

logger = get_logger(__name__)
router = APIRouter()


def get_projector(request: Request) -> AuditTrailProjector:
    projector: AuditTrailProjector | None = getattr(request.app.state, "audit_projector", None)
    if projector is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Audit projector is not configured",
        )
    return projector


def get_ledger(request: Request) -> LedgerBackend:
    ledger: LedgerBackend | None = getattr(request.app.state, "ledger", None)
    if ledger is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ledger backend is not configured",
        )
    return ledger


Projector = Annotated[AuditTrailProjector, Depends(get_projector)]
Ledger = Annotated[LedgerBackend, Depends(get_ledger)]


async def _ensure_record(ledger: LedgerBackend, record_id: str) -> None:
    try:
        await ledger.get_record(record_id)
    except RecordNotFound as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=exc.message,
        ) from exc


@router.get("/records/{record_id}/audit", response_model=list[AuditEvent])
async def list_audit_events(
    record_id: str,
    projector: Projector,
    ledger: Ledger,
    limit: int = Query(100, ge=1, le=1000, description="Maximum events to return"),
) -> list[AuditEvent]:
    """Audit trail for a record, newest first."""
    await _ensure_record(ledger, record_id)
    return await projector.events(record_id, limit)


@router.get("/records/{record_id}/audit/summary", response_model=AuditSummary)
async def get_audit_summary(
    record_id: str,
    projector: Projector,
    ledger: Ledger,
) -> AuditSummary:
    await _ensure_record(ledger, record_id)
    return await projector.summary(record_id)


@router.get("/records/{record_id}/audit/report", response_model=ComplianceReport)
async def get_compliance_report(
    record_id: str,
    projector: Projector,
    ledger: Ledger,
    start: datetime = Query(..., description="Inclusive window start (ISO 8601)"),
    end: datetime = Query(..., description="Inclusive window end (ISO 8601)"),
) -> ComplianceReport:
    """Compliance report restricted to ``start <= timestamp <= end``."""
    await _ensure_record(ledger, record_id)
    try:
        return await projector.report(record_id, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.get("/audit/verify", response_model=ChainVerificationResponse)
async def verify_chain(projector: Projector) -> ChainVerificationResponse:
    """Re-verify the ledger event hash chain from genesis."""
    result = await projector.verify_chain()
    logger.info(
        "audit_chain_verified",
        is_valid=result.is_valid,
        verified_count=result.verified_count,
    )
    return result
