"""Read-only audit log endpoints, guarded by the operator API key."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from src.relay.api.deps import get_audit_log, require_admin
from src.relay.audit.service import AuditLog
from src.relay.audit.store import AuditEntry

router = APIRouter(prefix="/audit", tags=["audit"], dependencies=[Depends(require_admin)])


class AuditEntryResponse(BaseModel):
    entry_id: str
    timestamp: str
    operation: str
    outcome_status: str
    succeeded: bool
    error_message: Optional[str] = None
    correlation_ids: dict[str, Any]
    sanitized_input: dict[str, Any]
    duration_ms: Optional[float] = None


class AuditReportResponse(BaseModel):
    total: int
    successful: int
    failed: int
    by_operation: dict[str, dict[str, int]]
    entries: list[AuditEntryResponse]


def _to_response(entry: AuditEntry) -> AuditEntryResponse:
    return AuditEntryResponse(
        entry_id=entry.entry_id,
        timestamp=entry.timestamp.isoformat(),
        operation=entry.operation,
        outcome_status=entry.outcome_status.value,
        succeeded=entry.succeeded,
        error_message=entry.error_message,
        correlation_ids=entry.correlation_ids,
        sanitized_input=entry.sanitized_input,
        duration_ms=entry.duration_ms,
    )


@router.get("/logs", response_model=list[AuditEntryResponse])
async def list_logs(
    operation: Optional[str] = Query(default=None, description="Filter by operation kind"),
    limit: int = Query(default=100, ge=1, le=1000),
    audit: AuditLog = Depends(get_audit_log),
) -> list[AuditEntryResponse]:
    """Most recent entries, optionally filtered by operation."""
    entries = audit.by_operation(operation)[-limit:] if operation else audit.recent(limit)
    return [_to_response(e) for e in entries]


@router.get("/failed", response_model=list[AuditEntryResponse])
async def list_failed(audit: AuditLog = Depends(get_audit_log)) -> list[AuditEntryResponse]:
    return [_to_response(e) for e in audit.failed()]


@router.get("/report", response_model=AuditReportResponse)
async def report(
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    audit: AuditLog = Depends(get_audit_log),
) -> AuditReportResponse:
    """Totals by outcome and operation over an optional time range."""
    summary = audit.report(start, end)
    return AuditReportResponse(
        total=summary["total"],
        successful=summary["successful"],
        failed=summary["failed"],
        by_operation=summary["by_operation"],
        entries=[_to_response(e) for e in summary["entries"]],
    )
