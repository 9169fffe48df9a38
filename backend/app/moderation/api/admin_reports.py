"""Staff-facing report queue and processing endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from app.moderation.api.deps import (
    actor_ip,
    audit_logger_dep,
    event_id_header,
    report_service_dep,
    require_staff,
)
from app.moderation.api.schemas import AuditEntryOut, ReportOut, TargetAggregateOut
from app.moderation.domain import rbac
from app.moderation.domain.audit import AuditLogger, AuditQuery
from app.moderation.domain.errors import ModerationValidationError
from app.moderation.domain.rbac import Principal
from app.moderation.domain.reports import ReportFilter, ReportPriority, ReportStatus, TargetType
from app.moderation.domain.reports_service import ReportService

router = APIRouter(prefix="/api/mod/v1/admin/reports", tags=["moderation-admin-reports"])


class ReportListResponse(BaseModel):
    items: list[ReportOut]
    limit: int
    offset: int


class ReportDetailResponse(BaseModel):
    report: ReportOut
    history: list[AuditEntryOut]


class ReportStatsResponse(BaseModel):
    by_status: dict[str, int]
    by_reason: dict[str, int]
    by_priority: dict[str, int]
    pending: int
    escalated_pending: int


class ProcessReportIn(BaseModel):
    action: str = "none"
    status: Optional[str] = None
    reason: Optional[str] = None
    admin_note: Optional[str] = None
    suspension_hours: Optional[int] = None


class EscalateReportIn(BaseModel):
    reason: Optional[str] = None


class AssignReportIn(BaseModel):
    assignee_id: Optional[str] = Field(default=None, description="null unassigns")


def _parse_filter(enum_cls, value: Optional[str], field_name: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        raise ModerationValidationError({field_name: f"unsupported value {value!r}"}) from None


@router.get("", response_model=ReportListResponse)
async def list_reports(
    *,
    status: Optional[str] = Query(default=None),
    target_type: Optional[str] = Query(default=None),
    priority: Optional[str] = Query(default=None),
    escalated: bool = Query(default=False),
    assigned_to: Optional[str] = Query(default=None, description="user id or 'me'"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(require_staff(rbac.REPORTS_VIEW)),
    service: ReportService = Depends(report_service_dep),
) -> ReportListResponse:
    filters = ReportFilter(
        status=_parse_filter(ReportStatus, status, "status"),
        target_type=_parse_filter(TargetType, target_type, "target_type"),
        priority=_parse_filter(ReportPriority, priority, "priority"),
        escalated_only=escalated,
        assigned_to=principal.id if assigned_to == "me" else assigned_to,
        limit=limit,
        offset=offset,
    )
    reports = await service.list_reports(filters)
    return ReportListResponse(items=[ReportOut.from_domain(r) for r in reports], limit=limit, offset=offset)


@router.get("/stats", response_model=ReportStatsResponse)
async def report_stats(
    _: Principal = Depends(require_staff(rbac.REPORTS_VIEW)),
    service: ReportService = Depends(report_service_dep),
) -> ReportStatsResponse:
    stats = await service.stats()
    return ReportStatsResponse(
        by_status=stats.by_status,
        by_reason=stats.by_reason,
        by_priority=stats.by_priority,
        pending=stats.pending,
        escalated_pending=stats.escalated_pending,
    )


@router.get("/aggregated", response_model=list[TargetAggregateOut])
async def aggregated_reports(
    limit: int = Query(default=50, ge=1, le=200),
    _: Principal = Depends(require_staff(rbac.REPORTS_VIEW)),
    service: ReportService = Depends(report_service_dep),
) -> list[TargetAggregateOut]:
    aggregates = await service.aggregated_by_target(limit=limit)
    return [TargetAggregateOut.from_domain(a) for a in aggregates]


@router.get("/{report_id}", response_model=ReportDetailResponse)
async def get_report(
    report_id: str,
    _: Principal = Depends(require_staff(rbac.REPORTS_VIEW)),
    service: ReportService = Depends(report_service_dep),
    audit: AuditLogger = Depends(audit_logger_dep),
) -> ReportDetailResponse:
    report = await service.get_report(report_id)
    history = await audit.query(AuditQuery(related_report_id=report.id, limit=100))
    return ReportDetailResponse(
        report=ReportOut.from_domain(report),
        history=[AuditEntryOut.from_domain(entry) for entry in history],
    )


@router.post("/{report_id}/process", response_model=ReportOut)
async def process_report(
    report_id: str,
    payload: ProcessReportIn,
    request: Request,
    principal: Principal = Depends(require_staff(rbac.REPORTS_PROCESS)),
    event_id: Optional[str] = Depends(event_id_header),
    service: ReportService = Depends(report_service_dep),
) -> ReportOut:
    report = await service.process_report(
        principal,
        report_id,
        action=payload.action,
        status=payload.status,
        reason=payload.reason,
        admin_note=payload.admin_note,
        suspension_hours=payload.suspension_hours,
        event_id=event_id,
        actor_ip=actor_ip(request),
    )
    return ReportOut.from_domain(report)


@router.post("/{report_id}/escalate", response_model=ReportOut)
async def escalate_report(
    report_id: str,
    payload: EscalateReportIn,
    request: Request,
    principal: Principal = Depends(require_staff(rbac.REPORTS_ESCALATE)),
    service: ReportService = Depends(report_service_dep),
) -> ReportOut:
    report = await service.escalate_report(principal, report_id, reason=payload.reason, actor_ip=actor_ip(request))
    return ReportOut.from_domain(report)


@router.post("/{report_id}/assign", response_model=ReportOut)
async def assign_report(
    report_id: str,
    payload: AssignReportIn,
    request: Request,
    principal: Principal = Depends(require_staff(rbac.REPORTS_PROCESS)),
    service: ReportService = Depends(report_service_dep),
) -> ReportOut:
    report = await service.assign_report(principal, report_id, payload.assignee_id, actor_ip=actor_ip(request))
    return ReportOut.from_domain(report)
