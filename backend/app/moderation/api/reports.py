"""Report submission for members."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field

from app.infra.rate_limit import allow
from app.moderation.api.deps import get_principal, report_service_dep
from app.moderation.api.schemas import ReportOut
from app.moderation.domain.errors import RateLimited
from app.moderation.domain.rbac import Principal
from app.moderation.domain.reports_service import ReportService
from app.obs import metrics as obs_metrics
from app.settings import settings

router = APIRouter(prefix="/api/mod/v1/reports", tags=["moderation-reports"])

_REPORT_RATE_KEY = "mod_report_create"


class ReportIn(BaseModel):
    target_type: str
    target_id: str = Field(..., min_length=1)
    reason: str
    details: Optional[str] = None


class ReportSubmissionOut(BaseModel):
    report: ReportOut
    created: bool
    escalated: bool


@router.post("", response_model=ReportSubmissionOut, status_code=status.HTTP_201_CREATED)
async def create_report(
    payload: ReportIn,
    response: Response,
    principal: Principal = Depends(get_principal),
    service: ReportService = Depends(report_service_dep),
) -> ReportSubmissionOut:
    allowed = await allow(
        _REPORT_RATE_KEY,
        principal.id,
        limit=settings.moderation_report_rate_limit,
        window_seconds=settings.moderation_report_rate_window_seconds,
    )
    if not allowed:
        obs_metrics.MOD_REPORT_RATE_LIMITED_TOTAL.inc()
        raise RateLimited()
    submission = await service.create_or_aggregate_report(
        reporter_id=principal.id,
        target_type=payload.target_type,
        target_id=payload.target_id,
        reason=payload.reason,
        details=payload.details,
    )
    if not submission.created:
        response.status_code = status.HTTP_200_OK
    return ReportSubmissionOut(
        report=ReportOut.from_domain(submission.report),
        created=submission.created,
        escalated=submission.escalated,
    )
