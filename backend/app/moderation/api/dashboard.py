"""Moderation dashboard summary."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.moderation.api.deps import dashboard_service_dep, require_staff
from app.moderation.domain import rbac
from app.moderation.domain.dashboard import DashboardService
from app.moderation.domain.rbac import Principal

router = APIRouter(prefix="/api/mod/v1/dashboard", tags=["moderation-dashboard"])


class UserCountsOut(BaseModel):
    total: int
    active: int
    suspended: int
    banned: int
    under_surveillance: int


class DashboardOut(BaseModel):
    pending_reports: int
    escalated_pending: int
    actions_today: int
    users: UserCountsOut


@router.get("", response_model=DashboardOut)
async def dashboard_summary(
    _: Principal = Depends(require_staff(rbac.DASHBOARD_VIEW)),
    dashboard: DashboardService = Depends(dashboard_service_dep),
) -> DashboardOut:
    summary = await dashboard.summary()
    return DashboardOut(
        pending_reports=summary.pending_reports,
        escalated_pending=summary.escalated_pending,
        actions_today=summary.actions_today,
        users=UserCountsOut(
            total=summary.users.total,
            active=summary.users.active,
            suspended=summary.users.suspended,
            banned=summary.users.banned,
            under_surveillance=summary.users.under_surveillance,
        ),
    )
