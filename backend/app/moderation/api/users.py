"""Staff endpoints for user sanctions, surveillance and risk."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from app.moderation.api.deps import (
    actor_ip,
    dashboard_service_dep,
    event_id_header,
    require_staff,
    sanction_service_dep,
)
from app.moderation.api.schemas import RiskOut, UserStateOut
from app.moderation.domain import rbac
from app.moderation.domain.dashboard import DashboardService
from app.moderation.domain.errors import ModerationValidationError
from app.moderation.domain.rbac import Principal
from app.moderation.domain.sanctions import SanctionResult, SanctionService, check_user_status

router = APIRouter(prefix="/api/mod/v1/users", tags=["moderation-users"])

MAX_SUSPENSION_HOURS = 24 * 365


class SanctionOut(BaseModel):
    user: UserStateOut
    idempotent: bool
    auto_sanction: Optional[str] = None
    audit_entry_id: Optional[str] = None

    @classmethod
    def from_result(cls, result: SanctionResult) -> "SanctionOut":
        return cls(
            user=UserStateOut.from_domain(result.user),
            idempotent=result.idempotent,
            auto_sanction=result.auto_sanction,
            audit_entry_id=result.audit_entry.id if result.audit_entry else None,
        )


class UserStatusOut(BaseModel):
    user: UserStateOut
    access: str
    risk: RiskOut


class WarnIn(BaseModel):
    reason: str
    expires_in_days: Optional[int] = None


class SuspendIn(BaseModel):
    reason: str
    until: Optional[datetime] = None
    hours: Optional[int] = None


class ReasonIn(BaseModel):
    reason: Optional[str] = None


class BanIn(BaseModel):
    reason: str


class SurveillanceIn(BaseModel):
    active: bool
    reason: Optional[str] = None


def _suspension_end(payload: SuspendIn) -> datetime:
    if payload.until is not None and payload.hours is None:
        return payload.until
    if payload.hours is None or payload.until is not None:
        raise ModerationValidationError({"until": "provide exactly one of until or hours"})
    if not 1 <= payload.hours <= MAX_SUSPENSION_HOURS:
        raise ModerationValidationError({"hours": f"must be between 1 and {MAX_SUSPENSION_HOURS}"})
    return datetime.now(timezone.utc) + timedelta(hours=payload.hours)


@router.get("/at-risk", response_model=list[RiskOut])
async def at_risk_users(
    limit: int = Query(default=50, ge=1, le=200),
    min_score: int = Query(default=1, ge=0, le=100),
    _: Principal = Depends(require_staff(rbac.USERS_VIEW)),
    dashboard: DashboardService = Depends(dashboard_service_dep),
) -> list[RiskOut]:
    users = await dashboard.at_risk_users(limit=limit, min_score=min_score)
    return [RiskOut.from_domain(u) for u in users]


@router.get("/{user_id}", response_model=UserStatusOut)
async def user_status(
    user_id: str,
    _: Principal = Depends(require_staff(rbac.USERS_VIEW)),
    sanctions: SanctionService = Depends(sanction_service_dep),
    dashboard: DashboardService = Depends(dashboard_service_dep),
) -> UserStatusOut:
    state = await sanctions.get_state(user_id)
    risk = await dashboard.risk_for(state)
    return UserStatusOut(
        user=UserStateOut.from_domain(state),
        access=check_user_status(state).status.value,
        risk=RiskOut.from_domain(risk),
    )


@router.post("/{user_id}/warnings", response_model=SanctionOut)
async def warn_user(
    user_id: str,
    payload: WarnIn,
    request: Request,
    principal: Principal = Depends(require_staff(rbac.USERS_WARN)),
    event_id: Optional[str] = Depends(event_id_header),
    sanctions: SanctionService = Depends(sanction_service_dep),
) -> SanctionOut:
    result = await sanctions.warn_user(
        principal,
        user_id,
        payload.reason,
        expires_in_days=payload.expires_in_days,
        event_id=event_id,
        actor_ip=actor_ip(request),
    )
    return SanctionOut.from_result(result)


@router.delete("/{user_id}/warnings/{warning_id}", response_model=SanctionOut)
async def remove_warning(
    user_id: str,
    warning_id: str,
    request: Request,
    reason: Optional[str] = Query(default=None),
    principal: Principal = Depends(require_staff(rbac.USERS_WARN)),
    event_id: Optional[str] = Depends(event_id_header),
    sanctions: SanctionService = Depends(sanction_service_dep),
) -> SanctionOut:
    result = await sanctions.remove_warning(
        principal,
        user_id,
        warning_id,
        reason=reason,
        event_id=event_id,
        actor_ip=actor_ip(request),
    )
    return SanctionOut.from_result(result)


@router.post("/{user_id}/suspend", response_model=SanctionOut)
async def suspend_user(
    user_id: str,
    payload: SuspendIn,
    request: Request,
    principal: Principal = Depends(require_staff(rbac.USERS_SUSPEND)),
    event_id: Optional[str] = Depends(event_id_header),
    sanctions: SanctionService = Depends(sanction_service_dep),
) -> SanctionOut:
    result = await sanctions.suspend_user(
        principal,
        user_id,
        until=_suspension_end(payload),
        reason=payload.reason,
        event_id=event_id,
        actor_ip=actor_ip(request),
    )
    return SanctionOut.from_result(result)


@router.post("/{user_id}/unsuspend", response_model=SanctionOut)
async def unsuspend_user(
    user_id: str,
    payload: ReasonIn,
    request: Request,
    principal: Principal = Depends(require_staff(rbac.USERS_SUSPEND)),
    event_id: Optional[str] = Depends(event_id_header),
    sanctions: SanctionService = Depends(sanction_service_dep),
) -> SanctionOut:
    result = await sanctions.unsuspend_user(
        principal,
        user_id,
        reason=payload.reason,
        event_id=event_id,
        actor_ip=actor_ip(request),
    )
    return SanctionOut.from_result(result)


@router.post("/{user_id}/ban", response_model=SanctionOut)
async def ban_user(
    user_id: str,
    payload: BanIn,
    request: Request,
    principal: Principal = Depends(require_staff(rbac.USERS_BAN)),
    event_id: Optional[str] = Depends(event_id_header),
    sanctions: SanctionService = Depends(sanction_service_dep),
) -> SanctionOut:
    result = await sanctions.ban_user(
        principal,
        user_id,
        payload.reason,
        event_id=event_id,
        actor_ip=actor_ip(request),
    )
    return SanctionOut.from_result(result)


@router.post("/{user_id}/unban", response_model=SanctionOut)
async def unban_user(
    user_id: str,
    payload: ReasonIn,
    request: Request,
    principal: Principal = Depends(require_staff(rbac.USERS_UNBAN)),
    event_id: Optional[str] = Depends(event_id_header),
    sanctions: SanctionService = Depends(sanction_service_dep),
) -> SanctionOut:
    result = await sanctions.unban_user(
        principal,
        user_id,
        reason=payload.reason,
        event_id=event_id,
        actor_ip=actor_ip(request),
    )
    return SanctionOut.from_result(result)


@router.post("/{user_id}/surveillance", response_model=SanctionOut)
async def set_surveillance(
    user_id: str,
    payload: SurveillanceIn,
    request: Request,
    principal: Principal = Depends(require_staff(rbac.USERS_SURVEILLANCE)),
    event_id: Optional[str] = Depends(event_id_header),
    sanctions: SanctionService = Depends(sanction_service_dep),
) -> SanctionOut:
    result = await sanctions.set_surveillance(
        principal,
        user_id,
        active=payload.active,
        reason=payload.reason,
        event_id=event_id,
        actor_ip=actor_ip(request),
    )
    return SanctionOut.from_result(result)
