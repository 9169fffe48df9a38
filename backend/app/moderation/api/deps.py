"""Shared FastAPI dependencies for moderation routers."""

from __future__ import annotations

from typing import Awaitable, Callable, Optional

from fastapi import Depends, Header, Request

from app.infra.auth import AuthenticatedUser, get_current_user
from app.moderation.domain import rbac
from app.moderation.domain.container import (
    get_audit_logger,
    get_dashboard_service,
    get_report_service,
    get_sanction_service,
    get_user_repository,
)
from app.moderation.domain.dashboard import DashboardService
from app.moderation.domain.gates import enforce_account_status
from app.moderation.domain.audit import AuditLogger
from app.moderation.domain.rbac import Principal
from app.moderation.domain.reports_service import ReportService
from app.moderation.domain.sanctions import SanctionService

EVENT_ID_MAX_LENGTH = 128


async def get_principal(user: AuthenticatedUser = Depends(get_current_user)) -> Principal:
    """Resolve the acting principal and reject banned or suspended accounts.

    The stored role is authoritative when the user row exists; token roles and
    permission claims only apply to principals the moderation store does not
    know about.
    """
    principal = rbac.principal_from_user(user)
    state = await get_user_repository().get(user.id)
    if state is not None:
        enforce_account_status(state)
        principal.role = state.role
        principal.extra_permissions = frozenset()
    return principal


def require_staff(permission: str) -> Callable[..., Awaitable[Principal]]:
    """Return a dependency that runs the status gate, then the permission gate."""

    async def _dep(principal: Principal = Depends(get_principal)) -> Principal:
        return rbac.require_permission(principal, permission)

    return _dep


def actor_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def event_id_header(x_event_id: Optional[str] = Header(default=None, alias="X-Event-Id")) -> Optional[str]:
    if x_event_id is None:
        return None
    value = x_event_id.strip()
    return value[:EVENT_ID_MAX_LENGTH] or None


def report_service_dep() -> ReportService:
    return get_report_service()


def sanction_service_dep() -> SanctionService:
    return get_sanction_service()


def dashboard_service_dep() -> DashboardService:
    return get_dashboard_service()


def audit_logger_dep() -> AuditLogger:
    return get_audit_logger()
