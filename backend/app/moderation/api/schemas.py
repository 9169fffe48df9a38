"""Response models shared by the moderation routers."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel

from app.moderation.domain.audit import AuditLogEntry
from app.moderation.domain.dashboard import AtRiskUser
from app.moderation.domain.reports import Report, TargetAggregate
from app.moderation.domain.sanctions import UserModerationState


class ReportOut(BaseModel):
    id: str
    reporter_id: str
    target_type: str
    target_id: str
    reason: str
    details: Optional[str] = None
    priority: str
    status: str
    aggregate_count: int
    assigned_to: Optional[str] = None
    escalated: bool
    escalated_at: Optional[datetime] = None
    escalation_reason: Optional[str] = None
    moderated_by: Optional[str] = None
    moderated_at: Optional[datetime] = None
    action: str
    admin_note: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, report: Report) -> "ReportOut":
        return cls(
            id=report.id,
            reporter_id=report.reporter_id,
            target_type=report.target_type.value,
            target_id=report.target_id,
            reason=report.reason.value,
            details=report.details,
            priority=report.priority.value,
            status=report.status.value,
            aggregate_count=report.aggregate_count,
            assigned_to=report.assigned_to,
            escalated=report.is_escalated,
            escalated_at=report.escalated_at,
            escalation_reason=report.escalation_reason,
            moderated_by=report.moderated_by,
            moderated_at=report.moderated_at,
            action=report.action.value,
            admin_note=report.admin_note,
            created_at=report.created_at,
            updated_at=report.updated_at,
        )


class TargetAggregateOut(BaseModel):
    target_type: str
    target_id: str
    report_count: int
    highest_priority: str
    escalated: bool
    reasons: dict[str, int]
    report_ids: list[str]
    first_reported_at: Optional[datetime] = None
    last_reported_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, aggregate: TargetAggregate) -> "TargetAggregateOut":
        return cls(
            target_type=aggregate.target_type.value,
            target_id=aggregate.target_id,
            report_count=aggregate.report_count,
            highest_priority=aggregate.highest_priority.value,
            escalated=aggregate.escalated,
            reasons=dict(aggregate.reasons),
            report_ids=list(aggregate.report_ids),
            first_reported_at=aggregate.first_reported_at,
            last_reported_at=aggregate.last_reported_at,
        )


class AuditEntryOut(BaseModel):
    id: str
    actor_id: str
    actor_role: str
    action: str
    target_type: str
    target_id: str
    reason: Optional[str] = None
    snapshot: Optional[dict[str, Any]] = None
    metadata: dict[str, Any]
    actor_ip: Optional[str] = None
    related_report_id: Optional[str] = None
    event_id: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_domain(cls, entry: AuditLogEntry) -> "AuditEntryOut":
        return cls(
            id=entry.id,
            actor_id=entry.actor_id,
            actor_role=entry.actor_role,
            action=entry.action.value,
            target_type=entry.target_type.value,
            target_id=entry.target_id,
            reason=entry.reason,
            snapshot=entry.snapshot.to_dict() if entry.snapshot else None,
            metadata=dict(entry.metadata),
            actor_ip=entry.actor_ip,
            related_report_id=entry.related_report_id,
            event_id=entry.event_id,
            created_at=entry.created_at,
        )


class WarningOut(BaseModel):
    id: str
    reason: str
    issued_by: str
    issued_at: datetime
    expires_at: Optional[datetime] = None
    active: bool


class UserStateOut(BaseModel):
    user_id: str
    role: str
    warnings: list[WarningOut]
    suspended_until: Optional[datetime] = None
    suspend_reason: Optional[str] = None
    banned_at: Optional[datetime] = None
    ban_reason: Optional[str] = None
    under_surveillance: bool
    surveillance_added_by: Optional[str] = None
    warn_count_since_auto_suspension: int
    auto_suspensions_count: int

    @classmethod
    def from_domain(cls, state: UserModerationState) -> "UserStateOut":
        return cls(
            user_id=state.user_id,
            role=state.role.value,
            warnings=[
                WarningOut(
                    id=w.id,
                    reason=w.reason,
                    issued_by=w.issued_by,
                    issued_at=w.issued_at,
                    expires_at=w.expires_at,
                    active=w.is_active(),
                )
                for w in state.warnings
            ],
            suspended_until=state.suspended_until,
            suspend_reason=state.suspend_reason,
            banned_at=state.banned_at,
            ban_reason=state.ban_reason,
            under_surveillance=state.surveillance.active,
            surveillance_added_by=state.surveillance.added_by,
            warn_count_since_auto_suspension=state.warn_count_since_auto_suspension,
            auto_suspensions_count=state.auto_suspensions_count,
        )


class RiskOut(BaseModel):
    user_id: str
    score: int
    band: str
    warning_count: int
    reports_received: int
    suspended: bool
    under_surveillance: bool
    auto_suspensions: int

    @classmethod
    def from_domain(cls, risk: AtRiskUser) -> "RiskOut":
        return cls(
            user_id=risk.user_id,
            score=risk.score,
            band=risk.band,
            warning_count=risk.warning_count,
            reports_received=risk.reports_received,
            suspended=risk.suspended,
            under_surveillance=risk.under_surveillance,
            auto_suspensions=risk.auto_suspensions,
        )
