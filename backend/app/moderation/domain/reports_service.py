"""Report intake, auto-escalation and staff processing."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from app.infra.redis import RedisProxy
from app.moderation.domain import rbac
from app.moderation.domain.audit import AuditAction, AuditLogger, AuditSnapshot, AuditTargetType
from app.moderation.domain.content import ContentItem, ContentSnapshot, ContentStore, snapshot_content
from app.moderation.domain.errors import (
    InvalidStateTransition,
    ModerationValidationError,
    ReportNotFound,
)
from app.moderation.domain.escalation import (
    auto_escalation_reason,
    priority_for_reason,
    raise_priority,
    should_escalate,
)
from app.moderation.domain.rbac import Principal
from app.moderation.domain.reports import (
    CONTENT_ACTIONS,
    OPEN_STATUSES,
    SYSTEM_ACTOR,
    USER_ACTIONS,
    Report,
    ReportAction,
    ReportFilter,
    ReportReason,
    ReportRepository,
    ReportStats,
    ReportStatus,
    TargetAggregate,
    TargetType,
    can_transition,
)
from app.moderation.domain.sanctions import SanctionService, validate_reason
from app.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

DETAILS_MAX_LENGTH = 500
TARGET_ID_MAX_LENGTH = 128
MIN_SUSPENSION_HOURS = 1
MAX_SUSPENSION_HOURS = 8760

ACTION_PERMISSIONS: dict[ReportAction, str] = {
    ReportAction.HIDE_CONTENT: rbac.CONTENT_HIDE,
    ReportAction.DELETE_CONTENT: rbac.CONTENT_DELETE,
    ReportAction.WARN_USER: rbac.USERS_WARN,
    ReportAction.SUSPEND_USER: rbac.USERS_SUSPEND,
    ReportAction.BAN_USER: rbac.USERS_BAN,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_enum(enum_cls, value: Any, field_name: str):
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise ModerationValidationError({field_name: f"unsupported value {value!r}"}) from exc


def resolve_target_status(action: ReportAction, status: ReportStatus | None) -> ReportStatus:
    """Map the requested action/status pair onto the status the report moves to."""
    if action is not ReportAction.NONE:
        if status not in (None, ReportStatus.ACTION_TAKEN):
            raise ModerationValidationError({"status": "must be action_taken when an action is applied"})
        return ReportStatus.ACTION_TAKEN
    if status is None:
        return ReportStatus.DISMISSED
    if status is ReportStatus.ACTION_TAKEN:
        raise ModerationValidationError({"action": "required when status is action_taken"})
    if status is ReportStatus.PENDING:
        raise InvalidStateTransition("cannot_reopen_report")
    return status


def _content_audit_type(target_type: TargetType) -> AuditTargetType:
    return AuditTargetType.COMMENT if target_type is TargetType.COMMENT else AuditTargetType.POST


@dataclass(slots=True)
class ReportSubmission:
    report: Report
    created: bool
    escalated: bool = False


@dataclass(slots=True)
class _ResolvedTarget:
    content: Optional[ContentItem] = None
    snapshot: Optional[ContentSnapshot] = None
    user_id: Optional[str] = None


@dataclass
class ReportService:
    reports: ReportRepository
    audit: AuditLogger
    sanctions: SanctionService
    content: ContentStore
    redis: RedisProxy | None = None
    escalation_stream: str = "mod:escalations"
    default_suspension_hours: int = 24

    async def create_or_aggregate_report(
        self,
        *,
        reporter_id: str,
        target_type: TargetType | str,
        target_id: str,
        reason: ReportReason | str,
        details: str | None = None,
    ) -> ReportSubmission:
        errors: dict[str, str] = {}
        if not reporter_id:
            errors["reporter_id"] = "required"
        parsed_type = parsed_reason = None
        try:
            parsed_type = TargetType(target_type)
        except ValueError:
            errors["target_type"] = f"unsupported value {target_type!r}"
        try:
            parsed_reason = ReportReason(reason)
        except ValueError:
            errors["reason"] = f"unsupported value {reason!r}"
        target_id = (target_id or "").strip()
        if not target_id or len(target_id) > TARGET_ID_MAX_LENGTH:
            errors["target_id"] = "invalid identifier"
        details = (details or "").strip() or None
        if details and len(details) > DETAILS_MAX_LENGTH:
            errors["details"] = f"must be at most {DETAILS_MAX_LENGTH} characters"
        if errors or parsed_type is None or parsed_reason is None:
            raise ModerationValidationError(errors)

        await self._reject_self_report(reporter_id, parsed_type, target_id)
        priority = priority_for_reason(parsed_reason)
        report, created = await self.reports.create_or_aggregate(
            reporter_id=reporter_id,
            target_type=parsed_type,
            target_id=target_id,
            reason=parsed_reason,
            priority=priority,
            details=details,
        )
        obs_metrics.MOD_REPORTS_TOTAL.labels(
            reason=parsed_reason.value,
            outcome="created" if created else "aggregated",
        ).inc()
        if not created:
            logger.info(
                "duplicate report aggregated",
                extra={"report_id": report.id, "aggregate_count": report.aggregate_count},
            )
            return ReportSubmission(report=report, created=False)

        report_count = await self.reports.sync_target_count(parsed_type, target_id)
        report = replace(report, aggregate_count=report_count)
        if should_escalate(report_count, report.priority, already_escalated=report.is_escalated):
            escalated = await self._auto_escalate(report, report_count)
            return ReportSubmission(report=escalated, created=True, escalated=True)
        return ReportSubmission(report=report, created=True)

    async def process_report(
        self,
        actor: Principal,
        report_id: str,
        *,
        action: ReportAction | str = ReportAction.NONE,
        status: ReportStatus | str | None = None,
        reason: str | None = None,
        admin_note: str | None = None,
        suspension_hours: int | None = None,
        event_id: str | None = None,
        actor_ip: str | None = None,
    ) -> Report:
        rbac.require_permission(actor, rbac.REPORTS_PROCESS)
        parsed_action = _parse_enum(ReportAction, action, "action")
        parsed_status = _parse_enum(ReportStatus, status, "status") if status is not None else None
        target_status = resolve_target_status(parsed_action, parsed_status)
        if parsed_action in ACTION_PERMISSIONS:
            rbac.require_permission(actor, ACTION_PERMISSIONS[parsed_action])
        hours = suspension_hours if suspension_hours is not None else self.default_suspension_hours
        if parsed_action is ReportAction.SUSPEND_USER and not MIN_SUSPENSION_HOURS <= hours <= MAX_SUSPENSION_HOURS:
            raise ModerationValidationError(
                {"suspension_hours": f"must be between {MIN_SUSPENSION_HOURS} and {MAX_SUSPENSION_HOURS}"}
            )
        note = (admin_note or "").strip() or None
        if note and len(note) > DETAILS_MAX_LENGTH:
            raise ModerationValidationError({"admin_note": f"must be at most {DETAILS_MAX_LENGTH} characters"})

        report = await self.reports.get(report_id)
        if report is None:
            raise ReportNotFound()
        if report.is_terminal:
            raise InvalidStateTransition("report_already_processed")
        if not can_transition(report.status, target_status):
            raise InvalidStateTransition("invalid_report_transition")

        sanction_reason = None
        if parsed_action in USER_ACTIONS:
            sanction_reason = validate_reason(reason) if reason else self._default_sanction_reason(report)
        resolved = await self._resolve_target(actor, report, parsed_action)

        now = _utcnow()
        claimed = await self.reports.transition(
            report.id,
            expected={report.status},
            status=target_status,
            action=parsed_action,
            moderated_by=actor.id,
            at=now,
            admin_note=note,
        )
        if claimed is None:
            raise InvalidStateTransition("report_already_processed")
        try:
            await self._apply_action(
                actor,
                report,
                parsed_action,
                resolved,
                reason=sanction_reason,
                suspension_hours=hours,
                event_id=event_id,
                actor_ip=actor_ip,
            )
        except Exception:
            await self.reports.revert_transition(report.id, claimed=target_status, previous=report)
            raise

        audit_action = AuditAction.REPORT_DISMISS if target_status is ReportStatus.DISMISSED else AuditAction.REPORT_PROCESS
        await self.audit.record(
            actor_id=actor.id,
            actor_role=actor.role.value,
            action=audit_action,
            target_type=AuditTargetType.REPORT,
            target_id=report.id,
            reason=note or reason,
            snapshot=AuditSnapshot.of(
                {"status": report.status, "action": report.action},
                {"status": claimed.status, "action": claimed.action},
            ),
            metadata={"target_type": report.target_type, "target_id": report.target_id, "action": parsed_action},
            related_report_id=report.id,
            actor_ip=actor_ip,
        )
        if target_status is ReportStatus.ACTION_TAKEN:
            closed = await self.reports.close_open_for_target(
                report.target_type,
                report.target_id,
                exclude_id=report.id,
                action=parsed_action,
                moderated_by=actor.id,
                at=now,
            )
            if closed:
                logger.info(
                    "sibling reports closed",
                    extra={"report_id": report.id, "closed": closed, "target_id": report.target_id},
                )
        obs_metrics.MOD_REPORT_TRANSITIONS_TOTAL.labels(transition=target_status.value).inc()
        return claimed

    async def escalate_report(
        self,
        actor: Principal,
        report_id: str,
        *,
        reason: str | None = None,
        actor_ip: str | None = None,
    ) -> Report:
        rbac.require_permission(actor, rbac.REPORTS_ESCALATE)
        text = validate_reason(reason, required=False)
        report = await self.reports.get(report_id)
        if report is None:
            raise ReportNotFound()
        if report.is_terminal:
            raise InvalidStateTransition("report_already_processed")
        if report.is_escalated:
            raise InvalidStateTransition("report_already_escalated")
        escalated = await self.reports.mark_escalated(
            report.id,
            priority=raise_priority(report.priority),
            escalated_by=actor.id,
            reason=text or "manual escalation",
            at=_utcnow(),
        )
        if escalated is None:
            raise InvalidStateTransition("report_already_escalated")
        await self.audit.record(
            actor_id=actor.id,
            actor_role=actor.role.value,
            action=AuditAction.REPORT_ESCALATE,
            target_type=AuditTargetType.REPORT,
            target_id=report.id,
            reason=text,
            snapshot=AuditSnapshot.of({"priority": report.priority}, {"priority": escalated.priority}),
            metadata={"mode": "manual"},
            related_report_id=report.id,
            actor_ip=actor_ip,
        )
        obs_metrics.MOD_ESCALATIONS_TOTAL.labels(level=escalated.priority.value).inc()
        await self._publish_escalation(escalated, mode="manual")
        return escalated

    async def assign_report(
        self,
        actor: Principal,
        report_id: str,
        assignee_id: str | None,
        *,
        actor_ip: str | None = None,
    ) -> Report:
        rbac.require_permission(actor, rbac.REPORTS_PROCESS)
        report = await self.reports.get(report_id)
        if report is None:
            raise ReportNotFound()
        if report.is_terminal:
            raise InvalidStateTransition("report_already_processed")
        if assignee_id:
            assignee = await self.sanctions.users.get(assignee_id)
            if assignee is None or not rbac.is_staff(assignee.role):
                raise ModerationValidationError({"assignee_id": "must be a staff member"})
        updated = await self.reports.assign(report.id, assignee_id or None, at=_utcnow())
        if updated is None:
            raise ReportNotFound()
        await self.audit.record(
            actor_id=actor.id,
            actor_role=actor.role.value,
            action=AuditAction.REPORT_ASSIGN,
            target_type=AuditTargetType.REPORT,
            target_id=report.id,
            snapshot=AuditSnapshot.of({"assigned_to": report.assigned_to}, {"assigned_to": updated.assigned_to}),
            related_report_id=report.id,
            actor_ip=actor_ip,
        )
        obs_metrics.MOD_REPORT_TRANSITIONS_TOTAL.labels(transition="assigned" if assignee_id else "unassigned").inc()
        return updated

    async def get_report(self, report_id: str) -> Report:
        report = await self.reports.get(report_id)
        if report is None:
            raise ReportNotFound()
        return report

    async def list_reports(self, filters: ReportFilter) -> list[Report]:
        return await self.reports.list_reports(filters)

    async def aggregated_by_target(self, *, limit: int = 50) -> list[TargetAggregate]:
        return await self.reports.aggregate_open_by_target(limit=limit)

    async def stats(self) -> ReportStats:
        return await self.reports.stats()

    async def _reject_self_report(self, reporter_id: str, target_type: TargetType, target_id: str) -> None:
        if target_type is TargetType.USER:
            owner = target_id
        else:
            item = await self.content.fetch(target_type, target_id)
            owner = item.author_id if item else None
        if owner == reporter_id:
            raise ModerationValidationError({"target_id": "cannot report your own account or content"})

    async def _auto_escalate(self, report: Report, report_count: int) -> Report:
        now = _utcnow()
        reason = auto_escalation_reason(report_count)
        escalated = await self.reports.mark_escalated(
            report.id,
            priority=raise_priority(report.priority),
            escalated_by=SYSTEM_ACTOR,
            reason=reason,
            at=now,
        )
        siblings = 0
        for sibling in await self.reports.list_for_target(report.target_type, report.target_id):
            if sibling.id == report.id or sibling.is_escalated or sibling.status not in OPEN_STATUSES:
                continue
            if await self.reports.mark_escalated(
                sibling.id,
                priority=raise_priority(sibling.priority),
                escalated_by=SYSTEM_ACTOR,
                reason=reason,
                at=now,
            ):
                siblings += 1
        result = escalated or report
        await self.audit.record(
            actor_id=SYSTEM_ACTOR,
            actor_role=SYSTEM_ACTOR,
            action=AuditAction.REPORT_ESCALATE,
            target_type=AuditTargetType.REPORT,
            target_id=report.id,
            reason=reason,
            snapshot=AuditSnapshot.of({"priority": report.priority}, {"priority": result.priority}),
            metadata={
                "mode": "auto",
                "report_count": report_count,
                "target_type": report.target_type,
                "target_id": report.target_id,
                "escalated_siblings": siblings,
            },
            related_report_id=report.id,
        )
        obs_metrics.MOD_ESCALATIONS_TOTAL.labels(level=result.priority.value).inc()
        await self._publish_escalation(result, mode="auto")
        return result

    async def _publish_escalation(self, report: Report, *, mode: str) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.xadd_capped(
                self.escalation_stream,
                {
                    "report_id": report.id,
                    "target_type": report.target_type.value,
                    "target_id": report.target_id,
                    "priority": report.priority.value,
                    "mode": mode,
                },
            )
        except Exception:  # noqa: BLE001 - stream consumers are optional
            logger.exception("failed to publish escalation", extra={"report_id": report.id})
            obs_metrics.MOD_SIDE_EFFECT_FAILURES_TOTAL.labels(kind="stream").inc()

    @staticmethod
    def _default_sanction_reason(report: Report) -> str:
        return f"Reported for {report.reason.value.replace('_', ' ')}"

    async def _resolve_target(self, actor: Principal, report: Report, action: ReportAction) -> _ResolvedTarget:
        resolved = _ResolvedTarget()
        if action is ReportAction.NONE:
            return resolved
        if report.target_type is TargetType.USER:
            if action in CONTENT_ACTIONS:
                raise ModerationValidationError({"action": "content actions need a post or comment report"})
            resolved.user_id = report.target_id
        else:
            item = await self.content.fetch(report.target_type, report.target_id)
            if item is None:
                raise InvalidStateTransition("target_missing")
            resolved.content = item
            resolved.snapshot = snapshot_content(item, content_type=report.target_type, content_id=report.target_id)
            if action in USER_ACTIONS:
                resolved.user_id = item.author_id
        if resolved.user_id is not None and action in USER_ACTIONS:
            target = await self.sanctions.ensure_can_sanction(actor, resolved.user_id)
            if target.is_banned:
                raise InvalidStateTransition("user_banned")
        return resolved

    async def _apply_action(
        self,
        actor: Principal,
        report: Report,
        action: ReportAction,
        resolved: _ResolvedTarget,
        *,
        reason: str | None,
        suspension_hours: int,
        event_id: str | None,
        actor_ip: str | None,
    ) -> None:
        if action is ReportAction.NONE:
            return
        if action in CONTENT_ACTIONS:
            await self._apply_content_action(actor, report, action, resolved, actor_ip=actor_ip)
            return
        if resolved.user_id is None or reason is None:
            raise InvalidStateTransition("target_missing")
        common: dict[str, Any] = {
            "content": resolved.snapshot,
            "related_report_id": report.id,
            "event_id": event_id,
            "actor_ip": actor_ip,
        }
        if action is ReportAction.WARN_USER:
            await self.sanctions.warn_user(actor, resolved.user_id, reason, **common)
        elif action is ReportAction.SUSPEND_USER:
            until = _utcnow() + timedelta(hours=suspension_hours)
            await self.sanctions.suspend_user(actor, resolved.user_id, until=until, reason=reason, **common)
        elif action is ReportAction.BAN_USER:
            await self.sanctions.ban_user(actor, resolved.user_id, reason, **common)

    async def _apply_content_action(
        self,
        actor: Principal,
        report: Report,
        action: ReportAction,
        resolved: _ResolvedTarget,
        *,
        actor_ip: str | None,
    ) -> None:
        item = resolved.content
        if item is None or resolved.snapshot is None:
            raise InvalidStateTransition("target_missing")
        if action is ReportAction.HIDE_CONTENT:
            if not await self.content.soft_hide(report.target_type, report.target_id, True):
                raise InvalidStateTransition("target_missing")
            audit_action = AuditAction.CONTENT_HIDE
            snapshot = AuditSnapshot.of({"hidden": item.hidden}, {"hidden": True})
        else:
            if not await self.content.hard_delete(report.target_type, report.target_id):
                raise InvalidStateTransition("target_missing")
            audit_action = AuditAction.CONTENT_DELETE
            snapshot = AuditSnapshot.of(
                {"hidden": item.hidden, "content": resolved.snapshot.excerpt, "media_url": resolved.snapshot.media_url},
                {"deleted": True},
            )
        await self.audit.record(
            actor_id=actor.id,
            actor_role=actor.role.value,
            action=audit_action,
            target_type=_content_audit_type(report.target_type),
            target_id=report.target_id,
            reason=f"report {report.reason.value}",
            snapshot=snapshot,
            metadata={"author_id": item.author_id},
            related_report_id=report.id,
            actor_ip=actor_ip,
        )
        obs_metrics.MOD_SANCTIONS_TOTAL.labels(action=action.value).inc()
