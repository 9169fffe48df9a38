"""Per-user sanction state: warnings, suspension, ban and surveillance."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional, Protocol
from uuid import uuid4

from app.moderation.domain import rbac
from app.moderation.domain.audit import AuditAction, AuditLogEntry, AuditLogger, AuditSnapshot, AuditTargetType
from app.moderation.domain.content import ContentSnapshot
from app.moderation.domain.errors import (
    InvalidStateTransition,
    ModerationValidationError,
    PermissionDenied,
    UserNotFound,
)
from app.moderation.domain.notifier import SanctionNotice, SanctionNotifier, SanctionType
from app.moderation.domain.rbac import Principal, Role
from app.moderation.domain.reports import SYSTEM_ACTOR
from app.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

REASON_MIN_LENGTH = 5
REASON_MAX_LENGTH = 500
WARNING_MAX_EXPIRY_DAYS = 365
DEFAULT_WARNINGS_BEFORE_AUTO_SUSPENSION = 3
DEFAULT_AUTO_SUSPENSION = timedelta(days=7)

ACCOUNT_BANNED = "ACCOUNT_BANNED"
ACCOUNT_SUSPENDED = "ACCOUNT_SUSPENDED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


@dataclass(slots=True)
class WarningRecord:
    id: str
    reason: str
    issued_by: str
    issued_at: datetime
    expires_at: Optional[datetime] = None

    def is_active(self, now: datetime | None = None) -> bool:
        now = now or _utcnow()
        return self.expires_at is None or self.expires_at > now

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "reason": self.reason,
            "issued_by": self.issued_by,
            "issued_at": self.issued_at,
            "expires_at": self.expires_at,
        }


@dataclass(slots=True)
class Surveillance:
    active: bool = False
    added_by: Optional[str] = None
    added_at: Optional[datetime] = None


@dataclass(slots=True)
class UserModerationState:
    user_id: str
    role: Role = Role.USER
    created_at: Optional[datetime] = None
    warnings: list[WarningRecord] = field(default_factory=list)
    suspended_until: Optional[datetime] = None
    suspend_reason: Optional[str] = None
    banned_at: Optional[datetime] = None
    ban_reason: Optional[str] = None
    surveillance: Surveillance = field(default_factory=Surveillance)
    warn_count_since_auto_suspension: int = 0
    auto_suspensions_count: int = 0

    @property
    def is_banned(self) -> bool:
        return self.banned_at is not None

    def is_suspended(self, now: datetime | None = None) -> bool:
        if self.suspended_until is None:
            return False
        return _aware(self.suspended_until) > (now or _utcnow())

    def active_warnings(self, now: datetime | None = None) -> list[WarningRecord]:
        now = now or _utcnow()
        return [w for w in self.warnings if w.is_active(now)]

    def find_warning(self, warning_id: str) -> WarningRecord | None:
        for warning in self.warnings:
            if warning.id == warning_id:
                return warning
        return None


@dataclass(slots=True)
class SanctionChange:
    """Before and after images of one atomic user update."""

    before: UserModerationState
    after: UserModerationState


class AccessStatus(str, Enum):
    ALLOWED = "allowed"
    BANNED = "banned"
    SUSPENDED = "suspended"


@dataclass(slots=True, frozen=True)
class AccessDecision:
    status: AccessStatus
    until: Optional[datetime] = None
    reason: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.status is AccessStatus.ALLOWED

    @property
    def code(self) -> str | None:
        if self.status is AccessStatus.BANNED:
            return ACCOUNT_BANNED
        if self.status is AccessStatus.SUSPENDED:
            return ACCOUNT_SUSPENDED
        return None


def check_user_status(state: UserModerationState, *, now: datetime | None = None) -> AccessDecision:
    """Decide access for an already loaded user; a ban always wins."""
    if state.is_banned:
        return AccessDecision(status=AccessStatus.BANNED, reason=state.ban_reason)
    if state.is_suspended(now):
        return AccessDecision(
            status=AccessStatus.SUSPENDED,
            until=_aware(state.suspended_until),  # type: ignore[arg-type]
            reason=state.suspend_reason,
        )
    return AccessDecision(status=AccessStatus.ALLOWED)


@dataclass(slots=True)
class UserStatusCounts:
    total: int = 0
    active: int = 0
    suspended: int = 0
    banned: int = 0
    under_surveillance: int = 0


class UserSanctionRepository(Protocol):
    """Every mutator is one atomic update returning the before/after images.

    Mutators return None when the row is missing or the guard in the update
    (e.g. "not banned") no longer holds.
    """

    async def get(self, user_id: str) -> UserModerationState | None:
        ...

    async def add_warning(self, user_id: str, warning: WarningRecord) -> SanctionChange | None:
        ...

    async def remove_warning(self, user_id: str, warning_id: str) -> SanctionChange | None:
        ...

    async def set_suspension(
        self,
        user_id: str,
        *,
        until: datetime,
        reason: str,
        automatic: bool = False,
    ) -> SanctionChange | None:
        ...

    async def clear_suspension(self, user_id: str) -> SanctionChange | None:
        ...

    async def set_ban(
        self,
        user_id: str,
        *,
        banned_at: datetime,
        reason: str,
        automatic: bool = False,
    ) -> SanctionChange | None:
        ...

    async def clear_ban(self, user_id: str) -> SanctionChange | None:
        ...

    async def set_surveillance(self, user_id: str, surveillance: Surveillance) -> SanctionChange | None:
        ...

    async def list_risk_candidates(self, *, limit: int = 200) -> list[UserModerationState]:
        ...

    async def status_counts(self, *, now: datetime) -> UserStatusCounts:
        ...


class InMemoryUserSanctionRepository(UserSanctionRepository):
    """Dict-backed store; each mutator runs without awaiting, so it is atomic on the loop."""

    def __init__(self) -> None:
        self.users: dict[str, UserModerationState] = {}

    def put(self, state: UserModerationState) -> UserModerationState:
        self.users[state.user_id] = state
        return state

    async def get(self, user_id: str) -> UserModerationState | None:
        state = self.users.get(user_id)
        return copy.deepcopy(state) if state else None

    def _mutate(self, user_id: str, guard, mutation) -> SanctionChange | None:
        state = self.users.get(user_id)
        if state is None or not guard(state):
            return None
        before = copy.deepcopy(state)
        mutation(state)
        return SanctionChange(before=before, after=copy.deepcopy(state))

    async def add_warning(self, user_id: str, warning: WarningRecord) -> SanctionChange | None:
        def apply(state: UserModerationState) -> None:
            state.warnings.append(warning)
            state.warn_count_since_auto_suspension += 1

        return self._mutate(user_id, lambda s: not s.is_banned, apply)

    async def remove_warning(self, user_id: str, warning_id: str) -> SanctionChange | None:
        def apply(state: UserModerationState) -> None:
            state.warnings = [w for w in state.warnings if w.id != warning_id]
            state.warn_count_since_auto_suspension = max(0, state.warn_count_since_auto_suspension - 1)

        return self._mutate(user_id, lambda s: s.find_warning(warning_id) is not None, apply)

    async def set_suspension(
        self,
        user_id: str,
        *,
        until: datetime,
        reason: str,
        automatic: bool = False,
    ) -> SanctionChange | None:
        def apply(state: UserModerationState) -> None:
            state.suspended_until = until
            state.suspend_reason = reason
            if automatic:
                state.warn_count_since_auto_suspension = 0
                state.auto_suspensions_count += 1

        return self._mutate(user_id, lambda s: not s.is_banned, apply)

    async def clear_suspension(self, user_id: str) -> SanctionChange | None:
        def apply(state: UserModerationState) -> None:
            state.suspended_until = None
            state.suspend_reason = None

        return self._mutate(user_id, lambda s: s.suspended_until is not None, apply)

    async def set_ban(
        self,
        user_id: str,
        *,
        banned_at: datetime,
        reason: str,
        automatic: bool = False,
    ) -> SanctionChange | None:
        def apply(state: UserModerationState) -> None:
            state.banned_at = banned_at
            state.ban_reason = reason
            if automatic:
                state.warn_count_since_auto_suspension = 0

        return self._mutate(user_id, lambda s: not s.is_banned, apply)

    async def clear_ban(self, user_id: str) -> SanctionChange | None:
        def apply(state: UserModerationState) -> None:
            state.banned_at = None
            state.ban_reason = None

        return self._mutate(user_id, lambda s: s.is_banned, apply)

    async def set_surveillance(self, user_id: str, surveillance: Surveillance) -> SanctionChange | None:
        def apply(state: UserModerationState) -> None:
            state.surveillance = surveillance

        return self._mutate(user_id, lambda s: s.surveillance.active != surveillance.active, apply)

    async def list_risk_candidates(self, *, limit: int = 200) -> list[UserModerationState]:
        candidates = [copy.deepcopy(s) for s in self.users.values() if not s.is_banned]
        return candidates[:limit]

    async def status_counts(self, *, now: datetime) -> UserStatusCounts:
        counts = UserStatusCounts()
        for state in self.users.values():
            counts.total += 1
            if state.surveillance.active:
                counts.under_surveillance += 1
            if state.is_banned:
                counts.banned += 1
            elif state.is_suspended(now):
                counts.suspended += 1
            else:
                counts.active += 1
        return counts


WARNING_FIELDS = ("warning_count", "warn_count_since_auto_suspension")
SUSPENSION_FIELDS = ("suspended_until", "suspend_reason")
BAN_FIELDS = ("banned_at", "ban_reason")
SURVEILLANCE_FIELDS = ("surveillance",)


def _field_image(state: UserModerationState, fields: tuple[str, ...]) -> dict[str, Any]:
    image: dict[str, Any] = {}
    for name in fields:
        if name == "warning_count":
            image[name] = len(state.warnings)
        elif name == "surveillance":
            image[name] = {
                "active": state.surveillance.active,
                "added_by": state.surveillance.added_by,
                "added_at": state.surveillance.added_at,
            }
        else:
            image[name] = getattr(state, name)
    return image


def snapshot_of(change: SanctionChange, *fields: str) -> AuditSnapshot:
    return AuditSnapshot.of(_field_image(change.before, fields), _field_image(change.after, fields))


def validate_reason(reason: str | None, *, required: bool = True) -> str | None:
    text = (reason or "").strip()
    if not text:
        if required:
            raise ModerationValidationError({"reason": "required"})
        return None
    if len(text) < REASON_MIN_LENGTH:
        raise ModerationValidationError({"reason": f"must be at least {REASON_MIN_LENGTH} characters"})
    if len(text) > REASON_MAX_LENGTH:
        raise ModerationValidationError({"reason": f"must be at most {REASON_MAX_LENGTH} characters"})
    return text


@dataclass(slots=True)
class SanctionResult:
    user: UserModerationState
    audit_entry: Optional[AuditLogEntry] = None
    idempotent: bool = False
    auto_sanction: Optional[str] = None


@dataclass
class SanctionService:
    users: UserSanctionRepository
    audit: AuditLogger
    notifier: SanctionNotifier | None = None
    warnings_before_auto_suspension: int = DEFAULT_WARNINGS_BEFORE_AUTO_SUSPENSION
    auto_suspension_duration: timedelta = DEFAULT_AUTO_SUSPENSION

    async def get_state(self, user_id: str) -> UserModerationState:
        state = await self.users.get(user_id)
        if state is None:
            raise UserNotFound()
        return state

    async def warn_user(
        self,
        actor: Principal,
        user_id: str,
        reason: str,
        *,
        expires_in_days: int | None = None,
        content: ContentSnapshot | None = None,
        related_report_id: str | None = None,
        event_id: str | None = None,
        actor_ip: str | None = None,
    ) -> SanctionResult:
        rbac.require_permission(actor, rbac.USERS_WARN)
        text = validate_reason(reason)
        if expires_in_days is not None and not 1 <= expires_in_days <= WARNING_MAX_EXPIRY_DAYS:
            raise ModerationValidationError({"expires_in_days": f"must be between 1 and {WARNING_MAX_EXPIRY_DAYS}"})
        if await self.audit.has_event(event_id):
            return await self._replay(user_id)
        target = await self._load_target(actor, user_id)
        if target.is_banned:
            raise InvalidStateTransition("user_banned")
        now = _utcnow()
        warning = WarningRecord(
            id=str(uuid4()),
            reason=text or "",
            issued_by=actor.id,
            issued_at=now,
            expires_at=now + timedelta(days=expires_in_days) if expires_in_days else None,
        )
        change = await self.users.add_warning(user_id, warning)
        if change is None:
            raise InvalidStateTransition("user_banned")
        metadata: dict[str, Any] = {"warning_id": warning.id}
        if content is not None:
            metadata["content"] = content.to_dict()
        entry = await self.audit.record(
            actor_id=actor.id,
            actor_role=actor.role.value,
            action=AuditAction.USER_WARN,
            target_type=AuditTargetType.USER,
            target_id=user_id,
            reason=text,
            snapshot=snapshot_of(change, *WARNING_FIELDS),
            metadata=metadata,
            related_report_id=related_report_id,
            event_id=event_id,
            actor_ip=actor_ip,
        )
        await self._notify(
            SanctionType.WARN,
            user_id,
            actor_id=actor.id,
            actor_role=actor.role.value,
            reason=text,
            event_id=event_id,
            content=content,
        )
        obs_metrics.MOD_SANCTIONS_TOTAL.labels(action="warn").inc()
        result = SanctionResult(user=change.after, audit_entry=entry)
        auto = await self._apply_auto_escalation(change.after, source_event_id=event_id)
        if auto is not None:
            result.user, result.auto_sanction = auto
        return result

    async def remove_warning(
        self,
        actor: Principal,
        user_id: str,
        warning_id: str,
        *,
        reason: str | None = None,
        event_id: str | None = None,
        actor_ip: str | None = None,
    ) -> SanctionResult:
        rbac.require_permission(actor, rbac.USERS_WARN)
        text = validate_reason(reason, required=False)
        if await self.audit.has_event(event_id):
            return await self._replay(user_id)
        target = await self._load_target(actor, user_id)
        removed = target.find_warning(warning_id)
        if removed is None:
            raise ModerationValidationError({"warning_id": "unknown warning"})
        change = await self.users.remove_warning(user_id, warning_id)
        if change is None:
            raise InvalidStateTransition("warning_already_removed")
        entry = await self.audit.record(
            actor_id=actor.id,
            actor_role=actor.role.value,
            action=AuditAction.USER_WARN_REMOVE,
            target_type=AuditTargetType.USER,
            target_id=user_id,
            reason=text,
            snapshot=snapshot_of(change, *WARNING_FIELDS),
            metadata={"warning": removed.to_dict()},
            event_id=event_id,
            actor_ip=actor_ip,
        )
        await self._notify(
            SanctionType.UNWARN,
            user_id,
            actor_id=actor.id,
            actor_role=actor.role.value,
            reason=text,
            event_id=event_id,
        )
        obs_metrics.MOD_SANCTIONS_TOTAL.labels(action="warn_remove").inc()
        return SanctionResult(user=change.after, audit_entry=entry)

    async def suspend_user(
        self,
        actor: Principal,
        user_id: str,
        *,
        until: datetime,
        reason: str,
        content: ContentSnapshot | None = None,
        related_report_id: str | None = None,
        event_id: str | None = None,
        actor_ip: str | None = None,
    ) -> SanctionResult:
        rbac.require_permission(actor, rbac.USERS_SUSPEND)
        text = validate_reason(reason)
        until = _aware(until)
        if until <= _utcnow():
            raise InvalidStateTransition("suspension_in_past")
        if await self.audit.has_event(event_id):
            return await self._replay(user_id)
        target = await self._load_target(actor, user_id)
        if target.is_banned:
            raise InvalidStateTransition("user_banned")
        change = await self.users.set_suspension(user_id, until=until, reason=text or "")
        if change is None:
            raise InvalidStateTransition("user_banned")
        metadata: dict[str, Any] = {}
        if content is not None:
            metadata["content"] = content.to_dict()
        entry = await self.audit.record(
            actor_id=actor.id,
            actor_role=actor.role.value,
            action=AuditAction.USER_SUSPEND,
            target_type=AuditTargetType.USER,
            target_id=user_id,
            reason=text,
            snapshot=snapshot_of(change, *SUSPENSION_FIELDS),
            metadata=metadata,
            related_report_id=related_report_id,
            event_id=event_id,
            actor_ip=actor_ip,
        )
        await self._notify(
            SanctionType.SUSPEND,
            user_id,
            actor_id=actor.id,
            actor_role=actor.role.value,
            reason=text,
            event_id=event_id,
            suspended_until=until,
            content=content,
        )
        obs_metrics.MOD_SANCTIONS_TOTAL.labels(action="suspend").inc()
        return SanctionResult(user=change.after, audit_entry=entry)

    async def unsuspend_user(
        self,
        actor: Principal,
        user_id: str,
        *,
        reason: str | None = None,
        event_id: str | None = None,
        actor_ip: str | None = None,
    ) -> SanctionResult:
        rbac.require_permission(actor, rbac.USERS_SUSPEND)
        text = validate_reason(reason, required=False)
        if await self.audit.has_event(event_id):
            return await self._replay(user_id)
        target = await self._load_target(actor, user_id)
        if target.suspended_until is None:
            raise InvalidStateTransition("user_not_suspended")
        change = await self.users.clear_suspension(user_id)
        if change is None:
            raise InvalidStateTransition("user_not_suspended")
        entry = await self.audit.record(
            actor_id=actor.id,
            actor_role=actor.role.value,
            action=AuditAction.USER_UNSUSPEND,
            target_type=AuditTargetType.USER,
            target_id=user_id,
            reason=text,
            snapshot=snapshot_of(change, *SUSPENSION_FIELDS),
            event_id=event_id,
            actor_ip=actor_ip,
        )
        await self._notify(
            SanctionType.UNSUSPEND,
            user_id,
            actor_id=actor.id,
            actor_role=actor.role.value,
            reason=text,
            event_id=event_id,
        )
        obs_metrics.MOD_SANCTIONS_TOTAL.labels(action="unsuspend").inc()
        return SanctionResult(user=change.after, audit_entry=entry)

    async def ban_user(
        self,
        actor: Principal,
        user_id: str,
        reason: str,
        *,
        content: ContentSnapshot | None = None,
        related_report_id: str | None = None,
        event_id: str | None = None,
        actor_ip: str | None = None,
    ) -> SanctionResult:
        rbac.require_permission(actor, rbac.USERS_BAN)
        text = validate_reason(reason)
        if await self.audit.has_event(event_id):
            return await self._replay(user_id)
        target = await self._load_target(actor, user_id)
        if target.is_banned:
            raise InvalidStateTransition("user_already_banned")
        change = await self.users.set_ban(user_id, banned_at=_utcnow(), reason=text or "")
        if change is None:
            raise InvalidStateTransition("user_already_banned")
        metadata: dict[str, Any] = {}
        if content is not None:
            metadata["content"] = content.to_dict()
        entry = await self.audit.record(
            actor_id=actor.id,
            actor_role=actor.role.value,
            action=AuditAction.USER_BAN,
            target_type=AuditTargetType.USER,
            target_id=user_id,
            reason=text,
            snapshot=snapshot_of(change, *BAN_FIELDS),
            metadata=metadata,
            related_report_id=related_report_id,
            event_id=event_id,
            actor_ip=actor_ip,
        )
        await self._notify(
            SanctionType.BAN,
            user_id,
            actor_id=actor.id,
            actor_role=actor.role.value,
            reason=text,
            event_id=event_id,
            content=content,
        )
        obs_metrics.MOD_SANCTIONS_TOTAL.labels(action="ban").inc()
        return SanctionResult(user=change.after, audit_entry=entry)

    async def unban_user(
        self,
        actor: Principal,
        user_id: str,
        *,
        reason: str | None = None,
        event_id: str | None = None,
        actor_ip: str | None = None,
    ) -> SanctionResult:
        rbac.require_permission(actor, rbac.USERS_UNBAN)
        text = validate_reason(reason, required=False)
        if await self.audit.has_event(event_id):
            return await self._replay(user_id)
        target = await self._load_target(actor, user_id)
        if not target.is_banned:
            raise InvalidStateTransition("user_not_banned")
        change = await self.users.clear_ban(user_id)
        if change is None:
            raise InvalidStateTransition("user_not_banned")
        entry = await self.audit.record(
            actor_id=actor.id,
            actor_role=actor.role.value,
            action=AuditAction.USER_UNBAN,
            target_type=AuditTargetType.USER,
            target_id=user_id,
            reason=text,
            snapshot=snapshot_of(change, *BAN_FIELDS),
            event_id=event_id,
            actor_ip=actor_ip,
        )
        await self._notify(
            SanctionType.UNBAN,
            user_id,
            actor_id=actor.id,
            actor_role=actor.role.value,
            reason=text,
            event_id=event_id,
        )
        obs_metrics.MOD_SANCTIONS_TOTAL.labels(action="unban").inc()
        return SanctionResult(user=change.after, audit_entry=entry)

    async def set_surveillance(
        self,
        actor: Principal,
        user_id: str,
        *,
        active: bool,
        reason: str | None = None,
        event_id: str | None = None,
        actor_ip: str | None = None,
    ) -> SanctionResult:
        rbac.require_permission(actor, rbac.USERS_SURVEILLANCE)
        text = validate_reason(reason, required=False)
        if await self.audit.has_event(event_id):
            return await self._replay(user_id)
        target = await self._load_target(actor, user_id)
        if target.surveillance.active == active:
            raise InvalidStateTransition("surveillance_unchanged")
        surveillance = (
            Surveillance(active=True, added_by=actor.id, added_at=_utcnow()) if active else Surveillance()
        )
        change = await self.users.set_surveillance(user_id, surveillance)
        if change is None:
            raise InvalidStateTransition("surveillance_unchanged")
        entry = await self.audit.record(
            actor_id=actor.id,
            actor_role=actor.role.value,
            action=AuditAction.USER_SURVEILLANCE_ON if active else AuditAction.USER_SURVEILLANCE_OFF,
            target_type=AuditTargetType.USER,
            target_id=user_id,
            reason=text,
            snapshot=snapshot_of(change, *SURVEILLANCE_FIELDS),
            event_id=event_id,
            actor_ip=actor_ip,
        )
        obs_metrics.MOD_SANCTIONS_TOTAL.labels(action="surveillance_on" if active else "surveillance_off").inc()
        return SanctionResult(user=change.after, audit_entry=entry)

    async def ensure_can_sanction(self, actor: Principal, user_id: str) -> UserModerationState:
        """Hierarchy and existence check used before a report claims the target."""
        return await self._load_target(actor, user_id)

    async def _load_target(self, actor: Principal, user_id: str) -> UserModerationState:
        if actor.id == user_id:
            raise PermissionDenied("cannot_sanction_self")
        target = await self.get_state(user_id)
        if not rbac.can_moderate(actor, target.role):
            obs_metrics.MOD_ACCESS_DENIED_TOTAL.labels(code="insufficient_hierarchy").inc()
            raise PermissionDenied("insufficient_hierarchy")
        return target

    async def _replay(self, user_id: str) -> SanctionResult:
        logger.info("sanction replay ignored", extra={"user_id": user_id})
        return SanctionResult(user=await self.get_state(user_id), idempotent=True)

    async def _apply_auto_escalation(
        self,
        state: UserModerationState,
        *,
        source_event_id: str | None,
    ) -> tuple[UserModerationState, str] | None:
        if state.warn_count_since_auto_suspension < self.warnings_before_auto_suspension:
            return None
        warning_count = state.warn_count_since_auto_suspension
        event_id = f"{source_event_id}:auto" if source_event_id else None
        now = _utcnow()
        if state.auto_suspensions_count == 0:
            until = now + self.auto_suspension_duration
            reason = f"Automatic suspension after {warning_count} warnings"
            change = await self.users.set_suspension(state.user_id, until=until, reason=reason, automatic=True)
            if change is None:
                return None
            action, kind, fields, trigger = AuditAction.USER_SUSPEND, SanctionType.SUSPEND, SUSPENSION_FIELDS, "AUTO_SUSPEND"
        else:
            until = None
            reason = f"Automatic ban after {warning_count} further warnings"
            change = await self.users.set_ban(state.user_id, banned_at=now, reason=reason, automatic=True)
            if change is None:
                return None
            action, kind, fields, trigger = AuditAction.USER_BAN, SanctionType.BAN, BAN_FIELDS, "AUTO_BAN"
        await self.audit.record(
            actor_id=SYSTEM_ACTOR,
            actor_role=SYSTEM_ACTOR,
            action=action,
            target_type=AuditTargetType.USER,
            target_id=state.user_id,
            reason=reason,
            snapshot=snapshot_of(change, *fields, "warn_count_since_auto_suspension", "auto_suspensions_count"),
            metadata={"trigger_type": trigger, "warning_count": warning_count},
            event_id=event_id,
        )
        await self._notify(
            kind,
            state.user_id,
            actor_id=SYSTEM_ACTOR,
            actor_role=SYSTEM_ACTOR,
            reason=reason,
            event_id=event_id,
            suspended_until=until,
        )
        obs_metrics.MOD_SANCTIONS_TOTAL.labels(action=trigger.lower()).inc()
        logger.info(
            "automatic sanction applied",
            extra={"user_id": state.user_id, "trigger_type": trigger, "warning_count": warning_count},
        )
        return change.after, kind.value

    async def _notify(
        self,
        sanction_type: SanctionType,
        user_id: str,
        *,
        actor_id: str,
        actor_role: str,
        reason: str | None,
        event_id: str | None,
        suspended_until: datetime | None = None,
        content: ContentSnapshot | None = None,
    ) -> None:
        if self.notifier is None:
            return
        await self.notifier.notify(
            SanctionNotice(
                sanction_type=sanction_type,
                user_id=user_id,
                actor_id=actor_id,
                actor_role=actor_role,
                reason=reason,
                event_id=event_id,
                suspended_until=suspended_until,
                content=content,
            )
        )
