from datetime import datetime, timedelta, timezone

import pytest

from app.moderation.domain.audit import AuditAction, AuditLogger, InMemoryAuditRepository
from app.moderation.domain.errors import (
    InvalidStateTransition,
    ModerationValidationError,
    PermissionDenied,
    UserNotFound,
)
from app.moderation.domain.notifier import InMemoryNotificationSink, SanctionNotifier
from app.moderation.domain.rbac import Principal, Role
from app.moderation.domain.sanctions import (
    AccessStatus,
    InMemoryUserSanctionRepository,
    SanctionService,
    UserModerationState,
    check_user_status,
)

ADMIN = Principal(id="admin-1", role=Role.ADMIN_MODO)
MODO = Principal(id="modo-1", role=Role.MODO)


class _BrokenAuditRepository(InMemoryAuditRepository):
    async def append(self, entry):
        raise RuntimeError("audit store offline")


class _FailingSink:
    async def create(self, recipient_id, type, title, message, data):
        raise ConnectionError("notifications down")


def _service(*, audit_repo=None, sink=None, warnings_before=3):
    users = InMemoryUserSanctionRepository()
    audit_repo = audit_repo if audit_repo is not None else InMemoryAuditRepository()
    sink = sink if sink is not None else InMemoryNotificationSink()
    service = SanctionService(
        users=users,
        audit=AuditLogger(audit_repo),
        notifier=SanctionNotifier(sink),
        warnings_before_auto_suspension=warnings_before,
        auto_suspension_duration=timedelta(days=7),
    )
    users.put(UserModerationState(user_id="u1"))
    return service, users, audit_repo, sink


def _in(hours: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=hours)


@pytest.mark.asyncio
async def test_ban_writes_audit_snapshot_and_wins_over_suspension():
    service, users, audit_repo, sink = _service()
    await service.suspend_user(ADMIN, "u1", until=_in(48), reason="Cooling off period")

    result = await service.ban_user(ADMIN, "u1", "repeated harassment")

    entry = result.audit_entry
    assert entry.action is AuditAction.USER_BAN
    assert entry.snapshot.before["banned_at"] is None
    assert entry.snapshot.after["banned_at"] is not None
    assert entry.snapshot.after["ban_reason"] == "repeated harassment"
    decision = check_user_status(await service.get_state("u1"))
    assert decision.status is AccessStatus.BANNED
    assert decision.code == "ACCOUNT_BANNED"
    assert sink.notifications[-1].type == "sanction_ban"


@pytest.mark.asyncio
async def test_second_suspension_overwrites_first():
    service, _, audit_repo, _ = _service()
    first = _in(24)
    later = _in(72)

    await service.suspend_user(ADMIN, "u1", until=first, reason="First offence")
    result = await service.suspend_user(ADMIN, "u1", until=later, reason="Second offence")

    assert result.user.suspended_until == later
    assert result.user.suspend_reason == "Second offence"
    suspensions = [e for e in audit_repo.entries if e.action is AuditAction.USER_SUSPEND]
    assert len(suspensions) == 2
    assert suspensions[1].snapshot.before["suspended_until"] == first.isoformat()


@pytest.mark.asyncio
async def test_suspension_in_the_past_is_rejected():
    service, users, audit_repo, _ = _service()

    with pytest.raises(InvalidStateTransition) as exc:
        await service.suspend_user(ADMIN, "u1", until=_in(-1), reason="Too late now")

    assert exc.value.error_code == "suspension_in_past"
    assert users.users["u1"].suspended_until is None
    assert audit_repo.entries == []


@pytest.mark.asyncio
async def test_unsuspend_keeps_ban_in_place():
    service, users, _, _ = _service()
    users.put(
        UserModerationState(
            user_id="u2",
            suspended_until=_in(24),
            suspend_reason="Spam",
            banned_at=datetime.now(timezone.utc),
            ban_reason="Fraud",
        )
    )

    result = await service.unsuspend_user(ADMIN, "u2")

    assert result.user.suspended_until is None
    assert check_user_status(result.user).status is AccessStatus.BANNED


@pytest.mark.asyncio
async def test_unsuspend_requires_a_suspension():
    service, _, _, _ = _service()

    with pytest.raises(InvalidStateTransition) as exc:
        await service.unsuspend_user(ADMIN, "u1")
    assert exc.value.error_code == "user_not_suspended"


@pytest.mark.asyncio
async def test_ban_and_unban_round_out_the_cycle():
    service, _, _, sink = _service()
    await service.ban_user(ADMIN, "u1", "Fraudulent listings")

    with pytest.raises(InvalidStateTransition) as exc:
        await service.ban_user(ADMIN, "u1", "Fraudulent listings")
    assert exc.value.error_code == "user_already_banned"

    result = await service.unban_user(ADMIN, "u1", reason="Appeal accepted")
    assert result.user.banned_at is None
    assert result.user.ban_reason is None
    assert sink.notifications[-1].type == "sanction_unban"

    with pytest.raises(InvalidStateTransition) as exc:
        await service.unban_user(ADMIN, "u1")
    assert exc.value.error_code == "user_not_banned"


@pytest.mark.asyncio
async def test_banned_users_cannot_be_warned_or_suspended():
    service, _, _, _ = _service()
    await service.ban_user(ADMIN, "u1", "Fraudulent listings")

    with pytest.raises(InvalidStateTransition) as exc:
        await service.warn_user(ADMIN, "u1", "Late warning")
    assert exc.value.error_code == "user_banned"
    with pytest.raises(InvalidStateTransition):
        await service.suspend_user(ADMIN, "u1", until=_in(1), reason="Late suspension")


@pytest.mark.asyncio
async def test_warning_does_not_block_access():
    service, _, audit_repo, sink = _service()

    result = await service.warn_user(MODO, "u1", "Off-topic spam", expires_in_days=30)

    assert len(result.user.warnings) == 1
    assert result.user.warnings[0].expires_at is not None
    assert result.auto_sanction is None
    assert check_user_status(result.user).allowed
    assert audit_repo.entries[-1].action is AuditAction.USER_WARN
    assert sink.notifications[-1].type == "sanction_warn"


@pytest.mark.asyncio
async def test_remove_warning():
    service, _, audit_repo, sink = _service()
    warned = await service.warn_user(MODO, "u1", "Off-topic spam")
    warning_id = warned.user.warnings[0].id

    result = await service.remove_warning(MODO, "u1", warning_id, reason="Issued by mistake")

    assert result.user.warnings == []
    assert audit_repo.entries[-1].action is AuditAction.USER_WARN_REMOVE
    assert audit_repo.entries[-1].metadata["warning"]["id"] == warning_id
    assert sink.notifications[-1].type == "sanction_unwarn"

    with pytest.raises(ModerationValidationError):
        await service.remove_warning(MODO, "u1", warning_id)


@pytest.mark.asyncio
async def test_third_warning_triggers_automatic_suspension_then_ban():
    service, _, audit_repo, sink = _service(warnings_before=3)

    for idx in range(2):
        result = await service.warn_user(ADMIN, "u1", f"Warning number {idx}")
        assert result.auto_sanction is None
    result = await service.warn_user(ADMIN, "u1", "Warning number 2")

    assert result.auto_sanction == "suspend"
    assert result.user.is_suspended()
    assert result.user.auto_suspensions_count == 1
    assert result.user.warn_count_since_auto_suspension == 0
    auto = audit_repo.entries[-1]
    assert auto.actor_id == "system"
    assert auto.action is AuditAction.USER_SUSPEND
    assert auto.metadata["trigger_type"] == "AUTO_SUSPEND"
    assert sink.notifications[-1].type == "sanction_suspend"

    for idx in range(3):
        result = await service.warn_user(ADMIN, "u1", f"Further warning {idx}")
    assert result.auto_sanction == "ban"
    assert result.user.is_banned
    assert audit_repo.entries[-1].metadata["trigger_type"] == "AUTO_BAN"


@pytest.mark.asyncio
async def test_replayed_event_is_applied_once():
    service, _, audit_repo, sink = _service()

    first = await service.warn_user(MODO, "u1", "Duplicate delivery", event_id="evt-1")
    second = await service.warn_user(MODO, "u1", "Duplicate delivery", event_id="evt-1")

    assert not first.idempotent
    assert second.idempotent
    assert len(second.user.warnings) == 1
    assert len(audit_repo.entries) == 1
    assert len(sink.notifications) == 1


@pytest.mark.asyncio
async def test_audit_failure_does_not_block_the_sanction():
    service, _, _, sink = _service(audit_repo=_BrokenAuditRepository())

    result = await service.ban_user(ADMIN, "u1", "Spam network operator")

    assert result.audit_entry is None
    assert result.user.is_banned
    assert sink.notifications[-1].type == "sanction_ban"


@pytest.mark.asyncio
async def test_notification_failure_does_not_block_the_sanction():
    service, _, audit_repo, _ = _service(sink=_FailingSink())

    result = await service.ban_user(ADMIN, "u1", "Spam network operator")

    assert result.user.is_banned
    assert audit_repo.entries[-1].action is AuditAction.USER_BAN


@pytest.mark.asyncio
async def test_hierarchy_and_self_checks():
    service, users, _, _ = _service()
    users.put(UserModerationState(user_id="admin-2", role=Role.ADMIN_MODO))

    with pytest.raises(PermissionDenied) as exc:
        await service.warn_user(MODO, "admin-2", "Not allowed to do this")
    assert exc.value.error_code == "insufficient_hierarchy"

    with pytest.raises(PermissionDenied) as exc:
        await service.warn_user(ADMIN, "admin-2", "Peers cannot sanction peers")
    assert exc.value.error_code == "insufficient_hierarchy"

    with pytest.raises(PermissionDenied) as exc:
        await service.warn_user(ADMIN, "admin-1", "Self sanction attempt")
    assert exc.value.error_code == "cannot_sanction_self"

    root = Principal(id="root", role=Role.SUPER_ADMIN)
    result = await service.warn_user(root, "admin-2", "Super admins may act on anyone")
    assert len(result.user.warnings) == 1


@pytest.mark.asyncio
async def test_missing_permission_is_rejected_before_any_read():
    service, users, audit_repo, _ = _service()

    with pytest.raises(PermissionDenied) as exc:
        await service.ban_user(MODO, "u1", "Moderators cannot ban")

    assert exc.value.error_code == "missing_permission"
    assert not users.users["u1"].is_banned
    assert audit_repo.entries == []


@pytest.mark.asyncio
async def test_reason_validation():
    service, _, _, _ = _service()

    with pytest.raises(ModerationValidationError) as exc:
        await service.ban_user(ADMIN, "u1", "bad")
    assert "reason" in exc.value.fields

    with pytest.raises(ModerationValidationError):
        await service.warn_user(ADMIN, "u1", "x" * 501)

    with pytest.raises(ModerationValidationError) as exc:
        await service.warn_user(ADMIN, "u1", "Valid reason", expires_in_days=0)
    assert "expires_in_days" in exc.value.fields


@pytest.mark.asyncio
async def test_unknown_user():
    service, _, _, _ = _service()

    with pytest.raises(UserNotFound):
        await service.warn_user(ADMIN, "ghost", "Nobody home here")


@pytest.mark.asyncio
async def test_surveillance_toggle():
    service, _, audit_repo, _ = _service()

    result = await service.set_surveillance(ADMIN, "u1", active=True, reason="Linked to spam ring")
    assert result.user.surveillance.active
    assert result.user.surveillance.added_by == "admin-1"
    assert audit_repo.entries[-1].action is AuditAction.USER_SURVEILLANCE_ON

    with pytest.raises(InvalidStateTransition) as exc:
        await service.set_surveillance(ADMIN, "u1", active=True)
    assert exc.value.error_code == "surveillance_unchanged"

    result = await service.set_surveillance(ADMIN, "u1", active=False)
    assert not result.user.surveillance.active
    assert audit_repo.entries[-1].action is AuditAction.USER_SURVEILLANCE_OFF


def test_status_gate_does_not_mutate():
    state = UserModerationState(user_id="u3", suspended_until=_in(-2), suspend_reason="Expired")

    decision = check_user_status(state)

    assert decision.allowed
    assert state.suspended_until is not None
