from datetime import datetime, timedelta, timezone

import pytest

from app.infra.auth import AuthenticatedUser
from app.moderation.domain import rbac
from app.moderation.domain.errors import AccountBlocked, PermissionDenied
from app.moderation.domain.gates import enforce_account_status, require_min_role, require_permission
from app.moderation.domain.rbac import Principal, Role
from app.moderation.domain.sanctions import UserModerationState

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


def test_unknown_and_clean_users_pass():
    enforce_account_status(None, now=NOW)
    enforce_account_status(UserModerationState(user_id="u1"), now=NOW)


def test_suspended_user_gets_code_and_expiry():
    until = NOW + timedelta(hours=5)
    state = UserModerationState(user_id="u1", suspended_until=until, suspend_reason="Spam burst")

    with pytest.raises(AccountBlocked) as exc:
        enforce_account_status(state, now=NOW)

    payload = exc.value.to_payload()
    assert exc.value.status_code == 403
    assert payload["code"] == "ACCOUNT_SUSPENDED"
    assert payload["suspended_until"] == until.isoformat()
    assert payload["reason"] == "Spam burst"


def test_expired_suspension_passes():
    state = UserModerationState(user_id="u1", suspended_until=NOW - timedelta(seconds=1))
    enforce_account_status(state, now=NOW)


def test_naive_suspension_end_is_treated_as_utc():
    state = UserModerationState(user_id="u1", suspended_until=datetime(2026, 6, 2))
    with pytest.raises(AccountBlocked):
        enforce_account_status(state, now=NOW)


def test_ban_wins_over_suspension():
    state = UserModerationState(
        user_id="u1",
        suspended_until=NOW + timedelta(days=1),
        banned_at=NOW - timedelta(days=1),
        ban_reason="Fraud",
    )

    with pytest.raises(AccountBlocked) as exc:
        enforce_account_status(state, now=NOW)

    assert exc.value.error_code == "ACCOUNT_BANNED"
    assert "suspended_until" not in exc.value.to_payload()


def test_role_parsing_and_aliases():
    assert Role.parse(None) is Role.USER
    assert Role.parse(" MODO ") is Role.MODO
    assert Role.parse("admin") is Role.ADMIN_MODO
    assert Role.parse("wizard") is Role.USER
    assert rbac.highest_role(["user", "modo_test", "modo"]) is Role.MODO


def test_principal_from_token_claims():
    user = AuthenticatedUser(id="s1", roles=("modo_test",), permissions=(rbac.AUDIT_VIEW,))
    principal = rbac.principal_from_user(user)

    assert principal.role is Role.MODO_TEST
    assert principal.has_permission(rbac.REPORTS_VIEW)
    assert principal.has_permission(rbac.AUDIT_VIEW)
    assert not principal.has_permission(rbac.REPORTS_PROCESS)


def test_super_admin_wildcard():
    root = Principal(id="root", role=Role.SUPER_ADMIN)
    assert root.has_permission("anything:at_all")
    assert rbac.can_moderate(root, Role.SUPER_ADMIN)


def test_hierarchy_requires_strictly_higher_level():
    modo = Principal(id="m", role=Role.MODO)
    assert rbac.can_moderate(modo, "user")
    assert rbac.can_moderate(modo, Role.MODO_TEST)
    assert not rbac.can_moderate(modo, Role.MODO)


def test_permission_and_role_gates():
    trainee = Principal(id="t", role=Role.MODO_TEST)

    assert require_permission(trainee, rbac.REPORTS_VIEW) is trainee
    with pytest.raises(PermissionDenied) as exc:
        require_permission(trainee, rbac.USERS_BAN)
    assert exc.value.error_code == "missing_permission"

    assert require_min_role(trainee, Role.MODO_TEST) is trainee
    with pytest.raises(PermissionDenied) as exc:
        require_min_role(trainee, Role.ADMIN_MODO)
    assert exc.value.error_code == "insufficient_role"
