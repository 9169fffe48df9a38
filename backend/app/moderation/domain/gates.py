"""Request gates: account status first, then staff role/permission checks."""

from __future__ import annotations

from datetime import datetime

from app.moderation.domain.errors import AccountBlocked
from app.moderation.domain.rbac import require_min_role, require_permission
from app.moderation.domain.sanctions import UserModerationState, check_user_status
from app.obs import metrics as obs_metrics


def enforce_account_status(state: UserModerationState | None, *, now: datetime | None = None) -> None:
    """Raise AccountBlocked for banned or suspended accounts; never mutates."""
    if state is None:
        return
    decision = check_user_status(state, now=now)
    if decision.allowed:
        return
    code = decision.code or "ACCOUNT_BLOCKED"
    obs_metrics.MOD_ACCESS_DENIED_TOTAL.labels(code=code).inc()
    raise AccountBlocked(code, suspended_until=decision.until, reason=decision.reason)


__all__ = ["enforce_account_status", "require_min_role", "require_permission"]
