"""Role hierarchy and capability tables for moderation staff."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from app.infra.auth import AuthenticatedUser
from app.moderation.domain.errors import PermissionDenied
from app.obs import metrics as obs_metrics


class Role(str, Enum):
    USER = "user"
    MODO_TEST = "modo_test"
    MODO = "modo"
    ADMIN_MODO = "admin_modo"
    SUPER_ADMIN = "super_admin"

    @classmethod
    def parse(cls, value: str | None) -> "Role":
        if not value:
            return cls.USER
        text = str(value).strip().lower()
        if text in ROLE_ALIASES:
            return ROLE_ALIASES[text]
        try:
            return cls(text)
        except ValueError:
            return cls.USER


# "admin" predates the split into modo tiers and keeps its old rank.
ROLE_ALIASES: dict[str, Role] = {"admin": Role.ADMIN_MODO}

ROLE_LEVELS: dict[Role, int] = {
    Role.USER: 0,
    Role.MODO_TEST: 1,
    Role.MODO: 2,
    Role.ADMIN_MODO: 3,
    Role.SUPER_ADMIN: 4,
}

ROLE_LABELS: dict[str, str] = {
    Role.MODO_TEST.value: "Trainee moderator",
    Role.MODO.value: "Moderator",
    Role.ADMIN_MODO.value: "Moderation admin",
    Role.SUPER_ADMIN.value: "Administrator",
    "system": "Automatic moderation",
}

WILDCARD = "*"

REPORTS_VIEW = "reports:view"
REPORTS_PROCESS = "reports:process"
REPORTS_ESCALATE = "reports:escalate"
USERS_VIEW = "users:view"
USERS_WARN = "users:warn"
USERS_SUSPEND = "users:suspend"
USERS_BAN = "users:ban"
USERS_UNBAN = "users:unban"
USERS_SURVEILLANCE = "users:surveillance"
CONTENT_HIDE = "content:hide"
CONTENT_UNHIDE = "content:unhide"
CONTENT_DELETE = "content:delete"
AUDIT_VIEW = "audit:view"
AUDIT_EXPORT = "audit:export"
DASHBOARD_VIEW = "dashboard:view"
STAFF_CHAT = "staff:chat"

_MODO_TEST = frozenset({REPORTS_VIEW, USERS_VIEW, STAFF_CHAT})
_MODO = _MODO_TEST | {REPORTS_PROCESS, USERS_WARN, CONTENT_HIDE, CONTENT_UNHIDE, AUDIT_VIEW}
_ADMIN_MODO = _MODO | {
    REPORTS_ESCALATE,
    USERS_SUSPEND,
    USERS_BAN,
    USERS_UNBAN,
    USERS_SURVEILLANCE,
    CONTENT_DELETE,
    AUDIT_EXPORT,
    DASHBOARD_VIEW,
}

ROLE_PERMISSIONS: dict[Role, frozenset[str]] = {
    Role.USER: frozenset(),
    Role.MODO_TEST: _MODO_TEST,
    Role.MODO: frozenset(_MODO),
    Role.ADMIN_MODO: frozenset(_ADMIN_MODO),
    Role.SUPER_ADMIN: frozenset({WILDCARD}),
}


def role_level(role: Role | str | None) -> int:
    if not isinstance(role, Role):
        role = Role.parse(role)
    return ROLE_LEVELS[role]


def is_staff(role: Role | str | None) -> bool:
    return role_level(role) >= ROLE_LEVELS[Role.MODO_TEST]


@dataclass(slots=True)
class Principal:
    """Authenticated actor as seen by moderation services."""

    id: str
    role: Role = Role.USER
    extra_permissions: frozenset[str] = field(default_factory=frozenset)

    @property
    def level(self) -> int:
        return ROLE_LEVELS[self.role]

    @property
    def permissions(self) -> frozenset[str]:
        return ROLE_PERMISSIONS[self.role] | self.extra_permissions

    def has_permission(self, permission: str) -> bool:
        granted = self.permissions
        return WILDCARD in granted or permission in granted


def highest_role(values: Iterable[str]) -> Role:
    best = Role.USER
    for value in values:
        role = Role.parse(value)
        if ROLE_LEVELS[role] > ROLE_LEVELS[best]:
            best = role
    return best


def principal_from_user(user: AuthenticatedUser) -> Principal:
    return Principal(
        id=user.id,
        role=highest_role(user.roles),
        extra_permissions=frozenset(user.permissions),
    )


def can_moderate(actor: Principal, target_role: Role | str | None) -> bool:
    """Return True when ``actor`` outranks the target.

    Super admins may act on anyone; everyone else needs a strictly higher level.
    """
    if actor.role is Role.SUPER_ADMIN:
        return True
    return actor.level > role_level(target_role)


def require_min_role(principal: Principal, minimum: Role) -> Principal:
    if principal.level < ROLE_LEVELS[minimum]:
        obs_metrics.MOD_ACCESS_DENIED_TOTAL.labels(code="insufficient_role").inc()
        raise PermissionDenied("insufficient_role")
    return principal


def require_permission(principal: Principal, permission: str) -> Principal:
    if not principal.has_permission(permission):
        obs_metrics.MOD_ACCESS_DENIED_TOTAL.labels(code="missing_permission").inc()
        raise PermissionDenied("missing_permission", f"missing permission {permission}")
    return principal
