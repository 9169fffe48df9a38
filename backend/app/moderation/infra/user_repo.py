"""Sanction columns on the users table, updated with single-statement writes."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Mapping, Optional

import asyncpg

from app.moderation.domain.rbac import Role
from app.moderation.domain.sanctions import (
    SanctionChange,
    Surveillance,
    UserModerationState,
    UserSanctionRepository,
    UserStatusCounts,
    WarningRecord,
)
from app.moderation.infra.postgres_repo import is_uuid

_COLUMNS = (
    "id",
    "role",
    "created_at",
    "mod_warnings",
    "suspended_until",
    "suspend_reason",
    "banned_at",
    "ban_reason",
    "surveillance_active",
    "surveillance_added_by",
    "surveillance_added_at",
    "warn_count_since_auto_suspension",
    "auto_suspensions_count",
)
USER_COLUMNS = ", ".join(_COLUMNS)


def _prefixed(alias: str) -> str:
    return ", ".join(f"{alias}.{column}" for column in _COLUMNS)


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _warning_to_json(warning: WarningRecord) -> dict[str, Any]:
    return {
        "id": warning.id,
        "reason": warning.reason,
        "issued_by": warning.issued_by,
        "issued_at": warning.issued_at.isoformat(),
        "expires_at": warning.expires_at.isoformat() if warning.expires_at else None,
    }


def _warnings_from_json(value: Any) -> list[WarningRecord]:
    if value is None:
        return []
    items = json.loads(value) if isinstance(value, str) else value
    return [
        WarningRecord(
            id=str(item["id"]),
            reason=item.get("reason") or "",
            issued_by=str(item.get("issued_by") or ""),
            issued_at=_parse_ts(item.get("issued_at")),  # type: ignore[arg-type]
            expires_at=_parse_ts(item.get("expires_at")),
        )
        for item in items
    ]


def _state_from_mapping(row: Mapping[str, Any]) -> UserModerationState:
    return UserModerationState(
        user_id=str(row["id"]),
        role=Role.parse(row["role"]),
        created_at=_parse_ts(row["created_at"]),
        warnings=_warnings_from_json(row["mod_warnings"]),
        suspended_until=_parse_ts(row["suspended_until"]),
        suspend_reason=row["suspend_reason"],
        banned_at=_parse_ts(row["banned_at"]),
        ban_reason=row["ban_reason"],
        surveillance=Surveillance(
            active=bool(row["surveillance_active"]),
            added_by=row["surveillance_added_by"],
            added_at=_parse_ts(row["surveillance_added_at"]),
        ),
        warn_count_since_auto_suspension=int(row["warn_count_since_auto_suspension"] or 0),
        auto_suspensions_count=int(row["auto_suspensions_count"] or 0),
    )


def _json_row(value: Any) -> Mapping[str, Any]:
    return json.loads(value) if isinstance(value, str) else value


class PostgresUserSanctionRepository(UserSanctionRepository):
    """Each mutator locks the row, captures the before image and updates it in one statement."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def get(self, user_id: str) -> UserModerationState | None:
        if not is_uuid(user_id):
            return None
        query = f"SELECT {USER_COLUMNS} FROM users WHERE id = $1::uuid AND deleted_at IS NULL"
        record = await self.pool.fetchrow(query, user_id)
        return _state_from_mapping(record) if record else None

    async def _mutate(self, user_id: str, set_clause: str, guard: str, *params: Any) -> SanctionChange | None:
        if not is_uuid(user_id):
            return None
        query = f"""
        WITH before AS (
            SELECT {USER_COLUMNS}
            FROM users
            WHERE id = $1::uuid AND deleted_at IS NULL
            FOR UPDATE
        ), updated AS (
            UPDATE users u
            SET {set_clause}
            FROM before b
            WHERE u.id = b.id AND {guard}
            RETURNING {_prefixed("u")}
        )
        SELECT to_jsonb(b) AS before_row, to_jsonb(up) AS after_row
        FROM before b, updated up
        """
        record = await self.pool.fetchrow(query, user_id, *params)
        if record is None:
            return None
        return SanctionChange(
            before=_state_from_mapping(_json_row(record["before_row"])),
            after=_state_from_mapping(_json_row(record["after_row"])),
        )

    async def add_warning(self, user_id: str, warning: WarningRecord) -> SanctionChange | None:
        return await self._mutate(
            user_id,
            """
            mod_warnings = u.mod_warnings || jsonb_build_array($2::jsonb),
            warn_count_since_auto_suspension = u.warn_count_since_auto_suspension + 1
            """,
            "b.banned_at IS NULL",
            json.dumps(_warning_to_json(warning)),
        )

    async def remove_warning(self, user_id: str, warning_id: str) -> SanctionChange | None:
        return await self._mutate(
            user_id,
            """
            mod_warnings = (
                SELECT coalesce(jsonb_agg(w), '[]'::jsonb)
                FROM jsonb_array_elements(u.mod_warnings) AS w
                WHERE w->>'id' <> $2
            ),
            warn_count_since_auto_suspension = GREATEST(u.warn_count_since_auto_suspension - 1, 0)
            """,
            "b.mod_warnings @> jsonb_build_array(jsonb_build_object('id', $2::text))",
            warning_id,
        )

    async def set_suspension(
        self,
        user_id: str,
        *,
        until: datetime,
        reason: str,
        automatic: bool = False,
    ) -> SanctionChange | None:
        return await self._mutate(
            user_id,
            """
            suspended_until = $2,
            suspend_reason = $3,
            warn_count_since_auto_suspension = CASE WHEN $4 THEN 0 ELSE u.warn_count_since_auto_suspension END,
            auto_suspensions_count = u.auto_suspensions_count + CASE WHEN $4 THEN 1 ELSE 0 END
            """,
            "b.banned_at IS NULL",
            until,
            reason,
            automatic,
        )

    async def clear_suspension(self, user_id: str) -> SanctionChange | None:
        return await self._mutate(
            user_id,
            "suspended_until = NULL, suspend_reason = NULL",
            "b.suspended_until IS NOT NULL",
        )

    async def set_ban(
        self,
        user_id: str,
        *,
        banned_at: datetime,
        reason: str,
        automatic: bool = False,
    ) -> SanctionChange | None:
        return await self._mutate(
            user_id,
            """
            banned_at = $2,
            ban_reason = $3,
            warn_count_since_auto_suspension = CASE WHEN $4 THEN 0 ELSE u.warn_count_since_auto_suspension END
            """,
            "b.banned_at IS NULL",
            banned_at,
            reason,
            automatic,
        )

    async def clear_ban(self, user_id: str) -> SanctionChange | None:
        return await self._mutate(
            user_id,
            "banned_at = NULL, ban_reason = NULL",
            "b.banned_at IS NOT NULL",
        )

    async def set_surveillance(self, user_id: str, surveillance: Surveillance) -> SanctionChange | None:
        return await self._mutate(
            user_id,
            """
            surveillance_active = $2,
            surveillance_added_by = $3,
            surveillance_added_at = $4
            """,
            "b.surveillance_active IS DISTINCT FROM $2",
            surveillance.active,
            surveillance.added_by,
            surveillance.added_at,
        )

    async def list_risk_candidates(self, *, limit: int = 200) -> list[UserModerationState]:
        query = f"""
        SELECT {USER_COLUMNS}
        FROM users
        WHERE deleted_at IS NULL
          AND banned_at IS NULL
          AND (
            jsonb_array_length(mod_warnings) > 0
            OR suspended_until > now()
            OR surveillance_active
            OR auto_suspensions_count > 0
            OR created_at > now() - interval '30 days'
            OR EXISTS (
                SELECT 1 FROM mod_report r WHERE r.target_type = 'user' AND r.target_id = users.id::text
            )
          )
        ORDER BY auto_suspensions_count DESC, jsonb_array_length(mod_warnings) DESC, created_at DESC
        LIMIT $1
        """
        rows = await self.pool.fetch(query, limit)
        return [_state_from_mapping(row) for row in rows]

    async def status_counts(self, *, now: datetime) -> UserStatusCounts:
        query = """
        SELECT count(*) AS total,
               count(*) FILTER (WHERE banned_at IS NOT NULL) AS banned,
               count(*) FILTER (WHERE banned_at IS NULL AND suspended_until > $1) AS suspended,
               count(*) FILTER (WHERE surveillance_active) AS under_surveillance
        FROM users
        WHERE deleted_at IS NULL
        """
        row = await self.pool.fetchrow(query, now)
        if row is None:
            return UserStatusCounts()
        total = int(row["total"])
        banned = int(row["banned"])
        suspended = int(row["suspended"])
        return UserStatusCounts(
            total=total,
            active=total - banned - suspended,
            suspended=suspended,
            banned=banned,
            under_surveillance=int(row["under_surveillance"]),
        )
