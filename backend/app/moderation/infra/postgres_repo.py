"""PostgreSQL-backed repositories for reports and the audit log."""

from __future__ import annotations

import json
from collections import Counter
from datetime import datetime
from typing import Any, Collection, Optional, Sequence, cast
from uuid import UUID

import asyncpg

from app.moderation.domain.audit import (
    STATS_TOP_ACTORS,
    ActorActivity,
    AuditAction,
    AuditLogEntry,
    AuditQuery,
    AuditRepository,
    AuditSnapshot,
    AuditStats,
    AuditTargetType,
)
from app.moderation.domain.reports import (
    Report,
    ReportAction,
    ReportFilter,
    ReportPriority,
    ReportReason,
    ReportRepository,
    ReportStats,
    ReportStatus,
    TargetAggregate,
    TargetType,
)

REPORT_COLUMNS = """
    id, reporter_id, target_type, target_id, reason, details, priority, status, aggregate_count,
    assigned_to, assigned_at, escalated_at, escalated_by, escalation_reason,
    moderated_by, moderated_at, action, admin_note, created_at, updated_at
"""

PRIORITY_RANK_SQL = "CASE priority WHEN 'critical' THEN 3 WHEN 'high' THEN 2 WHEN 'medium' THEN 1 ELSE 0 END"

AUDIT_COLUMNS = """
    id, event_id, actor_id, actor_role, actor_ip, action, target_type, target_id, reason,
    metadata, snapshot, related_report_id, created_at
"""


def _rows_affected(status: str) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 3"
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError):
        return 0


def _opt_str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def is_uuid(value: str) -> bool:
    try:
        UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresReportRepository(ReportRepository):
    """Persists reports using asyncpg."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def create_or_aggregate(
        self,
        *,
        reporter_id: str,
        target_type: TargetType,
        target_id: str,
        reason: ReportReason,
        priority: ReportPriority,
        details: Optional[str],
    ) -> tuple[Report, bool]:
        query = f"""
        INSERT INTO mod_report (reporter_id, target_type, target_id, reason, priority, details)
        VALUES ($1, $2, $3, $4, $5, $6)
        ON CONFLICT (reporter_id, target_type, target_id)
        DO UPDATE SET
            aggregate_count = mod_report.aggregate_count + 1,
            updated_at = now()
        RETURNING {REPORT_COLUMNS}, (xmax = 0) AS inserted
        """
        record = await self.pool.fetchrow(
            query,
            reporter_id,
            target_type.value,
            target_id,
            reason.value,
            priority.value,
            details,
        )
        # INSERT .. ON CONFLICT DO UPDATE .. RETURNING always yields the row
        row = cast(asyncpg.Record, record)
        return _report_from_record(row), bool(row["inserted"])

    async def get(self, report_id: str) -> Report | None:
        if not is_uuid(report_id):
            return None
        query = f"SELECT {REPORT_COLUMNS} FROM mod_report WHERE id = $1::uuid"
        record = await self.pool.fetchrow(query, report_id)
        return _report_from_record(record) if record else None

    async def sync_target_count(self, target_type: TargetType, target_id: str) -> int:
        query = """
        WITH total AS (
            SELECT count(*) AS n FROM mod_report WHERE target_type = $1 AND target_id = $2
        )
        UPDATE mod_report
        SET aggregate_count = total.n
        FROM total
        WHERE target_type = $1 AND target_id = $2
        RETURNING total.n
        """
        return int(await self.pool.fetchval(query, target_type.value, target_id) or 0)

    async def list_for_target(self, target_type: TargetType, target_id: str) -> list[Report]:
        query = f"""
        SELECT {REPORT_COLUMNS}
        FROM mod_report
        WHERE target_type = $1 AND target_id = $2
        ORDER BY created_at ASC
        """
        rows = await self.pool.fetch(query, target_type.value, target_id)
        return [_report_from_record(row) for row in rows]

    async def mark_escalated(
        self,
        report_id: str,
        *,
        priority: ReportPriority,
        escalated_by: str,
        reason: str,
        at: datetime,
    ) -> Report | None:
        query = f"""
        UPDATE mod_report
        SET escalated_at = $2,
            escalated_by = $3,
            escalation_reason = $4,
            priority = $5,
            updated_at = $2
        WHERE id = $1::uuid AND escalated_at IS NULL
        RETURNING {REPORT_COLUMNS}
        """
        record = await self.pool.fetchrow(query, report_id, at, escalated_by, reason, priority.value)
        return _report_from_record(record) if record else None

    async def transition(
        self,
        report_id: str,
        *,
        expected: Collection[ReportStatus],
        status: ReportStatus,
        action: ReportAction,
        moderated_by: str,
        at: datetime,
        admin_note: Optional[str] = None,
    ) -> Report | None:
        query = f"""
        UPDATE mod_report
        SET status = $2,
            action = $3,
            moderated_by = $4,
            moderated_at = $5,
            admin_note = COALESCE($6, admin_note),
            updated_at = $5
        WHERE id = $1::uuid AND status = ANY($7::text[])
        RETURNING {REPORT_COLUMNS}
        """
        record = await self.pool.fetchrow(
            query,
            report_id,
            status.value,
            action.value,
            moderated_by,
            at,
            admin_note,
            [s.value for s in expected],
        )
        return _report_from_record(record) if record else None

    async def revert_transition(self, report_id: str, *, claimed: ReportStatus, previous: Report) -> None:
        query = """
        UPDATE mod_report
        SET status = $3,
            action = $4,
            moderated_by = $5,
            moderated_at = $6,
            admin_note = $7,
            updated_at = now()
        WHERE id = $1::uuid AND status = $2
        """
        await self.pool.execute(
            query,
            report_id,
            claimed.value,
            previous.status.value,
            previous.action.value,
            previous.moderated_by,
            previous.moderated_at,
            previous.admin_note,
        )

    async def close_open_for_target(
        self,
        target_type: TargetType,
        target_id: str,
        *,
        exclude_id: str,
        action: ReportAction,
        moderated_by: str,
        at: datetime,
    ) -> int:
        query = """
        UPDATE mod_report
        SET status = 'action_taken',
            action = $4,
            moderated_by = $5,
            moderated_at = $6,
            updated_at = $6
        WHERE target_type = $1
          AND target_id = $2
          AND id <> $3::uuid
          AND status IN ('pending', 'reviewed')
        """
        result = await self.pool.execute(query, target_type.value, target_id, exclude_id, action.value, moderated_by, at)
        return _rows_affected(result)

    async def assign(self, report_id: str, assignee_id: Optional[str], *, at: datetime) -> Report | None:
        if not is_uuid(report_id):
            return None
        query = f"""
        UPDATE mod_report
        SET assigned_to = $2,
            assigned_at = CASE WHEN $2::text IS NULL THEN NULL ELSE $3 END,
            updated_at = $3
        WHERE id = $1::uuid
        RETURNING {REPORT_COLUMNS}
        """
        record = await self.pool.fetchrow(query, report_id, assignee_id, at)
        return _report_from_record(record) if record else None

    async def list_reports(self, filters: ReportFilter) -> list[Report]:
        clauses: list[str] = []
        params: list[Any] = []

        def add(clause: str, value: Any) -> None:
            params.append(value)
            clauses.append(clause.format(n=len(params)))

        if filters.status is not None:
            add("status = ${n}", filters.status.value)
        if filters.target_type is not None:
            add("target_type = ${n}", filters.target_type.value)
        if filters.priority is not None:
            add("priority = ${n}", filters.priority.value)
        if filters.assigned_to is not None:
            add("assigned_to = ${n}", filters.assigned_to)
        if filters.escalated_only:
            clauses.append("escalated_at IS NOT NULL")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([filters.limit, filters.offset])
        query = f"""
        SELECT {REPORT_COLUMNS}
        FROM mod_report
        {where}
        ORDER BY {PRIORITY_RANK_SQL} DESC, created_at DESC
        LIMIT ${len(params) - 1} OFFSET ${len(params)}
        """
        rows = await self.pool.fetch(query, *params)
        return [_report_from_record(row) for row in rows]

    async def aggregate_open_by_target(self, *, limit: int = 50) -> list[TargetAggregate]:
        query = f"""
        SELECT target_type,
               target_id,
               count(*) AS report_count,
               max({PRIORITY_RANK_SQL}) AS priority_rank,
               bool_or(escalated_at IS NOT NULL) AS escalated,
               array_agg(reason ORDER BY created_at) AS reasons,
               array_agg(id::text ORDER BY created_at) AS report_ids,
               min(created_at) AS first_reported_at,
               max(created_at) AS last_reported_at
        FROM mod_report
        WHERE status IN ('pending', 'reviewed')
        GROUP BY target_type, target_id
        ORDER BY priority_rank DESC, report_count DESC
        LIMIT $1
        """
        rows = await self.pool.fetch(query, limit)
        priorities = list(ReportPriority)
        return [
            TargetAggregate(
                target_type=TargetType(row["target_type"]),
                target_id=row["target_id"],
                report_count=int(row["report_count"]),
                highest_priority=priorities[int(row["priority_rank"])],
                escalated=bool(row["escalated"]),
                reasons=dict(Counter(row["reasons"] or [])),
                report_ids=list(row["report_ids"] or []),
                first_reported_at=row["first_reported_at"],
                last_reported_at=row["last_reported_at"],
            )
            for row in rows
        ]

    async def stats(self) -> ReportStats:
        async with self.pool.acquire() as conn:
            by_status = await conn.fetch("SELECT status AS key, count(*) AS n FROM mod_report GROUP BY status")
            by_reason = await conn.fetch("SELECT reason AS key, count(*) AS n FROM mod_report GROUP BY reason")
            by_priority = await conn.fetch("SELECT priority AS key, count(*) AS n FROM mod_report GROUP BY priority")
            pending = await conn.fetchrow(
                """
                SELECT count(*) AS pending,
                       count(*) FILTER (WHERE escalated_at IS NOT NULL) AS escalated
                FROM mod_report
                WHERE status = 'pending'
                """
            )
        return ReportStats(
            by_status={row["key"]: int(row["n"]) for row in by_status},
            by_reason={row["key"]: int(row["n"]) for row in by_reason},
            by_priority={row["key"]: int(row["n"]) for row in by_priority},
            pending=int(pending["pending"]) if pending else 0,
            escalated_pending=int(pending["escalated"]) if pending else 0,
        )

    async def count_received(self, user_ids: Sequence[str]) -> dict[str, int]:
        counts = {user_id: 0 for user_id in user_ids}
        if not counts:
            return counts
        query = """
        SELECT target_id, count(*) AS n
        FROM mod_report
        WHERE target_type = 'user' AND target_id = ANY($1::text[])
        GROUP BY target_id
        """
        for row in await self.pool.fetch(query, list(counts)):
            counts[row["target_id"]] = int(row["n"])
        return counts


class PostgresAuditRepository(AuditRepository):
    """Insert/select only; the table also carries an immutability trigger."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        query = f"""
        INSERT INTO mod_audit_log (
            id, event_id, actor_id, actor_role, actor_ip, action, target_type, target_id, reason,
            metadata, snapshot, related_report_id, created_at
        )
        VALUES ($1::uuid, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb, $11::jsonb, $12::uuid, $13)
        RETURNING {AUDIT_COLUMNS}
        """
        record = await self.pool.fetchrow(
            query,
            entry.id,
            entry.event_id,
            entry.actor_id,
            entry.actor_role,
            entry.actor_ip,
            entry.action.value,
            entry.target_type.value,
            entry.target_id,
            entry.reason,
            json.dumps(entry.metadata),
            json.dumps(entry.snapshot.to_dict()) if entry.snapshot else None,
            entry.related_report_id,
            entry.created_at,
        )
        return _audit_from_record(cast(asyncpg.Record, record))

    async def get(self, entry_id: str) -> AuditLogEntry | None:
        if not is_uuid(entry_id):
            return None
        query = f"SELECT {AUDIT_COLUMNS} FROM mod_audit_log WHERE id = $1::uuid"
        record = await self.pool.fetchrow(query, entry_id)
        return _audit_from_record(record) if record else None

    async def query(self, query: AuditQuery) -> list[AuditLogEntry]:
        where, params = _audit_where(query)
        params.extend([query.limit, query.offset])
        sql = f"""
        SELECT {AUDIT_COLUMNS}
        FROM mod_audit_log
        {where}
        ORDER BY created_at DESC
        LIMIT ${len(params) - 1} OFFSET ${len(params)}
        """
        rows = await self.pool.fetch(sql, *params)
        return [_audit_from_record(row) for row in rows]

    async def count(self, query: AuditQuery) -> int:
        where, params = _audit_where(query)
        return int(await self.pool.fetchval(f"SELECT count(*) FROM mod_audit_log {where}", *params) or 0)

    async def exists_event(self, event_id: str) -> bool:
        row = await self.pool.fetchrow("SELECT 1 FROM mod_audit_log WHERE event_id = $1 LIMIT 1", event_id)
        return row is not None

    async def stats(self, *, since: datetime, until: datetime, top: int = STATS_TOP_ACTORS) -> AuditStats:
        window = "created_at >= $1 AND created_at < $2"
        async with self.pool.acquire() as conn:
            total = await conn.fetchval(f"SELECT count(*) FROM mod_audit_log WHERE {window}", since, until)
            by_action = await conn.fetch(
                f"""
                SELECT action, count(*) AS n
                FROM mod_audit_log
                WHERE {window}
                GROUP BY action
                ORDER BY n DESC, action
                """,
                since,
                until,
            )
            actors = await conn.fetch(
                f"""
                SELECT actor_id,
                       (array_agg(actor_role ORDER BY created_at DESC))[1] AS actor_role,
                       count(*) AS n
                FROM mod_audit_log
                WHERE {window}
                GROUP BY actor_id
                ORDER BY n DESC, actor_id
                LIMIT $3
                """,
                since,
                until,
                top,
            )
            daily = await conn.fetch(
                f"""
                SELECT to_char(created_at AT TIME ZONE 'UTC', 'YYYY-MM-DD') AS day, count(*) AS n
                FROM mod_audit_log
                WHERE {window}
                GROUP BY day
                ORDER BY day
                """,
                since,
                until,
            )
        return AuditStats(
            since=since,
            until=until,
            total=int(total or 0),
            by_action={row["action"]: int(row["n"]) for row in by_action},
            top_actors=[
                ActorActivity(actor_id=row["actor_id"], actor_role=row["actor_role"], count=int(row["n"]))
                for row in actors
            ],
            daily=[(row["day"], int(row["n"])) for row in daily],
        )


def _audit_where(query: AuditQuery) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    for column, value in (
        ("actor_id", query.actor_id),
        ("action", query.action.value if query.action else None),
        ("target_type", query.target_type.value if query.target_type else None),
        ("target_id", query.target_id),
    ):
        if value is not None:
            params.append(value)
            clauses.append(f"{column} = ${len(params)}")
    if query.related_report_id is not None and not is_uuid(query.related_report_id):
        clauses.append("FALSE")
    elif query.related_report_id is not None:
        params.append(query.related_report_id)
        clauses.append(f"related_report_id = ${len(params)}::uuid")
    if query.since is not None:
        params.append(query.since)
        clauses.append(f"created_at >= ${len(params)}")
    if query.until is not None:
        params.append(query.until)
        clauses.append(f"created_at < ${len(params)}")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


def _load_json(value: Any) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def _report_from_record(record: asyncpg.Record) -> Report:
    return Report(
        id=str(record["id"]),
        reporter_id=record["reporter_id"],
        target_type=TargetType(record["target_type"]),
        target_id=record["target_id"],
        reason=ReportReason(record["reason"]),
        priority=ReportPriority(record["priority"]),
        status=ReportStatus(record["status"]),
        created_at=record["created_at"],
        updated_at=record["updated_at"],
        details=record["details"],
        aggregate_count=int(record["aggregate_count"]),
        assigned_to=record["assigned_to"],
        assigned_at=record["assigned_at"],
        escalated_at=record["escalated_at"],
        escalated_by=record["escalated_by"],
        escalation_reason=record["escalation_reason"],
        moderated_by=record["moderated_by"],
        moderated_at=record["moderated_at"],
        action=ReportAction(record["action"]),
        admin_note=record["admin_note"],
    )


def _audit_from_record(record: asyncpg.Record) -> AuditLogEntry:
    snapshot = _load_json(record["snapshot"])
    return AuditLogEntry(
        id=str(record["id"]),
        actor_id=record["actor_id"],
        actor_role=record["actor_role"],
        action=AuditAction(record["action"]),
        target_type=AuditTargetType(record["target_type"]),
        target_id=record["target_id"],
        created_at=record["created_at"],
        reason=record["reason"],
        actor_ip=record["actor_ip"],
        snapshot=AuditSnapshot(before=snapshot.get("before"), after=snapshot.get("after")) if snapshot else None,
        metadata=_load_json(record["metadata"]) or {},
        related_report_id=_opt_str(record["related_report_id"]),
        event_id=record["event_id"],
    )
