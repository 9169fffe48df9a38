"""Read-only access to the moderation audit log."""

from __future__ import annotations

import csv
import io
from datetime import datetime, timezone
from typing import Iterable, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from starlette.responses import StreamingResponse

from app.infra.rate_limit import allow
from app.moderation.api.deps import audit_logger_dep, require_staff
from app.moderation.api.schemas import AuditEntryOut
from app.moderation.domain import rbac
from app.moderation.domain.audit import (
    EXPORT_MAX_ROWS,
    AuditAction,
    AuditLogEntry,
    AuditLogger,
    AuditQuery,
    AuditTargetType,
)
from app.moderation.domain.errors import AuditEntryNotFound, ModerationValidationError, RateLimited
from app.moderation.domain.rbac import Principal
from app.obs import metrics as obs_metrics

router = APIRouter(prefix="/api/mod/v1/audit", tags=["moderation-audit"])

_EXPORT_RATE_KEY = "mod_audit_export"
_EXPORT_LIMIT = 5
_EXPORT_WINDOW = 60

EXPORT_COLUMNS = [
    "created_at",
    "action",
    "actor_id",
    "actor_role",
    "target_type",
    "target_id",
    "reason",
    "actor_ip",
    "related_report_id",
]


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class AuditFilters:
    """Query parameters shared by the list and the CSV export."""

    def __init__(
        self,
        actor_id: Optional[str] = Query(default=None),
        action: Optional[str] = Query(default=None),
        target_type: Optional[str] = Query(default=None),
        target_id: Optional[str] = Query(default=None),
        related_report_id: Optional[str] = Query(default=None),
        since: Optional[datetime] = Query(default=None),
        until: Optional[datetime] = Query(default=None),
    ) -> None:
        self.actor_id = actor_id
        self.action = action
        self.target_type = target_type
        self.target_id = target_id
        self.related_report_id = related_report_id
        self.since = since
        self.until = until

    def to_query(self, *, limit: int = 50, offset: int = 0) -> AuditQuery:
        errors: dict[str, str] = {}
        parsed_action = parsed_target = None
        if self.action is not None:
            try:
                parsed_action = AuditAction(self.action)
            except ValueError:
                errors["action"] = f"unsupported value {self.action!r}"
        if self.target_type is not None:
            try:
                parsed_target = AuditTargetType(self.target_type)
            except ValueError:
                errors["target_type"] = f"unsupported value {self.target_type!r}"
        if errors:
            raise ModerationValidationError(errors)
        return AuditQuery(
            actor_id=self.actor_id,
            action=parsed_action,
            target_type=parsed_target,
            target_id=self.target_id,
            related_report_id=self.related_report_id,
            since=_aware(self.since),
            until=_aware(self.until),
            limit=limit,
            offset=offset,
        )


class AuditPage(BaseModel):
    items: list[AuditEntryOut]
    total: int
    limit: int
    offset: int


class ActorActivityOut(BaseModel):
    actor_id: str
    actor_role: str
    count: int


class DailyCountOut(BaseModel):
    date: str
    count: int


class AuditStatsOut(BaseModel):
    since: datetime
    until: datetime
    days: int
    total: int
    by_action: dict[str, int]
    top_actors: list[ActorActivityOut]
    daily: list[DailyCountOut]


def _csv_row(entry: AuditLogEntry) -> list[str]:
    return [
        entry.created_at.isoformat(),
        entry.action.value,
        entry.actor_id,
        entry.actor_role,
        entry.target_type.value,
        entry.target_id,
        entry.reason or "",
        entry.actor_ip or "",
        entry.related_report_id or "",
    ]


@router.get("", response_model=AuditPage)
async def list_audit(
    *,
    filters: AuditFilters = Depends(),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _: Principal = Depends(require_staff(rbac.AUDIT_VIEW)),
    audit: AuditLogger = Depends(audit_logger_dep),
) -> AuditPage:
    query = filters.to_query(limit=limit, offset=offset)
    entries = await audit.query(query)
    total = await audit.count(query)
    return AuditPage(
        items=[AuditEntryOut.from_domain(entry) for entry in entries],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=AuditStatsOut)
async def audit_stats(
    days: int = Query(default=30, ge=1, le=365),
    _: Principal = Depends(require_staff(rbac.AUDIT_VIEW)),
    audit: AuditLogger = Depends(audit_logger_dep),
) -> AuditStatsOut:
    stats = await audit.stats(days=days)
    return AuditStatsOut(
        since=stats.since,
        until=stats.until,
        days=days,
        total=stats.total,
        by_action=stats.by_action,
        top_actors=[
            ActorActivityOut(actor_id=item.actor_id, actor_role=item.actor_role, count=item.count)
            for item in stats.top_actors
        ],
        daily=[DailyCountOut(date=day, count=count) for day, count in stats.daily],
    )


@router.get("/export")
async def export_audit(
    *,
    filters: AuditFilters = Depends(),
    principal: Principal = Depends(require_staff(rbac.AUDIT_EXPORT)),
    audit: AuditLogger = Depends(audit_logger_dep),
) -> StreamingResponse:
    query = filters.to_query()
    if not await allow(_EXPORT_RATE_KEY, principal.id, limit=_EXPORT_LIMIT, window_seconds=_EXPORT_WINDOW):
        raise RateLimited("export_limit_exceeded")
    entries = await audit.export(query)
    result = "truncated" if len(entries) >= EXPORT_MAX_ROWS else "ok"
    obs_metrics.MOD_AUDIT_EXPORTS_TOTAL.labels(result=result).inc()

    def _stream() -> Iterable[bytes]:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(EXPORT_COLUMNS)
        yield buffer.getvalue().encode("utf-8")
        buffer.seek(0)
        buffer.truncate(0)
        for entry in entries:
            writer.writerow(_csv_row(entry))
            yield buffer.getvalue().encode("utf-8")
            buffer.seek(0)
            buffer.truncate(0)

    filename = f"audit-log-{datetime.now(timezone.utc).date().isoformat()}.csv"
    return StreamingResponse(
        _stream(),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.get("/{entry_id}", response_model=AuditEntryOut)
async def get_audit_entry(
    entry_id: str,
    _: Principal = Depends(require_staff(rbac.AUDIT_VIEW)),
    audit: AuditLogger = Depends(audit_logger_dep),
) -> AuditEntryOut:
    entry = await audit.get(entry_id)
    if entry is None:
        raise AuditEntryNotFound()
    return AuditEntryOut.from_domain(entry)
