"""Append-only audit ledger for administrative actions."""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Protocol
from uuid import uuid4

from app.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    USER_WARN = "user:warn"
    USER_WARN_REMOVE = "user:warn_remove"
    USER_SUSPEND = "user:suspend"
    USER_UNSUSPEND = "user:unsuspend"
    USER_BAN = "user:ban"
    USER_UNBAN = "user:unban"
    USER_ROLE_CHANGE = "user:role_change"
    USER_PERMISSION_ADD = "user:permission_add"
    USER_PERMISSION_REMOVE = "user:permission_remove"
    USER_SURVEILLANCE_ON = "user:surveillance_on"
    USER_SURVEILLANCE_OFF = "user:surveillance_off"
    CONTENT_HIDE = "content:hide"
    CONTENT_UNHIDE = "content:unhide"
    CONTENT_DELETE = "content:delete"
    CONTENT_RESTORE = "content:restore"
    REPORT_PROCESS = "report:process"
    REPORT_ESCALATE = "report:escalate"
    REPORT_DISMISS = "report:dismiss"
    REPORT_ASSIGN = "report:assign"
    CONFIG_UPDATE = "config:update"
    STAFF_LOGIN = "staff:login"
    STAFF_LOGOUT = "staff:logout"


class AuditTargetType(str, Enum):
    USER = "user"
    POST = "post"
    COMMENT = "comment"
    REPORT = "report"
    CONFIG = "config"
    SYSTEM = "system"


def jsonable(value: Any) -> Any:
    """Coerce snapshot values into JSON-friendly primitives."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [jsonable(v) for v in value]
    return value


@dataclass(slots=True)
class AuditSnapshot:
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None

    @classmethod
    def of(cls, before: Mapping[str, Any] | None, after: Mapping[str, Any] | None) -> "AuditSnapshot":
        return cls(
            before=jsonable(before) if before is not None else None,
            after=jsonable(after) if after is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {"before": self.before, "after": self.after}


@dataclass(slots=True)
class AuditLogEntry:
    id: str
    actor_id: str
    actor_role: str
    action: AuditAction
    target_type: AuditTargetType
    target_id: str
    created_at: datetime
    reason: Optional[str] = None
    actor_ip: Optional[str] = None
    snapshot: Optional[AuditSnapshot] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    related_report_id: Optional[str] = None
    event_id: Optional[str] = None


@dataclass(slots=True)
class AuditQuery:
    actor_id: Optional[str] = None
    action: Optional[AuditAction] = None
    target_type: Optional[AuditTargetType] = None
    target_id: Optional[str] = None
    related_report_id: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: int = 50
    offset: int = 0


EXPORT_MAX_ROWS = 10_000
STATS_TOP_ACTORS = 10


@dataclass(slots=True)
class ActorActivity:
    actor_id: str
    actor_role: str
    count: int


@dataclass(slots=True)
class AuditStats:
    """Activity over ``[since, until)``; ``daily`` is keyed by UTC date, oldest first."""

    since: datetime
    until: datetime
    total: int = 0
    by_action: dict[str, int] = field(default_factory=dict)
    top_actors: list[ActorActivity] = field(default_factory=list)
    daily: list[tuple[str, int]] = field(default_factory=list)


class AuditRepository(Protocol):
    """Insert and read only; entries are never updated or removed."""

    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        ...

    async def get(self, entry_id: str) -> AuditLogEntry | None:
        ...

    async def query(self, query: AuditQuery) -> list[AuditLogEntry]:
        ...

    async def count(self, query: AuditQuery) -> int:
        ...

    async def exists_event(self, event_id: str) -> bool:
        ...

    async def stats(self, *, since: datetime, until: datetime, top: int = STATS_TOP_ACTORS) -> AuditStats:
        ...


def _matches(entry: AuditLogEntry, query: AuditQuery) -> bool:
    if query.actor_id is not None and entry.actor_id != query.actor_id:
        return False
    if query.action is not None and entry.action != query.action:
        return False
    if query.target_type is not None and entry.target_type != query.target_type:
        return False
    if query.target_id is not None and entry.target_id != query.target_id:
        return False
    if query.related_report_id is not None and entry.related_report_id != query.related_report_id:
        return False
    if query.since is not None and entry.created_at < query.since:
        return False
    if query.until is not None and entry.created_at >= query.until:
        return False
    return True


class InMemoryAuditRepository(AuditRepository):
    def __init__(self) -> None:
        self.entries: list[AuditLogEntry] = []

    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        self.entries.append(entry)
        return entry

    async def get(self, entry_id: str) -> AuditLogEntry | None:
        for entry in self.entries:
            if entry.id == entry_id:
                return entry
        return None

    async def query(self, query: AuditQuery) -> list[AuditLogEntry]:
        matches = [entry for entry in reversed(self.entries) if _matches(entry, query)]
        return matches[query.offset : query.offset + query.limit]

    async def count(self, query: AuditQuery) -> int:
        return sum(1 for entry in self.entries if _matches(entry, query))

    async def exists_event(self, event_id: str) -> bool:
        return any(entry.event_id == event_id for entry in self.entries)

    async def stats(self, *, since: datetime, until: datetime, top: int = STATS_TOP_ACTORS) -> AuditStats:
        window = [entry for entry in self.entries if since <= entry.created_at < until]
        by_action = Counter(entry.action.value for entry in window)
        by_actor = Counter(entry.actor_id for entry in window)
        roles = {entry.actor_id: entry.actor_role for entry in window}
        daily = Counter(entry.created_at.astimezone(timezone.utc).date().isoformat() for entry in window)
        return AuditStats(
            since=since,
            until=until,
            total=len(window),
            by_action=dict(by_action.most_common()),
            top_actors=[
                ActorActivity(actor_id=actor_id, actor_role=roles[actor_id], count=count)
                for actor_id, count in by_actor.most_common(top)
            ],
            daily=sorted(daily.items()),
        )


@dataclass
class AuditLogger:
    """Writes audit entries without ever failing the calling action."""

    repository: AuditRepository

    async def record(
        self,
        *,
        actor_id: str,
        actor_role: str,
        action: AuditAction,
        target_type: AuditTargetType,
        target_id: str,
        reason: Optional[str] = None,
        snapshot: Optional[AuditSnapshot] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        related_report_id: Optional[str] = None,
        event_id: Optional[str] = None,
        actor_ip: Optional[str] = None,
    ) -> AuditLogEntry | None:
        entry = AuditLogEntry(
            id=str(uuid4()),
            actor_id=actor_id,
            actor_role=actor_role,
            action=action,
            target_type=target_type,
            target_id=target_id,
            created_at=datetime.now(timezone.utc),
            reason=reason,
            actor_ip=actor_ip,
            snapshot=snapshot,
            metadata=jsonable(dict(metadata or {})),
            related_report_id=related_report_id,
            event_id=event_id,
        )
        start = time.perf_counter()
        try:
            stored = await self.repository.append(entry)
        except Exception:  # noqa: BLE001 - audit durability is best effort
            logger.exception(
                "failed to write audit entry",
                extra={"action": action.value, "target_id": target_id, "actor_id": actor_id},
            )
            obs_metrics.MOD_SIDE_EFFECT_FAILURES_TOTAL.labels(kind="audit").inc()
            return None
        finally:
            obs_metrics.MOD_AUDIT_LATENCY_SECONDS.observe(time.perf_counter() - start)
        return stored

    async def has_event(self, event_id: str | None) -> bool:
        if not event_id:
            return False
        return await self.repository.exists_event(event_id)

    async def get(self, entry_id: str) -> AuditLogEntry | None:
        return await self.repository.get(entry_id)

    async def query(self, query: AuditQuery) -> list[AuditLogEntry]:
        return await self.repository.query(query)

    async def count(self, query: AuditQuery) -> int:
        return await self.repository.count(query)

    async def export(self, query: AuditQuery) -> list[AuditLogEntry]:
        """Newest-first entries for a CSV export, capped at ``EXPORT_MAX_ROWS``."""
        return await self.repository.query(replace(query, limit=EXPORT_MAX_ROWS, offset=0))

    async def stats(self, *, days: int = 30, now: datetime | None = None) -> AuditStats:
        until = now or datetime.now(timezone.utc)
        return await self.repository.stats(since=until - timedelta(days=days), until=until)
