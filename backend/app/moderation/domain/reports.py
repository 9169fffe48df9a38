"""Report records, lifecycle states and the storage contract behind them."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Collection, Optional, Protocol, Sequence
from uuid import uuid4

SYSTEM_ACTOR = "system"


class TargetType(str, Enum):
    POST = "post"
    COMMENT = "comment"
    USER = "user"


class ReportReason(str, Enum):
    SPAM = "spam"
    HARASSMENT = "harassment"
    INAPPROPRIATE_CONTENT = "inappropriate_content"
    FALSE_INFO = "false_info"
    NUDITY = "nudity"
    VIOLENCE = "violence"
    HATE = "hate"
    OTHER = "other"


class ReportPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(type(self)).index(self)


class ReportStatus(str, Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    ACTION_TAKEN = "action_taken"
    DISMISSED = "dismissed"


class ReportAction(str, Enum):
    NONE = "none"
    HIDE_CONTENT = "hide_content"
    DELETE_CONTENT = "delete_content"
    WARN_USER = "warn_user"
    SUSPEND_USER = "suspend_user"
    BAN_USER = "ban_user"


OPEN_STATUSES = frozenset({ReportStatus.PENDING, ReportStatus.REVIEWED})
TERMINAL_STATUSES = frozenset({ReportStatus.ACTION_TAKEN, ReportStatus.DISMISSED})
CONTENT_ACTIONS = frozenset({ReportAction.HIDE_CONTENT, ReportAction.DELETE_CONTENT})
USER_ACTIONS = frozenset({ReportAction.WARN_USER, ReportAction.SUSPEND_USER, ReportAction.BAN_USER})

ALLOWED_TRANSITIONS: dict[ReportStatus, frozenset[ReportStatus]] = {
    ReportStatus.PENDING: frozenset({ReportStatus.REVIEWED, ReportStatus.ACTION_TAKEN, ReportStatus.DISMISSED}),
    ReportStatus.REVIEWED: frozenset({ReportStatus.ACTION_TAKEN, ReportStatus.DISMISSED}),
    ReportStatus.ACTION_TAKEN: frozenset(),
    ReportStatus.DISMISSED: frozenset(),
}


def can_transition(current: ReportStatus, target: ReportStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


@dataclass(slots=True)
class Report:
    id: str
    reporter_id: str
    target_type: TargetType
    target_id: str
    reason: ReportReason
    priority: ReportPriority
    status: ReportStatus
    created_at: datetime
    updated_at: datetime
    details: Optional[str] = None
    aggregate_count: int = 1
    assigned_to: Optional[str] = None
    assigned_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    escalated_by: Optional[str] = None
    escalation_reason: Optional[str] = None
    moderated_by: Optional[str] = None
    moderated_at: Optional[datetime] = None
    action: ReportAction = ReportAction.NONE
    admin_note: Optional[str] = None

    @property
    def is_escalated(self) -> bool:
        return self.escalated_at is not None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class ReportFilter:
    status: Optional[ReportStatus] = None
    target_type: Optional[TargetType] = None
    priority: Optional[ReportPriority] = None
    escalated_only: bool = False
    assigned_to: Optional[str] = None
    limit: int = 50
    offset: int = 0


@dataclass(slots=True)
class TargetAggregate:
    """Pending reports grouped by the thing being reported."""

    target_type: TargetType
    target_id: str
    report_count: int
    highest_priority: ReportPriority
    escalated: bool
    reasons: dict[str, int] = field(default_factory=dict)
    report_ids: list[str] = field(default_factory=list)
    first_reported_at: Optional[datetime] = None
    last_reported_at: Optional[datetime] = None


@dataclass(slots=True)
class ReportStats:
    by_status: dict[str, int] = field(default_factory=dict)
    by_reason: dict[str, int] = field(default_factory=dict)
    by_priority: dict[str, int] = field(default_factory=dict)
    pending: int = 0
    escalated_pending: int = 0


class ReportRepository(Protocol):
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
        """Insert a report, or bump aggregate_count on the reporter's existing one.

        Returns the stored report and whether it was newly created. A new row
        still carries aggregate_count=1 until sync_target_count runs.
        """
        ...

    async def get(self, report_id: str) -> Report | None:
        ...

    async def sync_target_count(self, target_type: TargetType, target_id: str) -> int:
        """Set aggregate_count on every report of the target to the number of reports on it."""
        ...

    async def list_for_target(self, target_type: TargetType, target_id: str) -> list[Report]:
        ...

    async def mark_escalated(
        self,
        report_id: str,
        *,
        priority: ReportPriority,
        escalated_by: str,
        reason: str,
        at: datetime,
    ) -> Report | None:
        """Escalate only when not escalated yet; None means another writer won."""
        ...

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
        """Compare-and-set the status; None when the current status is not expected."""
        ...

    async def revert_transition(self, report_id: str, *, claimed: ReportStatus, previous: Report) -> None:
        ...

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
        ...

    async def assign(self, report_id: str, assignee_id: Optional[str], *, at: datetime) -> Report | None:
        ...

    async def list_reports(self, filters: ReportFilter) -> list[Report]:
        ...

    async def aggregate_open_by_target(self, *, limit: int = 50) -> list[TargetAggregate]:
        ...

    async def stats(self) -> ReportStats:
        ...

    async def count_received(self, user_ids: Sequence[str]) -> dict[str, int]:
        """Number of reports filed directly against each user."""
        ...


def sort_key(report: Report) -> tuple[int, float]:
    return (-report.priority.rank, -report.created_at.timestamp())


class InMemoryReportRepository(ReportRepository):
    def __init__(self) -> None:
        self.reports: dict[str, Report] = {}
        self._by_identity: dict[tuple[str, str, str], str] = {}

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
        key = (reporter_id, target_type.value, target_id)
        now = datetime.now(timezone.utc)
        existing_id = self._by_identity.get(key)
        if existing_id is not None:
            report = self.reports[existing_id]
            report.aggregate_count += 1
            report.updated_at = now
            return replace(report), False
        report = Report(
            id=str(uuid4()),
            reporter_id=reporter_id,
            target_type=target_type,
            target_id=target_id,
            reason=reason,
            priority=priority,
            status=ReportStatus.PENDING,
            created_at=now,
            updated_at=now,
            details=details,
        )
        self.reports[report.id] = report
        self._by_identity[key] = report.id
        return replace(report), True

    async def get(self, report_id: str) -> Report | None:
        report = self.reports.get(report_id)
        return replace(report) if report else None

    async def sync_target_count(self, target_type: TargetType, target_id: str) -> int:
        siblings = [r for r in self.reports.values() if r.target_type == target_type and r.target_id == target_id]
        for report in siblings:
            report.aggregate_count = len(siblings)
        return len(siblings)

    async def list_for_target(self, target_type: TargetType, target_id: str) -> list[Report]:
        matches = [r for r in self.reports.values() if r.target_type == target_type and r.target_id == target_id]
        return [replace(r) for r in sorted(matches, key=lambda r: r.created_at)]

    async def mark_escalated(
        self,
        report_id: str,
        *,
        priority: ReportPriority,
        escalated_by: str,
        reason: str,
        at: datetime,
    ) -> Report | None:
        report = self.reports.get(report_id)
        if report is None or report.escalated_at is not None:
            return None
        report.escalated_at = at
        report.escalated_by = escalated_by
        report.escalation_reason = reason
        report.priority = priority
        report.updated_at = at
        return replace(report)

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
        report = self.reports.get(report_id)
        if report is None or report.status not in expected:
            return None
        report.status = status
        report.action = action
        report.moderated_by = moderated_by
        report.moderated_at = at
        report.updated_at = at
        if admin_note is not None:
            report.admin_note = admin_note
        return replace(report)

    async def revert_transition(self, report_id: str, *, claimed: ReportStatus, previous: Report) -> None:
        report = self.reports.get(report_id)
        if report is None or report.status != claimed:
            return
        report.status = previous.status
        report.action = previous.action
        report.moderated_by = previous.moderated_by
        report.moderated_at = previous.moderated_at
        report.admin_note = previous.admin_note
        report.updated_at = datetime.now(timezone.utc)

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
        closed = 0
        for report in self.reports.values():
            if report.id == exclude_id or report.target_type != target_type or report.target_id != target_id:
                continue
            if report.status not in OPEN_STATUSES:
                continue
            report.status = ReportStatus.ACTION_TAKEN
            report.action = action
            report.moderated_by = moderated_by
            report.moderated_at = at
            report.updated_at = at
            closed += 1
        return closed

    async def assign(self, report_id: str, assignee_id: Optional[str], *, at: datetime) -> Report | None:
        report = self.reports.get(report_id)
        if report is None:
            return None
        report.assigned_to = assignee_id
        report.assigned_at = at if assignee_id else None
        report.updated_at = at
        return replace(report)

    async def list_reports(self, filters: ReportFilter) -> list[Report]:
        matches = []
        for report in self.reports.values():
            if filters.status is not None and report.status != filters.status:
                continue
            if filters.target_type is not None and report.target_type != filters.target_type:
                continue
            if filters.priority is not None and report.priority != filters.priority:
                continue
            if filters.escalated_only and not report.is_escalated:
                continue
            if filters.assigned_to is not None and report.assigned_to != filters.assigned_to:
                continue
            matches.append(report)
        matches.sort(key=sort_key)
        window = matches[filters.offset : filters.offset + filters.limit]
        return [replace(r) for r in window]

    async def aggregate_open_by_target(self, *, limit: int = 50) -> list[TargetAggregate]:
        groups: dict[tuple[TargetType, str], list[Report]] = {}
        for report in self.reports.values():
            if report.status not in OPEN_STATUSES:
                continue
            groups.setdefault((report.target_type, report.target_id), []).append(report)
        aggregates = []
        for (target_type, target_id), reports in groups.items():
            reports.sort(key=lambda r: r.created_at)
            aggregates.append(
                TargetAggregate(
                    target_type=target_type,
                    target_id=target_id,
                    report_count=len(reports),
                    highest_priority=max((r.priority for r in reports), key=lambda p: p.rank),
                    escalated=any(r.is_escalated for r in reports),
                    reasons=dict(Counter(r.reason.value for r in reports)),
                    report_ids=[r.id for r in reports],
                    first_reported_at=reports[0].created_at,
                    last_reported_at=reports[-1].created_at,
                )
            )
        aggregates.sort(key=lambda a: (-a.highest_priority.rank, -a.report_count))
        return aggregates[:limit]

    async def stats(self) -> ReportStats:
        reports = list(self.reports.values())
        open_reports = [r for r in reports if r.status == ReportStatus.PENDING]
        return ReportStats(
            by_status=dict(Counter(r.status.value for r in reports)),
            by_reason=dict(Counter(r.reason.value for r in reports)),
            by_priority=dict(Counter(r.priority.value for r in reports)),
            pending=len(open_reports),
            escalated_pending=sum(1 for r in open_reports if r.is_escalated),
        )

    async def count_received(self, user_ids: Sequence[str]) -> dict[str, int]:
        wanted = set(user_ids)
        counts: dict[str, int] = {user_id: 0 for user_id in wanted}
        for report in self.reports.values():
            if report.target_type == TargetType.USER and report.target_id in wanted:
                counts[report.target_id] += 1
        return counts
