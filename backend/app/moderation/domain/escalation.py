"""Priority and auto-escalation rules for user reports.

Everything here is a pure function over the fixed reason/priority tables so the
report service, the API layer and tests agree on a single source of truth.
"""

from __future__ import annotations

from app.moderation.domain.reports import ReportPriority, ReportReason

REASON_PRIORITY: dict[ReportReason, ReportPriority] = {
    ReportReason.SPAM: ReportPriority.LOW,
    ReportReason.OTHER: ReportPriority.LOW,
    ReportReason.FALSE_INFO: ReportPriority.MEDIUM,
    ReportReason.INAPPROPRIATE_CONTENT: ReportPriority.MEDIUM,
    ReportReason.NUDITY: ReportPriority.HIGH,
    ReportReason.HARASSMENT: ReportPriority.HIGH,
    ReportReason.VIOLENCE: ReportPriority.CRITICAL,
    ReportReason.HATE: ReportPriority.CRITICAL,
}

ESCALATION_THRESHOLDS: dict[ReportPriority, int] = {
    ReportPriority.LOW: 5,
    ReportPriority.MEDIUM: 3,
    ReportPriority.HIGH: 2,
    ReportPriority.CRITICAL: 1,
}

PRIORITY_ORDER: tuple[ReportPriority, ...] = (
    ReportPriority.LOW,
    ReportPriority.MEDIUM,
    ReportPriority.HIGH,
    ReportPriority.CRITICAL,
)


def priority_for_reason(reason: ReportReason | str) -> ReportPriority:
    return REASON_PRIORITY[ReportReason(reason)]


def escalation_threshold(priority: ReportPriority | str) -> int:
    return ESCALATION_THRESHOLDS[ReportPriority(priority)]


def priority_rank(priority: ReportPriority | str) -> int:
    return PRIORITY_ORDER.index(ReportPriority(priority))


def raise_priority(priority: ReportPriority | str) -> ReportPriority:
    """Bump one tier; critical stays critical."""
    rank = priority_rank(priority)
    return PRIORITY_ORDER[min(rank + 1, len(PRIORITY_ORDER) - 1)]


def should_escalate(report_count: int, priority: ReportPriority | str, *, already_escalated: bool) -> bool:
    if already_escalated:
        return False
    return report_count >= escalation_threshold(priority)


def auto_escalation_reason(report_count: int) -> str:
    return f"auto: {report_count} reports on target"


__all__ = [
    "ESCALATION_THRESHOLDS",
    "PRIORITY_ORDER",
    "REASON_PRIORITY",
    "auto_escalation_reason",
    "escalation_threshold",
    "priority_for_reason",
    "priority_rank",
    "raise_priority",
    "should_escalate",
]
