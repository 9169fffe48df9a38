"""Risk score used to rank users in the at-risk queue."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

WARNING_WEIGHT = 8
REPORT_WEIGHT = 5
SUSPENDED_BONUS = 10
SURVEILLANCE_BONUS = 5
AUTO_SUSPENSION_WEIGHT = 15
NEW_ACCOUNT_BONUS = 10
YOUNG_ACCOUNT_BONUS = 5
MAX_SCORE = 100


@dataclass(slots=True, frozen=True)
class RiskInputs:
    warning_count: int = 0
    reports_received: int = 0
    suspended: bool = False
    under_surveillance: bool = False
    account_created_at: Optional[datetime] = None
    auto_suspensions: int = 0


def account_age_bonus(created_at: datetime | None, *, now: datetime | None = None) -> int:
    if created_at is None:
        return 0
    now = now or datetime.now(timezone.utc)
    age = now - created_at
    if age < timedelta(days=7):
        return NEW_ACCOUNT_BONUS
    if age < timedelta(days=30):
        return YOUNG_ACCOUNT_BONUS
    return 0


def compute_risk_score(inputs: RiskInputs, *, now: datetime | None = None) -> int:
    score = (
        WARNING_WEIGHT * max(0, inputs.warning_count)
        + REPORT_WEIGHT * max(0, inputs.reports_received)
        + (SUSPENDED_BONUS if inputs.suspended else 0)
        + (SURVEILLANCE_BONUS if inputs.under_surveillance else 0)
        + account_age_bonus(inputs.account_created_at, now=now)
        + AUTO_SUSPENSION_WEIGHT * max(0, inputs.auto_suspensions)
    )
    return max(0, min(MAX_SCORE, score))


def risk_band(score: int) -> str:
    if score >= 70:
        return "high"
    if score >= 40:
        return "medium"
    return "low"
