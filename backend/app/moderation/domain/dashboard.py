"""Read-only triage views for the moderation dashboard."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from app.moderation.domain.audit import AuditLogger, AuditQuery
from app.moderation.domain.reports import ReportRepository
from app.moderation.domain.risk import RiskInputs, compute_risk_score, risk_band
from app.moderation.domain.sanctions import UserModerationState, UserSanctionRepository, UserStatusCounts


@dataclass(slots=True)
class AtRiskUser:
    user_id: str
    score: int
    band: str
    warning_count: int
    reports_received: int
    suspended: bool
    under_surveillance: bool
    auto_suspensions: int
    created_at: Optional[datetime] = None


@dataclass(slots=True)
class DashboardSummary:
    pending_reports: int
    escalated_pending: int
    actions_today: int
    users: UserStatusCounts = field(default_factory=UserStatusCounts)


def risk_inputs_for(state: UserModerationState, reports_received: int, *, now: datetime) -> RiskInputs:
    return RiskInputs(
        warning_count=len(state.active_warnings(now)),
        reports_received=reports_received,
        suspended=state.is_suspended(now),
        under_surveillance=state.surveillance.active,
        account_created_at=state.created_at,
        auto_suspensions=state.auto_suspensions_count,
    )


@dataclass
class DashboardService:
    users: UserSanctionRepository
    reports: ReportRepository
    audit: AuditLogger

    async def risk_for(self, state: UserModerationState, *, now: datetime | None = None) -> AtRiskUser:
        now = now or datetime.now(timezone.utc)
        received = await self.reports.count_received([state.user_id])
        return self._score(state, received.get(state.user_id, 0), now)

    async def at_risk_users(
        self,
        *,
        limit: int = 50,
        min_score: int = 1,
        now: datetime | None = None,
    ) -> list[AtRiskUser]:
        now = now or datetime.now(timezone.utc)
        candidates = await self.users.list_risk_candidates(limit=max(limit * 4, 200))
        received = await self.reports.count_received([c.user_id for c in candidates])
        scored = [self._score(state, received.get(state.user_id, 0), now) for state in candidates]
        ranked = [entry for entry in scored if entry.score >= min_score]
        ranked.sort(key=lambda entry: (-entry.score, entry.user_id))
        return ranked[:limit]

    async def summary(self, *, now: datetime | None = None) -> DashboardSummary:
        now = now or datetime.now(timezone.utc)
        stats = await self.reports.stats()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        actions_today = await self.audit.count(AuditQuery(since=start_of_day))
        return DashboardSummary(
            pending_reports=stats.pending,
            escalated_pending=stats.escalated_pending,
            actions_today=actions_today,
            users=await self.users.status_counts(now=now),
        )

    @staticmethod
    def _score(state: UserModerationState, reports_received: int, now: datetime) -> AtRiskUser:
        inputs = risk_inputs_for(state, reports_received, now=now)
        score = compute_risk_score(inputs, now=now)
        return AtRiskUser(
            user_id=state.user_id,
            score=score,
            band=risk_band(score),
            warning_count=inputs.warning_count,
            reports_received=reports_received,
            suspended=inputs.suspended,
            under_surveillance=inputs.under_surveillance,
            auto_suspensions=inputs.auto_suspensions,
            created_at=state.created_at,
        )
