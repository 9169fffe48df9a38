import pytest

from app.infra.redis import redis_client
from app.moderation.domain.audit import AuditAction, AuditLogger, AuditQuery, InMemoryAuditRepository
from app.moderation.domain.content import ContentItem, InMemoryContentStore
from app.moderation.domain.errors import (
    InvalidStateTransition,
    ModerationValidationError,
    PermissionDenied,
    ReportNotFound,
)
from app.moderation.domain.notifier import InMemoryNotificationSink, SanctionNotifier
from app.moderation.domain.rbac import Principal, Role
from app.moderation.domain.reports import (
    InMemoryReportRepository,
    ReportAction,
    ReportPriority,
    ReportStatus,
    TargetType,
)
from app.moderation.domain.reports_service import ReportService
from app.moderation.domain.sanctions import InMemoryUserSanctionRepository, SanctionService, UserModerationState

MODO = Principal(id="modo-1", role=Role.MODO)
ADMIN = Principal(id="admin-1", role=Role.ADMIN_MODO)
TRAINEE = Principal(id="trainee-1", role=Role.MODO_TEST)


class _UndeletableContentStore(InMemoryContentStore):
    async def hard_delete(self, content_type, content_id):
        return False


def _build(content=None):
    reports = InMemoryReportRepository()
    audit_repo = InMemoryAuditRepository()
    audit = AuditLogger(audit_repo)
    users = InMemoryUserSanctionRepository()
    sink = InMemoryNotificationSink()
    content = content if content is not None else InMemoryContentStore()
    sanctions = SanctionService(users=users, audit=audit, notifier=SanctionNotifier(sink))
    service = ReportService(
        reports=reports,
        audit=audit,
        sanctions=sanctions,
        content=content,
        redis=redis_client,
        escalation_stream="mod:escalations",
    )
    users.put(UserModerationState(user_id="author-1"))
    users.put(UserModerationState(user_id="modo-2", role=Role.MODO))
    content.put(
        ContentItem(
            content_type=TargetType.POST,
            content_id="p1",
            author_id="author-1",
            body="x" * 200,
            media_urls=("https://cdn.example/img.png",),
        )
    )
    return service, reports, audit_repo, users, content, sink


async def _report(service, reporter="r1", target_type="post", target_id="p1", reason="spam"):
    return await service.create_or_aggregate_report(
        reporter_id=reporter,
        target_type=target_type,
        target_id=target_id,
        reason=reason,
    )


@pytest.mark.asyncio
async def test_critical_report_escalates_immediately(fake_redis):
    service, _, audit_repo, _, _, _ = _build()

    submission = await _report(service, reason="violence")

    report = submission.report
    assert submission.created and submission.escalated
    assert report.priority is ReportPriority.CRITICAL
    assert report.aggregate_count == 1
    assert report.escalated_at is not None
    assert report.escalated_by == "system"
    assert audit_repo.entries[-1].action is AuditAction.REPORT_ESCALATE
    assert audit_repo.entries[-1].metadata["mode"] == "auto"
    entries = await fake_redis.xrange("mod:escalations")
    assert len(entries) == 1
    assert entries[0][1]["report_id"] == report.id


@pytest.mark.asyncio
async def test_low_priority_escalates_on_fifth_distinct_reporter():
    service, reports, _, _, _, _ = _build()

    for idx in range(4):
        submission = await _report(service, reporter=f"r{idx}", target_type="user", target_id="author-1")
        assert not submission.escalated
        assert submission.report.escalated_at is None
    fifth = await _report(service, reporter="r4", target_type="user", target_id="author-1")

    assert fifth.escalated
    assert fifth.report.aggregate_count == 5
    assert fifth.report.priority is ReportPriority.MEDIUM
    stored = await reports.list_for_target(TargetType.USER, "author-1")
    assert len(stored) == 5
    assert all(r.is_escalated for r in stored)


@pytest.mark.asyncio
async def test_aggregate_count_tracks_distinct_reporters():
    service, reports, _, _, _, _ = _build()

    counts = []
    for reporter in ("r1", "r2", "r3"):
        submission = await _report(service, reporter=reporter, target_type="user", target_id="author-1")
        counts.append(submission.report.aggregate_count)

    assert counts == [1, 2, 3]
    stored = await reports.list_for_target(TargetType.USER, "author-1")
    assert [r.aggregate_count for r in stored] == [3, 3, 3]


@pytest.mark.asyncio
async def test_repeat_report_bumps_only_the_reporters_row():
    service, reports, _, _, _, _ = _build()

    await _report(service, reporter="r1", target_type="user", target_id="author-1")
    await _report(service, reporter="r2", target_type="user", target_id="author-1")
    again = await _report(service, reporter="r1", target_type="user", target_id="author-1")

    assert not again.created
    assert again.report.aggregate_count == 3
    stored = {r.reporter_id: r.aggregate_count for r in await reports.list_for_target(TargetType.USER, "author-1")}
    assert stored == {"r1": 3, "r2": 2}


@pytest.mark.asyncio
async def test_duplicate_report_is_aggregated_not_counted():
    service, reports, _, _, _, _ = _build()

    await _report(service, reporter="r1", reason="harassment")
    again = await _report(service, reporter="r1", reason="harassment")

    assert not again.created
    assert not again.escalated
    assert again.report.aggregate_count == 2
    assert again.report.escalated_at is None
    assert len(await reports.list_for_target(TargetType.POST, "p1")) == 1


@pytest.mark.asyncio
async def test_escalation_fires_once():
    service, _, audit_repo, _, _, _ = _build()

    first = await _report(service, reporter="r1", reason="false_info")
    await _report(service, reporter="r2", reason="false_info")
    third = await _report(service, reporter="r3", reason="false_info")
    fourth = await _report(service, reporter="r4", reason="false_info")

    assert not first.escalated
    assert third.escalated
    assert third.report.priority is ReportPriority.HIGH
    assert fourth.report.priority is ReportPriority.HIGH
    reports = await service.reports.list_for_target(TargetType.POST, "p1")
    assert [r.priority for r in reports] == [ReportPriority.HIGH] * 4
    escalations = [e for e in audit_repo.entries if e.action is AuditAction.REPORT_ESCALATE]
    assert {e.related_report_id for e in escalations} == {third.report.id, fourth.report.id}


@pytest.mark.asyncio
async def test_reports_against_deleted_targets_are_accepted():
    service, _, _, _, _, _ = _build()

    submission = await _report(service, target_id="gone-post")

    assert submission.created
    assert submission.report.status is ReportStatus.PENDING


@pytest.mark.asyncio
async def test_self_reports_are_rejected():
    service, _, _, _, _, _ = _build()

    with pytest.raises(ModerationValidationError):
        await _report(service, reporter="author-1", target_type="user", target_id="author-1")
    with pytest.raises(ModerationValidationError):
        await _report(service, reporter="author-1")


@pytest.mark.asyncio
async def test_report_input_validation():
    service, _, _, _, _, _ = _build()

    with pytest.raises(ModerationValidationError) as exc:
        await service.create_or_aggregate_report(
            reporter_id="r1",
            target_type="photo",
            target_id="",
            reason="rude",
            details="d" * 501,
        )
    assert set(exc.value.fields) == {"target_type", "target_id", "reason", "details"}


@pytest.mark.asyncio
async def test_dismiss_then_reprocess_is_rejected():
    service, reports, audit_repo, _, _, _ = _build()
    report = (await _report(service)).report

    dismissed = await service.process_report(MODO, report.id, admin_note="Not a violation")

    assert dismissed.status is ReportStatus.DISMISSED
    assert dismissed.moderated_by == "modo-1"
    assert audit_repo.entries[-1].action is AuditAction.REPORT_DISMISS

    with pytest.raises(InvalidStateTransition) as exc:
        await service.process_report(ADMIN, report.id, action="hide_content")
    assert exc.value.error_code == "report_already_processed"
    stored = await reports.get(report.id)
    assert stored.status is ReportStatus.DISMISSED
    assert stored.action is ReportAction.NONE
    assert stored.moderated_by == "modo-1"


@pytest.mark.asyncio
async def test_hide_content_closes_sibling_reports():
    service, reports, audit_repo, _, content, _ = _build()
    first = (await _report(service, reporter="r1")).report
    second = (await _report(service, reporter="r2")).report

    processed = await service.process_report(MODO, first.id, action="hide_content")

    assert processed.status is ReportStatus.ACTION_TAKEN
    assert processed.action is ReportAction.HIDE_CONTENT
    assert content.items[(TargetType.POST, "p1")].hidden
    sibling = await reports.get(second.id)
    assert sibling.status is ReportStatus.ACTION_TAKEN
    hide = [e for e in audit_repo.entries if e.action is AuditAction.CONTENT_HIDE]
    assert len(hide) == 1
    assert hide[0].related_report_id == first.id
    assert hide[0].metadata["author_id"] == "author-1"


@pytest.mark.asyncio
async def test_delete_content_snapshots_before_removal():
    service, _, audit_repo, _, content, _ = _build()
    report = (await _report(service)).report

    await service.process_report(ADMIN, report.id, action="delete_content")

    assert (TargetType.POST, "p1") in content.deleted
    entry = [e for e in audit_repo.entries if e.action is AuditAction.CONTENT_DELETE][0]
    assert entry.snapshot.before["content"] == "x" * 140 + "..."
    assert entry.snapshot.before["media_url"] == "https://cdn.example/img.png"


@pytest.mark.asyncio
async def test_warn_action_sanctions_the_content_author():
    service, _, audit_repo, users, _, sink = _build()
    report = (await _report(service, reason="harassment")).report

    await service.process_report(MODO, report.id, action="warn_user", event_id="evt-report-1")

    assert len(users.users["author-1"].warnings) == 1
    warn = [e for e in audit_repo.entries if e.action is AuditAction.USER_WARN][0]
    assert warn.related_report_id == report.id
    assert warn.event_id == "evt-report-1"
    assert warn.metadata["content"]["content_id"] == "p1"
    notification = sink.notifications[-1]
    assert notification.recipient_id == "author-1"
    assert notification.data["content_snapshot"]["media_url"] == "https://cdn.example/img.png"


@pytest.mark.asyncio
async def test_suspend_action_uses_requested_hours():
    service, _, _, users, _, _ = _build()
    report = (await _report(service, target_type="user", target_id="author-1")).report

    with pytest.raises(ModerationValidationError):
        await service.process_report(ADMIN, report.id, action="suspend_user", suspension_hours=0)

    await service.process_report(ADMIN, report.id, action="suspend_user", suspension_hours=12)
    assert users.users["author-1"].is_suspended()


@pytest.mark.asyncio
async def test_missing_content_rejects_content_action():
    service, reports, _, _, _, _ = _build()
    report = (await _report(service, target_id="gone-post")).report

    with pytest.raises(InvalidStateTransition) as exc:
        await service.process_report(MODO, report.id, action="hide_content")

    assert exc.value.error_code == "target_missing"
    assert (await reports.get(report.id)).status is ReportStatus.PENDING


@pytest.mark.asyncio
async def test_failed_side_effect_reverts_the_claim():
    service, reports, audit_repo, _, _, _ = _build(content=_UndeletableContentStore())
    report = (await _report(service)).report

    with pytest.raises(InvalidStateTransition):
        await service.process_report(ADMIN, report.id, action="delete_content")

    stored = await reports.get(report.id)
    assert stored.status is ReportStatus.PENDING
    assert stored.action is ReportAction.NONE
    assert stored.moderated_by is None
    assert not [e for e in audit_repo.entries if e.action is AuditAction.REPORT_PROCESS]


@pytest.mark.asyncio
async def test_content_action_on_user_report_is_invalid():
    service, _, _, _, _, _ = _build()
    report = (await _report(service, target_type="user", target_id="author-1")).report

    with pytest.raises(ModerationValidationError):
        await service.process_report(MODO, report.id, action="hide_content")


@pytest.mark.asyncio
async def test_status_and_action_must_agree():
    service, _, _, _, _, _ = _build()
    report = (await _report(service)).report

    with pytest.raises(ModerationValidationError):
        await service.process_report(MODO, report.id, status="action_taken")
    with pytest.raises(InvalidStateTransition):
        await service.process_report(MODO, report.id, status="pending")

    reviewed = await service.process_report(MODO, report.id, status="reviewed")
    assert reviewed.status is ReportStatus.REVIEWED


@pytest.mark.asyncio
async def test_processing_permissions():
    service, _, _, _, _, _ = _build()
    report = (await _report(service)).report

    with pytest.raises(PermissionDenied):
        await service.process_report(TRAINEE, report.id)
    with pytest.raises(PermissionDenied) as exc:
        await service.process_report(MODO, report.id, action="ban_user")
    assert exc.value.error_code == "missing_permission"
    with pytest.raises(ReportNotFound):
        await service.process_report(MODO, "missing")


@pytest.mark.asyncio
async def test_manual_escalation(fake_redis):
    service, _, audit_repo, _, _, _ = _build()
    report = (await _report(service)).report

    escalated = await service.escalate_report(
        ADMIN, report.id, reason="Coordinated spam wave", actor_ip="203.0.113.9"
    )

    assert escalated.priority is ReportPriority.MEDIUM
    assert escalated.escalated_by == "admin-1"
    assert audit_repo.entries[-1].metadata == {"mode": "manual"}
    assert audit_repo.entries[-1].actor_ip == "203.0.113.9"
    assert await fake_redis.xlen("mod:escalations") == 1

    with pytest.raises(InvalidStateTransition) as exc:
        await service.escalate_report(ADMIN, report.id)
    assert exc.value.error_code == "report_already_escalated"
    with pytest.raises(PermissionDenied):
        await service.escalate_report(MODO, report.id)


@pytest.mark.asyncio
async def test_assignment_requires_staff_assignee():
    service, _, audit_repo, _, _, _ = _build()
    report = (await _report(service)).report

    assigned = await service.assign_report(MODO, report.id, "modo-2", actor_ip="198.51.100.4")
    assert assigned.assigned_to == "modo-2"
    assert assigned.assigned_at is not None
    assert audit_repo.entries[-1].action is AuditAction.REPORT_ASSIGN
    assert audit_repo.entries[-1].actor_ip == "198.51.100.4"

    with pytest.raises(ModerationValidationError):
        await service.assign_report(MODO, report.id, "author-1")

    unassigned = await service.assign_report(MODO, report.id, None)
    assert unassigned.assigned_to is None


@pytest.mark.asyncio
async def test_queue_views():
    service, _, _, _, _, _ = _build()
    await _report(service, reporter="r1")
    await _report(service, reporter="r2", reason="false_info")
    await _report(service, reporter="r1", target_type="user", target_id="author-1", reason="harassment")

    aggregates = await service.aggregated_by_target()
    post = next(a for a in aggregates if a.target_id == "p1")
    assert post.report_count == 2
    assert post.highest_priority is ReportPriority.MEDIUM
    assert post.reasons == {"spam": 1, "false_info": 1}

    stats = await service.stats()
    assert stats.pending == 3
    assert stats.by_reason["harassment"] == 1


@pytest.mark.asyncio
async def test_history_is_linked_to_the_report():
    service, _, audit_repo, _, _, _ = _build()
    report = (await _report(service)).report
    await service.process_report(MODO, report.id, action="hide_content")

    history = await AuditLogger(audit_repo).query(AuditQuery(related_report_id=report.id))

    assert {e.action for e in history} == {AuditAction.CONTENT_HIDE, AuditAction.REPORT_PROCESS}
