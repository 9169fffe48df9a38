"""Lightweight service container shared by moderation modules."""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

import asyncpg
from redis.asyncio import Redis

from app.infra.redis import RedisProxy, redis_client
from app.moderation.domain.audit import AuditLogger, AuditRepository, InMemoryAuditRepository
from app.moderation.domain.content import ContentStore, InMemoryContentStore
from app.moderation.domain.dashboard import DashboardService
from app.moderation.domain.notifier import InMemoryNotificationSink, NotificationSink, SanctionNotifier
from app.moderation.domain.reports import InMemoryReportRepository, ReportRepository
from app.moderation.domain.reports_service import ReportService
from app.moderation.domain.sanctions import (
    InMemoryUserSanctionRepository,
    SanctionService,
    UserSanctionRepository,
)
from app.moderation.infra.content_store import PostgresContentStore
from app.moderation.infra.notifications import PostgresNotificationSink
from app.moderation.infra.postgres_repo import PostgresAuditRepository, PostgresReportRepository
from app.moderation.infra.user_repo import PostgresUserSanctionRepository
from app.settings import settings

_report_repository: ReportRepository = InMemoryReportRepository()
_audit_repository: AuditRepository = InMemoryAuditRepository()
_user_repository: UserSanctionRepository = InMemoryUserSanctionRepository()
_content_store: ContentStore = InMemoryContentStore()
_notification_sink: NotificationSink = InMemoryNotificationSink()
_redis_proxy: RedisProxy = redis_client
_audit_logger: AuditLogger
_notifier: SanctionNotifier
_sanction_service: SanctionService
_report_service: ReportService
_dashboard_service: DashboardService


def configure(
    *,
    report_repository: Optional[ReportRepository] = None,
    audit_repository: Optional[AuditRepository] = None,
    user_repository: Optional[UserSanctionRepository] = None,
    content_store: Optional[ContentStore] = None,
    notification_sink: Optional[NotificationSink] = None,
    redis_proxy: Optional[RedisProxy] = None,
) -> None:
    """Rewire the moderation services; omitted collaborators keep their current value."""
    global _report_repository, _audit_repository, _user_repository, _content_store, _notification_sink, _redis_proxy
    global _audit_logger, _notifier, _sanction_service, _report_service, _dashboard_service

    if report_repository is not None:
        _report_repository = report_repository
    if audit_repository is not None:
        _audit_repository = audit_repository
    if user_repository is not None:
        _user_repository = user_repository
    if content_store is not None:
        _content_store = content_store
    if notification_sink is not None:
        _notification_sink = notification_sink
    if redis_proxy is not None:
        _redis_proxy = redis_proxy

    _audit_logger = AuditLogger(repository=_audit_repository)
    _notifier = SanctionNotifier(_notification_sink)
    _sanction_service = SanctionService(
        users=_user_repository,
        audit=_audit_logger,
        notifier=_notifier,
        warnings_before_auto_suspension=settings.moderation_warnings_before_auto_suspension,
        auto_suspension_duration=timedelta(hours=settings.moderation_auto_suspension_hours),
    )
    _report_service = ReportService(
        reports=_report_repository,
        audit=_audit_logger,
        sanctions=_sanction_service,
        content=_content_store,
        redis=_redis_proxy,
        escalation_stream=settings.moderation_escalation_stream,
        default_suspension_hours=settings.moderation_default_suspension_hours,
    )
    _dashboard_service = DashboardService(
        users=_user_repository,
        reports=_report_repository,
        audit=_audit_logger,
    )


def configure_postgres(pool: asyncpg.Pool, redis_conn: Redis | RedisProxy) -> None:
    proxy = redis_conn if isinstance(redis_conn, RedisProxy) else RedisProxy(redis_conn)
    configure(
        report_repository=PostgresReportRepository(pool),
        audit_repository=PostgresAuditRepository(pool),
        user_repository=PostgresUserSanctionRepository(pool),
        content_store=PostgresContentStore(pool),
        notification_sink=PostgresNotificationSink(pool),
        redis_proxy=proxy,
    )


def reset_in_memory() -> None:
    """Fresh in-memory stores, used by tests and local tooling."""
    configure(
        report_repository=InMemoryReportRepository(),
        audit_repository=InMemoryAuditRepository(),
        user_repository=InMemoryUserSanctionRepository(),
        content_store=InMemoryContentStore(),
        notification_sink=InMemoryNotificationSink(),
        redis_proxy=redis_client,
    )


def get_report_repository() -> ReportRepository:
    return _report_repository


def get_audit_repository() -> AuditRepository:
    return _audit_repository


def get_user_repository() -> UserSanctionRepository:
    return _user_repository


def get_content_store() -> ContentStore:
    return _content_store


def get_notification_sink() -> NotificationSink:
    return _notification_sink


def get_audit_logger() -> AuditLogger:
    return _audit_logger


def get_sanction_service() -> SanctionService:
    return _sanction_service


def get_report_service() -> ReportService:
    return _report_service


def get_dashboard_service() -> DashboardService:
    return _dashboard_service


configure()
