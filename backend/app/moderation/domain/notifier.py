"""User-facing notifications for sanctions and their reversal."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional, Protocol

from app.moderation.domain.content import ContentSnapshot
from app.moderation.domain.rbac import ROLE_LABELS
from app.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


class SanctionType(str, Enum):
    WARN = "warn"
    SUSPEND = "suspend"
    BAN = "ban"
    UNWARN = "unwarn"
    UNSUSPEND = "unsuspend"
    UNBAN = "unban"


class NotificationSink(Protocol):
    async def create(
        self,
        recipient_id: str,
        type: str,
        title: str,
        message: str,
        data: Mapping[str, Any],
    ) -> str | None:
        """Persist a notification; returns its id or None when skipped as a duplicate."""
        ...


@dataclass(slots=True)
class SanctionNotice:
    sanction_type: SanctionType
    user_id: str
    actor_id: str
    actor_role: str
    reason: Optional[str] = None
    event_id: Optional[str] = None
    suspended_until: Optional[datetime] = None
    content: Optional[ContentSnapshot] = None


@dataclass(slots=True)
class RenderedNotification:
    type: str
    title: str
    message: str
    data: dict[str, Any]


def _role_label(role: str) -> str:
    return ROLE_LABELS.get(role, "Moderation team")


def render_notice(notice: SanctionNotice) -> RenderedNotification:
    reason = notice.reason or "No reason given"
    kind = notice.sanction_type
    if kind is SanctionType.BAN:
        title = "Your account has been banned"
        message = f"Your account has been permanently banned. Reason: {reason}"
    elif kind is SanctionType.SUSPEND:
        until = notice.suspended_until.isoformat() if notice.suspended_until else "further notice"
        title = "Your account has been suspended"
        message = f"Your account is suspended until {until}. Reason: {reason}"
    elif kind is SanctionType.WARN:
        title = "You have received a warning"
        message = f"A moderator issued a warning on your account. Reason: {reason}"
    elif kind is SanctionType.UNBAN:
        title = "Your account has been reinstated"
        message = f"Your ban was lifted by a {_role_label(notice.actor_role).lower()}."
    elif kind is SanctionType.UNSUSPEND:
        title = "Your suspension has been lifted"
        message = f"Your suspension was lifted by a {_role_label(notice.actor_role).lower()}."
    else:
        title = "A warning has been removed"
        message = f"A warning on your account was removed by a {_role_label(notice.actor_role).lower()}."

    data: dict[str, Any] = {
        "sanction_type": kind.value,
        "reason": notice.reason,
        "actor_id": notice.actor_id,
        "actor_role": notice.actor_role,
        "event_id": notice.event_id,
    }
    if notice.suspended_until is not None:
        data["suspended_until"] = notice.suspended_until.isoformat()
    if notice.content is not None:
        data["content_id"] = notice.content.content_id
        data["content_type"] = notice.content.content_type
        data["content_snapshot"] = {
            "content": notice.content.excerpt,
            "media_url": notice.content.media_url,
        }
    return RenderedNotification(type=f"sanction_{kind.value}", title=title, message=message, data=data)


class SanctionNotifier:
    """Best-effort delivery: every failure is logged and swallowed."""

    def __init__(self, sink: NotificationSink) -> None:
        self._sink = sink

    async def notify(self, notice: SanctionNotice) -> str | None:
        try:
            rendered = render_notice(notice)
            notification_id = await self._sink.create(
                notice.user_id,
                rendered.type,
                rendered.title,
                rendered.message,
                rendered.data,
            )
        except Exception:  # noqa: BLE001 - notifications must never fail the sanction
            logger.exception(
                "failed to send sanction notification",
                extra={"user_id": notice.user_id, "sanction": notice.sanction_type.value, "event_id": notice.event_id},
            )
            obs_metrics.MOD_SIDE_EFFECT_FAILURES_TOTAL.labels(kind="notification").inc()
            return None
        return notification_id


@dataclass(slots=True)
class StoredNotification:
    id: str
    recipient_id: str
    type: str
    title: str
    message: str
    data: dict[str, Any]


class InMemoryNotificationSink(NotificationSink):
    def __init__(self) -> None:
        self.notifications: list[StoredNotification] = []

    async def create(
        self,
        recipient_id: str,
        type: str,
        title: str,
        message: str,
        data: Mapping[str, Any],
    ) -> str | None:
        event_id = data.get("event_id")
        if event_id and any(n.data.get("event_id") == event_id and n.type == type for n in self.notifications):
            return None
        notification = StoredNotification(
            id=f"notif-{len(self.notifications) + 1}",
            recipient_id=recipient_id,
            type=type,
            title=title,
            message=message,
            data=dict(data),
        )
        self.notifications.append(notification)
        return notification.id
