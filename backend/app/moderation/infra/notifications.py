"""Notification sink writing into the shared notifications table."""

from __future__ import annotations

import json
from typing import Any, Mapping

import asyncpg

from app.moderation.domain.notifier import NotificationSink


class PostgresNotificationSink(NotificationSink):
    """Insert-once per (type, event_id); replays return None."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def create(
        self,
        recipient_id: str,
        type: str,
        title: str,
        message: str,
        data: Mapping[str, Any],
    ) -> str | None:
        query = """
        INSERT INTO notifications (recipient_id, type, title, message, data, event_id)
        VALUES ($1, $2, $3, $4, $5::jsonb, $6)
        ON CONFLICT (type, event_id) WHERE event_id IS NOT NULL DO NOTHING
        RETURNING id
        """
        notification_id = await self.pool.fetchval(
            query,
            recipient_id,
            type,
            title,
            message,
            json.dumps(dict(data)),
            data.get("event_id"),
        )
        return str(notification_id) if notification_id is not None else None
