"""Posts and comments as seen by moderation."""

from __future__ import annotations

import json
from typing import Any

import asyncpg

from app.moderation.domain.content import ContentItem, ContentStore
from app.moderation.domain.reports import TargetType
from app.moderation.infra.postgres_repo import is_uuid

_TABLES: dict[TargetType, str] = {
    TargetType.POST: "posts",
    TargetType.COMMENT: "comments",
}


def _table(content_type: TargetType) -> str:
    try:
        return _TABLES[content_type]
    except KeyError:
        raise ValueError(f"not a content type: {content_type}") from None


def _media(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    items = json.loads(value) if isinstance(value, str) else value
    urls: list[str] = []
    for item in items:
        if isinstance(item, str):
            urls.append(item)
        elif isinstance(item, dict) and item.get("url"):
            urls.append(str(item["url"]))
    return tuple(urls)


class PostgresContentStore(ContentStore):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def fetch(self, content_type: TargetType, content_id: str) -> ContentItem | None:
        if not is_uuid(content_id):
            return None
        table = _table(content_type)
        media_column = "media" if content_type is TargetType.POST else "NULL::jsonb AS media"
        query = f"""
        SELECT id, author_id, body, {media_column}, is_hidden
        FROM {table}
        WHERE id = $1::uuid AND deleted_at IS NULL
        """
        record = await self.pool.fetchrow(query, content_id)
        if record is None:
            return None
        return ContentItem(
            content_type=content_type,
            content_id=str(record["id"]),
            author_id=str(record["author_id"]),
            body=record["body"] or "",
            media_urls=_media(record["media"]),
            hidden=bool(record["is_hidden"]),
        )

    async def soft_hide(self, content_type: TargetType, content_id: str, hidden: bool) -> bool:
        if not is_uuid(content_id):
            return False
        table = _table(content_type)
        result = await self.pool.execute(
            f"UPDATE {table} SET is_hidden = $2 WHERE id = $1::uuid AND deleted_at IS NULL",
            content_id,
            hidden,
        )
        return result.endswith(" 1")

    async def hard_delete(self, content_type: TargetType, content_id: str) -> bool:
        if not is_uuid(content_id):
            return False
        table = _table(content_type)
        result = await self.pool.execute(f"DELETE FROM {table} WHERE id = $1::uuid", content_id)
        return result.endswith(" 1")
