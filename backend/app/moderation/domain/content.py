"""Contract for the post/comment store that moderation acts upon."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol

from app.moderation.domain.reports import TargetType

EXCERPT_LENGTH = 140


@dataclass(slots=True)
class ContentItem:
    content_type: TargetType
    content_id: str
    author_id: str
    body: str = ""
    media_urls: tuple[str, ...] = ()
    hidden: bool = False


@dataclass(slots=True)
class ContentSnapshot:
    """Truncated copy of a piece of content, taken before it may be removed."""

    content_type: str
    content_id: str
    excerpt: Optional[str] = None
    media_url: Optional[str] = None

    def to_dict(self) -> dict[str, Optional[str]]:
        return {
            "content_type": self.content_type,
            "content_id": self.content_id,
            "content": self.excerpt,
            "media_url": self.media_url,
        }


def snapshot_content(
    item: ContentItem | None,
    *,
    content_type: TargetType | str,
    content_id: str,
) -> ContentSnapshot:
    type_value = content_type.value if isinstance(content_type, TargetType) else str(content_type)
    if item is None:
        return ContentSnapshot(content_type=type_value, content_id=content_id)
    body = item.body or ""
    excerpt = body if len(body) <= EXCERPT_LENGTH else f"{body[:EXCERPT_LENGTH]}..."
    return ContentSnapshot(
        content_type=type_value,
        content_id=content_id,
        excerpt=excerpt or None,
        media_url=item.media_urls[0] if item.media_urls else None,
    )


class ContentStore(Protocol):
    async def fetch(self, content_type: TargetType, content_id: str) -> ContentItem | None:
        ...

    async def soft_hide(self, content_type: TargetType, content_id: str, hidden: bool) -> bool:
        ...

    async def hard_delete(self, content_type: TargetType, content_id: str) -> bool:
        ...


class InMemoryContentStore(ContentStore):
    def __init__(self) -> None:
        self.items: dict[tuple[TargetType, str], ContentItem] = {}
        self.deleted: set[tuple[TargetType, str]] = set()

    def put(self, item: ContentItem) -> ContentItem:
        self.items[(item.content_type, item.content_id)] = item
        return item

    async def fetch(self, content_type: TargetType, content_id: str) -> ContentItem | None:
        return self.items.get((content_type, content_id))

    async def soft_hide(self, content_type: TargetType, content_id: str, hidden: bool) -> bool:
        item = self.items.get((content_type, content_id))
        if item is None:
            return False
        item.hidden = hidden
        return True

    async def hard_delete(self, content_type: TargetType, content_id: str) -> bool:
        item = self.items.pop((content_type, content_id), None)
        if item is None:
            return False
        self.deleted.add((content_type, content_id))
        return True
