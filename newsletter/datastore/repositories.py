"""
Repository layer - per-user data access used inside cache producers.

``NewsletterRepository`` is the interface route handlers depend on; the
in-memory implementation backs development and tests.
"""

import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Protocol

from loguru import logger

from newsletter.datastore.models import (
    GrowthPoint,
    Newsletter,
    Subscriber,
    UserSettings,
)


class NewsletterRepository(Protocol):
    async def get_settings(self, user_id: str) -> UserSettings: ...

    async def update_settings(self, user_id: str, settings: UserSettings) -> UserSettings: ...

    async def list_subscribers(
        self, user_id: str, page: int, limit: int
    ) -> list[Subscriber]: ...

    async def count_subscribers(self, user_id: str) -> int: ...

    async def add_subscribers(
        self, user_id: str, subscribers: list[Subscriber]
    ) -> list[Subscriber]: ...

    async def remove_subscriber(self, user_id: str, email: str) -> bool: ...

    async def list_newsletters(self, user_id: str) -> list[Newsletter]: ...

    async def create_newsletter(
        self, user_id: str, title: str, subject: str, content: str
    ) -> Newsletter: ...

    async def subscriber_growth(self, user_id: str, days: int) -> list[GrowthPoint]: ...


class InMemoryRepository:
    """Dict-backed repository. ``query_count`` counts every read."""

    def __init__(self):
        self._settings: dict[str, UserSettings] = {}
        self._subscribers: dict[str, dict[str, Subscriber]] = {}
        self._newsletters: dict[str, list[Newsletter]] = {}
        self.query_count = 0

    async def get_settings(self, user_id: str) -> UserSettings:
        self.query_count += 1
        return self._settings.get(user_id) or UserSettings()

    async def update_settings(self, user_id: str, settings: UserSettings) -> UserSettings:
        settings.updated_at = datetime.now()
        self._settings[user_id] = settings
        return settings

    async def list_subscribers(
        self, user_id: str, page: int, limit: int
    ) -> list[Subscriber]:
        self.query_count += 1
        rows = sorted(
            self._subscribers.get(user_id, {}).values(),
            key=lambda s: s.subscribed,
            reverse=True,
        )
        start = (max(page, 1) - 1) * limit
        return rows[start : start + limit]

    async def count_subscribers(self, user_id: str) -> int:
        self.query_count += 1
        return sum(
            1
            for s in self._subscribers.get(user_id, {}).values()
            if s.status == "active"
        )

    async def add_subscribers(
        self, user_id: str, subscribers: list[Subscriber]
    ) -> list[Subscriber]:
        bucket = self._subscribers.setdefault(user_id, {})
        added = [s for s in subscribers if s.email not in bucket]
        for subscriber in added:
            bucket[subscriber.email] = subscriber
        if len(added) < len(subscribers):
            logger.debug(
                f"Skipped {len(subscribers) - len(added)} duplicate subscribers "
                f"for user {user_id}"
            )
        return added

    async def remove_subscriber(self, user_id: str, email: str) -> bool:
        return self._subscribers.get(user_id, {}).pop(email, None) is not None

    async def list_newsletters(self, user_id: str) -> list[Newsletter]:
        self.query_count += 1
        return list(self._newsletters.get(user_id, []))

    async def create_newsletter(
        self, user_id: str, title: str, subject: str, content: str
    ) -> Newsletter:
        newsletter = Newsletter(
            id=uuid.uuid4().hex,
            title=title,
            subject=subject,
            content=content,
        )
        self._newsletters.setdefault(user_id, []).append(newsletter)
        return newsletter

    async def subscriber_growth(self, user_id: str, days: int) -> list[GrowthPoint]:
        self.query_count += 1
        cutoff = datetime.now() - timedelta(days=days)
        per_day = Counter(
            s.subscribed.strftime("%Y-%m-%d")
            for s in self._subscribers.get(user_id, {}).values()
            if s.subscribed >= cutoff
        )
        return [GrowthPoint(date=day, count=per_day[day]) for day in sorted(per_day)]
