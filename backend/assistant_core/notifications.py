from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from records import PracticeStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    user_id: str
    title: str
    message: str
    link: str | None = None
    notification_type: str = "ai_action"


class Notifier(Protocol):
    async def notify(self, notification: Notification) -> None: ...


class InAppNotifier:
    def __init__(self, store: PracticeStore) -> None:
        self._store = store

    async def notify(self, notification: Notification) -> None:
        await self._store.append_notification(
            user_id=notification.user_id,
            title=notification.title,
            message=notification.message,
            link=notification.link,
            notification_type=notification.notification_type,
        )
        logger.info("notification stored for user=%s type=%s", notification.user_id, notification.notification_type)
