"""In-app notifications written alongside settlement outcomes."""

from __future__ import annotations

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_settlement.core.settings import get_settings
from booking_settlement.models.notification import Notification, NotificationCategoryEnum


class NotificationService:
    """Insert user-facing notifications, deduplicated by recipient and message."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        sender: str | None = None,
        url: str | None = None,
    ) -> None:
        settings = get_settings()
        self._db = db_session
        self._sender = sender or settings.notification_sender
        self._url = url or settings.notification_url

    async def exists(self, *, recipient: str, message: str) -> bool:
        stmt = (
            select(Notification.id)
            .where(Notification.recipient == recipient, Notification.message == message)
            .limit(1)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def notify(
        self,
        *,
        recipient: str,
        message: str,
        category: NotificationCategoryEnum,
    ) -> Notification | None:
        """Add a notification unless the same message already reached the recipient.

        Returns the new row, or ``None`` when an identical notification exists.
        Flushes but does not commit; the caller's transaction decides durability.
        """

        if await self.exists(recipient=recipient, message=message):
            logger.debug("Skipped duplicate notification", recipient=recipient, category=category.value)
            return None

        notification = Notification(
            recipient=recipient,
            category=category,
            message=message,
            sender=self._sender,
            url=self._url,
        )
        self._db.add(notification)
        await self._db.flush()
        return notification
