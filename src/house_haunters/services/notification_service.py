"""Notification Service - persisted, best-effort user notifications.

Notifications are dispatched after the transition that caused them has
committed. Each one is written in its own short session so a failure here
can never roll back or expire the caller's booking state. Delivery is
at-most-once: failures are logged and dropped.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from house_haunters.domain.enums import NotificationType, UserRole
from house_haunters.domain.models import Notification, User
from house_haunters.infra.database import async_session

logger = logging.getLogger(__name__)


class NotificationService:
    """Creates Notification rows for users and for the admin channel."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def send(
        self,
        user_id: str,
        title: str,
        message: str,
        notification_type: NotificationType,
        action_url: Optional[str] = None,
        data: Optional[dict] = None,
    ) -> bool:
        """Persist one notification. Returns False if it could not be stored."""
        logger.info(
            "Sending %s to user %s: %s", notification_type.value, user_id, title
        )
        async with self.session_factory() as session:
            try:
                session.add(
                    Notification(
                        user_id=user_id,
                        title=title,
                        message=message,
                        type=notification_type.value,
                        action_url=action_url,
                        data=data,
                    )
                )
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(
                    "Failed to persist %s notification for user %s: %s",
                    notification_type.value, user_id, e,
                )
                return False
        return True

    async def send_many(
        self,
        user_ids: list[str],
        title: str,
        message: str,
        notification_type: NotificationType,
        action_url: Optional[str] = None,
    ) -> int:
        """Send the same notification to several users. Returns the number stored."""
        sent = 0
        for user_id in user_ids:
            if await self.send(user_id, title, message, notification_type, action_url):
                sent += 1
        return sent

    async def notify_admins(
        self,
        title: str,
        message: str,
        notification_type: NotificationType,
        action_url: Optional[str] = "/admin/disputes",
    ) -> int:
        """Fan a notification out to every active administrator."""
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    select(User.id).where(
                        User.role == UserRole.ADMIN.value,
                        User.is_active.is_(True),
                    )
                )
                admin_ids = list(result.scalars().all())
            except SQLAlchemyError as e:
                logger.error("Failed to load admin recipients for %s: %s", notification_type.value, e)
                return 0

        if not admin_ids:
            logger.warning("No admin recipients for %s: %s", notification_type.value, title)
            return 0
        return await self.send_many(admin_ids, title, message, notification_type, action_url)


def get_notification_service() -> NotificationService:
    """FastAPI dependency: notifier bound to the application session factory."""
    return NotificationService(async_session)
