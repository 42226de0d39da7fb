"""
Notification Service and Role Router
Persists in-app notifications for buyers, suppliers and admins.

Admin fan-out goes through ``NotificationRouter``: callers name a notification
type and the router resolves which roles are subscribed to it, instead of each
operation querying for admin users itself.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import async_managed_session
from models import Notification, NotificationType, User, UserRole

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Writes notification rows.

    ``notify`` runs in its own session and never raises: a failed
    notification must not undo the state change that triggered it.
    ``add_in_session`` is for records that belong to the caller's unit of
    work, such as the dispute pair.
    """

    def __init__(self, session_factory: Optional[Callable[[], AsyncSession]] = None):
        self.session_factory = session_factory

    @staticmethod
    async def add_in_session(
        session: AsyncSession,
        user_id: int,
        notification_type: NotificationType,
        title: str,
        message: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[int] = None,
    ) -> Notification:
        notification = Notification(
            user_id=user_id,
            type=notification_type.value,
            title=title,
            message=message,
            resource_type=resource_type,
            resource_id=resource_id,
        )
        session.add(notification)
        await session.flush()
        return notification

    async def notify(
        self,
        user_id: int,
        notification_type: NotificationType,
        title: str,
        message: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[int] = None,
    ) -> Optional[int]:
        """Best-effort single notification; returns its id or ``None`` on failure"""
        try:
            async with async_managed_session(self.session_factory) as session:
                notification = await self.add_in_session(
                    session, user_id, notification_type, title, message, resource_type, resource_id
                )
                notification_id = notification.id
            logger.info(f"🔔 NOTIFICATION: {notification_type.value} → user {user_id} ({title})")
            return notification_id
        except Exception as e:
            logger.error(f"❌ NOTIFICATION_FAILED: {notification_type.value} → user {user_id}: {e}")
            return None

    async def notify_many(
        self,
        user_ids: Iterable[int],
        notification_type: NotificationType,
        title: str,
        message: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[int] = None,
    ) -> int:
        """Best-effort fan-out; returns how many notifications were stored"""
        delivered = 0
        for user_id in user_ids:
            if await self.notify(user_id, notification_type, title, message, resource_type, resource_id):
                delivered += 1
        return delivered


class NotificationRouter:
    """Role-based subscriptions for notifications that go to staff rather than a named user"""

    DEFAULT_SUBSCRIPTIONS: Dict[NotificationType, Set[UserRole]] = {
        NotificationType.PAYMENT_RECEIVED: {UserRole.ADMIN},
        NotificationType.DISPUTE_OPENED: {UserRole.ADMIN},
        NotificationType.REFUND_ISSUED: {UserRole.ADMIN},
    }

    def __init__(
        self,
        notifications: NotificationService,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        subscriptions: Optional[Dict[NotificationType, Set[UserRole]]] = None,
    ):
        self.notifications = notifications
        self.session_factory = session_factory
        source = self.DEFAULT_SUBSCRIPTIONS if subscriptions is None else subscriptions
        self._subscriptions: Dict[NotificationType, Set[UserRole]] = {
            notification_type: set(roles) for notification_type, roles in source.items()
        }

    def subscribe(self, role: UserRole, notification_type: NotificationType) -> None:
        self._subscriptions.setdefault(notification_type, set()).add(role)

    def unsubscribe(self, role: UserRole, notification_type: NotificationType) -> None:
        self._subscriptions.get(notification_type, set()).discard(role)

    def roles_for(self, notification_type: NotificationType) -> Set[UserRole]:
        return set(self._subscriptions.get(notification_type, set()))

    async def recipients(self, notification_type: NotificationType) -> List[int]:
        roles = self.roles_for(notification_type)
        if not roles:
            return []
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(User.id)
                .where(User.role.in_([role.value for role in roles]), User.is_active.is_(True))
                .order_by(User.id)
            )
            return list(result.scalars().all())

    async def route(
        self,
        notification_type: NotificationType,
        title: str,
        message: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[int] = None,
    ) -> int:
        """Notify every active user whose role subscribes to ``notification_type``; never raises"""
        try:
            user_ids = await self.recipients(notification_type)
        except Exception as e:
            logger.error(f"❌ NOTIFICATION_ROUTER: Could not resolve recipients for {notification_type.value}: {e}")
            return 0

        if not user_ids:
            logger.debug(f"NOTIFICATION_ROUTER: No subscribers for {notification_type.value}")
            return 0

        return await self.notifications.notify_many(
            user_ids, notification_type, title, message, resource_type, resource_id
        )
