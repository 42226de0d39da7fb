"""
Settlement Side Effects
Post-commit fan-out of notifications, realtime events and activity entries.

Everything here runs after the primary state change is committed. Each call is
isolated: one failing collaborator is logged and the rest still run, and
nothing is raised back to the settlement operation.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models import NotificationType, Transaction
from services.activity_log_service import ActivityLogService
from services.notification_service import NotificationRouter, NotificationService
from services.realtime_events import RealtimeEventEmitter

logger = logging.getLogger(__name__)

TRANSACTION_RESOURCE = "transaction"


class SettlementSideEffects:
    """Best-effort delivery of everything a settlement step announces"""

    def __init__(
        self,
        notifications: Optional[NotificationService] = None,
        router: Optional[NotificationRouter] = None,
        events: Optional[RealtimeEventEmitter] = None,
        activity: Optional[ActivityLogService] = None,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
    ):
        self.notifications = notifications or NotificationService(session_factory)
        self.router = router or NotificationRouter(self.notifications, session_factory)
        self.events = events or RealtimeEventEmitter()
        self.activity = activity or ActivityLogService(session_factory)

    async def _safely(self, label: str, action: Callable[[], Awaitable[Any]]) -> bool:
        try:
            await action()
            return True
        except Exception as e:
            logger.warning(f"⚠️ SIDE_EFFECT_FAILED: {label}: {e}")
            return False

    async def emit_to_parties(self, transaction: Transaction, event: str,
                              payload: Optional[Dict[str, Any]] = None) -> bool:
        body = {"transactionId": transaction.id, "status": transaction.status, **(payload or {})}
        return await self._safely(
            f"event {event} for transaction {transaction.id}",
            lambda: self.events.emit_to_parties(transaction.buyer_id, transaction.supplier_id, event, body),
        )

    async def emit(self, user_id: int, event: str, payload: Dict[str, Any]) -> bool:
        return await self._safely(
            f"event {event} for user {user_id}",
            lambda: self.events.emit(user_id, event, payload),
        )

    async def notify(self, user_id: int, notification_type: NotificationType, title: str, message: str,
                     transaction_id: Optional[int] = None) -> bool:
        return await self._safely(
            f"notification {notification_type.value} for user {user_id}",
            lambda: self.notifications.notify(
                user_id, notification_type, title, message, TRANSACTION_RESOURCE, transaction_id
            ),
        )

    async def notify_role(self, notification_type: NotificationType, title: str, message: str,
                          transaction_id: Optional[int] = None) -> bool:
        return await self._safely(
            f"role notification {notification_type.value}",
            lambda: self.router.route(notification_type, title, message, TRANSACTION_RESOURCE, transaction_id),
        )

    async def log_activity(self, user_id: Optional[int], action: str, transaction_id: Optional[int] = None,
                           details: Optional[Dict[str, Any]] = None) -> bool:
        return await self._safely(
            f"activity {action}",
            lambda: self.activity.record(user_id, action, TRANSACTION_RESOURCE, transaction_id, details),
        )
