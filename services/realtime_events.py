"""
Realtime Event Emitter
Pushes named events (qualityApproved, qualityRejected, fundsReleased, ...) to specific users.

Transport is pluggable: handlers registered with ``subscribe`` receive every
event (a websocket gateway, a message queue publisher). With no handlers the
emitter only logs.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List

from utils.json_serialization import ensure_json_safe

logger = logging.getLogger(__name__)

EventHandler = Callable[[int, str, Dict[str, Any]], Awaitable[None]]


class RealtimeEventEmitter:
    """Fan-out of user-addressed events to registered async handlers"""

    def __init__(self):
        self._handlers: List[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def emit(self, user_id: int, event: str, payload: Dict[str, Any]) -> None:
        """Deliver ``event`` to ``user_id``; handler failures are logged and dropped"""
        safe_payload = ensure_json_safe(payload)
        logger.debug(f"📡 REALTIME_EVENT: {event} → user {user_id}")

        if not self._handlers:
            return

        results = await asyncio.gather(
            *(handler(user_id, event, safe_payload) for handler in self._handlers),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.warning(f"⚠️ REALTIME_EVENT: Handler failed for {event} → user {user_id}: {result}")

    async def emit_to_parties(self, buyer_id: int, supplier_id: int, event: str, payload: Dict[str, Any]) -> None:
        await self.emit(supplier_id, event, payload)
        await self.emit(buyer_id, event, payload)
