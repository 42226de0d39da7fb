"""Activity log - best-effort append-only record of user actions"""

import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from database import async_managed_session
from models import ActivityLog
from utils.json_serialization import sanitize_for_json_column

logger = logging.getLogger(__name__)


class ActivityLogService:
    """Failures here are swallowed; the activity log is never worth failing a request over"""

    def __init__(self, session_factory: Optional[Callable[[], AsyncSession]] = None):
        self.session_factory = session_factory

    async def record(
        self,
        user_id: Optional[int],
        action: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        try:
            async with async_managed_session(self.session_factory) as session:
                session.add(ActivityLog(
                    user_id=user_id,
                    action=action,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    details=sanitize_for_json_column(details),
                ))
            return True
        except Exception as e:
            logger.debug(f"ACTIVITY_LOG: dropped {action} for user {user_id}: {e}")
            return False
