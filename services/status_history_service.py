"""
Transaction Status History Service
Append-only audit trail of every status change, plus the UI-facing milestone feed.

The history rows are the authoritative record: replaying them in order must
reproduce ``Transaction.status``. Milestones are a human-readable projection
and are never replayed.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import (
    Transaction, TransactionMilestone, TransactionStatus, TransactionStatusHistory
)
from utils.datetime_helpers import utc_now
from utils.exceptions import NotFoundError, StateError
from utils.json_serialization import sanitize_for_json_column
from utils.optimistic_locking import OptimisticLockManager
from utils.transaction_state_validator import TransactionStateValidator

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class StatusHistoryService:
    """Writes and reads the transaction audit trail"""

    @classmethod
    async def record_transition(
        cls,
        session: AsyncSession,
        transaction_id: int,
        old_status: Optional[TransactionStatus],
        new_status: TransactionStatus,
        changed_by_id: Optional[int],
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
        at: Optional[datetime] = None,
    ) -> TransactionStatusHistory:
        """Append one history row inside the caller's unit of work"""
        entry = TransactionStatusHistory(
            transaction_id=transaction_id,
            old_status=old_status.value if old_status else None,
            new_status=new_status.value,
            changed_by_id=changed_by_id,
            reason=reason,
            change_metadata=sanitize_for_json_column(metadata),
            created_at=at or utc_now(),
        )
        session.add(entry)
        await session.flush()

        logger.info(
            f"📜 STATUS_HISTORY: Transaction {transaction_id} "
            f"{old_status.value if old_status else '∅'} → {new_status.value} ({reason})"
        )
        return entry

    @classmethod
    async def record_milestone(
        cls,
        session: AsyncSession,
        transaction_id: int,
        status: TransactionStatus,
        description: str,
        actor: str,
        at: Optional[datetime] = None,
    ) -> TransactionMilestone:
        milestone = TransactionMilestone(
            transaction_id=transaction_id,
            status=status.value,
            description=description,
            actor=actor,
            created_at=at or utc_now(),
        )
        session.add(milestone)
        await session.flush()
        return milestone

    @classmethod
    async def apply_transition(
        cls,
        session: AsyncSession,
        transaction: Transaction,
        expected_status: TransactionStatus,
        new_status: TransactionStatus,
        changed_by_id: Optional[int],
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
        updates: Optional[Dict[str, Any]] = None,
    ) -> TransactionStatusHistory:
        """
        Compare-and-swap the status and append its history row.

        Both writes share the caller's session, so they commit or roll back together.

        Raises:
            StateError: If the transition is illegal or the status changed underneath us
        """
        if not TransactionStateValidator.is_valid_transition(expected_status, new_status):
            # Callers validate the event first; this catches table drift
            raise StateError(
                f"Illegal transition {expected_status.value} -> {new_status.value}",
                current_status=expected_status.value,
            )

        await OptimisticLockManager(session).compare_and_set_status(
            transaction, expected_status, new_status, updates
        )
        return await cls.record_transition(
            session,
            transaction.id,
            expected_status,
            new_status,
            changed_by_id,
            reason,
            metadata,
        )

    @classmethod
    async def get_history(cls, session: AsyncSession, transaction_id: int) -> List[TransactionStatusHistory]:
        result = await session.execute(
            select(TransactionStatusHistory)
            .where(TransactionStatusHistory.transaction_id == transaction_id)
            .order_by(TransactionStatusHistory.created_at, TransactionStatusHistory.id)
        )
        return list(result.scalars().all())

    @classmethod
    async def get_milestones(cls, session: AsyncSession, transaction_id: int) -> List[TransactionMilestone]:
        result = await session.execute(
            select(TransactionMilestone)
            .where(TransactionMilestone.transaction_id == transaction_id)
            .order_by(TransactionMilestone.created_at, TransactionMilestone.id)
        )
        return list(result.scalars().all())

    @staticmethod
    def replay(entries: Iterable[TransactionStatusHistory]) -> Optional[TransactionStatus]:
        """
        Reconstruct the current status from ordered history rows.

        Raises:
            ValueError: If a row does not continue from the previous row's status
        """
        status: Optional[TransactionStatus] = None
        for entry in entries:
            old = TransactionStatus(entry.old_status) if entry.old_status else None
            if old != status:
                raise ValueError(
                    f"History gap at entry {entry.id}: expected from "
                    f"{status.value if status else None}, found {entry.old_status}"
                )
            status = TransactionStatus(entry.new_status)
        return status

    @classmethod
    async def verify_consistency(cls, session: AsyncSession, transaction_id: int) -> bool:
        """True when replaying the history reproduces the stored status"""
        transaction = await session.get(Transaction, transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")

        history = await cls.get_history(session, transaction_id)
        try:
            replayed = cls.replay(history)
        except ValueError as e:
            logger.error(f"❌ STATUS_HISTORY: Transaction {transaction_id} history is broken: {e}")
            return False

        consistent = replayed is not None and replayed.value == transaction.status
        if not consistent:
            logger.error(
                f"❌ STATUS_HISTORY: Transaction {transaction_id} stored={transaction.status} "
                f"replayed={replayed.value if replayed else None}"
            )
        return consistent
