"""
Optimistic Locking Infrastructure
Status compare-and-swap for transaction rows so that concurrent requests cannot both apply a transition
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from models import Transaction, TransactionStatus
from utils.datetime_helpers import utc_now
from utils.exceptions import InternalError, NotFoundError, StateError

logger = logging.getLogger(__name__)


class OptimisticLockManager:
    """
    Performs status-guarded updates.

    The row is written only while its status still equals the status the caller
    observed, and its version is bumped on every write.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def compare_and_set_status(
        self,
        transaction: Transaction,
        expected_status: TransactionStatus,
        new_status: TransactionStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """
        Move ``transaction`` from ``expected_status`` to ``new_status``.

        Raises:
            StateError: If another request changed the status first
        """
        update_values = {
            **(updates or {}),
            'status': new_status.value,
            'version': Transaction.version + 1,
            'updated_at': utc_now(),
        }

        stmt = (
            update(Transaction)
            .where(
                Transaction.id == transaction.id,
                Transaction.status == expected_status.value,
            )
            .values(update_values)
            .execution_options(synchronize_session=False)
        )

        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(f"❌ Database error during status update for transaction {transaction.id}: {e}")
            raise InternalError("Failed to update transaction status") from e

        if result.rowcount == 0:
            logger.warning(
                f"🔒 Optimistic lock conflict: transaction id={transaction.id} "
                f"expected_status={expected_status.value} target={new_status.value}"
            )
            raise StateError(
                f"Transaction {transaction.id} is no longer {expected_status.value}; "
                f"it was modified by another request",
                error_code="CONCURRENT_MODIFICATION",
            )

        await self.session.refresh(transaction)
        logger.debug(
            f"✅ Status CAS successful: transaction id={transaction.id} "
            f"{expected_status.value} → {new_status.value} (v{transaction.version})"
        )
        return transaction


async def load_transaction(session: AsyncSession, transaction_id: int, for_update: bool = True) -> Transaction:
    """
    Read a transaction at the start of a read-modify-write unit.

    Row-locks it where the database supports ``FOR UPDATE``; the status CAS
    still protects databases that do not.

    Raises:
        NotFoundError: If no such transaction exists
    """
    stmt = select(Transaction).where(Transaction.id == transaction_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    transaction = result.scalar_one_or_none()
    if transaction is None:
        raise NotFoundError(f"Transaction {transaction_id} not found")
    return transaction
