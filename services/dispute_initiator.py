"""Dispute Initiator - opens a dispute when the buyer rejects delivered goods"""

import logging
from typing import NamedTuple, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models import NotificationType, Transaction
from services.notification_service import NotificationService
from services.settlement_side_effects import TRANSACTION_RESOURCE

logger = logging.getLogger(__name__)


class DisputeOpening(NamedTuple):
    """Result of opening a dispute"""

    dispute_created: bool
    dispute_id: Optional[int]
    buyer_notification_id: Optional[int] = None


class DisputeInitiator:
    """
    Writes the dispute record pair: one notification to the supplier and one
    confirmation to the buyer, both tagged with the transaction. The supplier
    record's id identifies the dispute. Arbitration happens elsewhere.
    """

    @classmethod
    async def open_for_quality_rejection(
        cls,
        session: AsyncSession,
        transaction: Transaction,
        notes: str,
    ) -> DisputeOpening:
        """Create the pair inside the caller's unit of work so it commits with the rejection"""
        supplier_record = await NotificationService.add_in_session(
            session,
            transaction.supplier_id,
            NotificationType.DISPUTE_OPENED,
            "Quality Rejected - Dispute Opened",
            f"Buyer rejected quality for order. Reason: {notes}",
            TRANSACTION_RESOURCE,
            transaction.id,
        )
        buyer_record = await NotificationService.add_in_session(
            session,
            transaction.buyer_id,
            NotificationType.DISPUTE_OPENED,
            "Dispute Filed",
            "Your quality rejection has initiated a dispute. Our team will review.",
            TRANSACTION_RESOURCE,
            transaction.id,
        )

        logger.info(
            f"⚖️ DISPUTE_INITIATOR: Dispute {supplier_record.id} opened for transaction {transaction.id}"
        )
        return DisputeOpening(
            dispute_created=True,
            dispute_id=supplier_record.id,
            buyer_notification_id=buyer_record.id,
        )
