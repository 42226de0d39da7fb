"""
Escrow Ledger
Tracks custody of buyer funds and the release conditions for each transaction.

Custody status lives on ``EscrowTransaction`` independently of the transaction
status so that partial satisfaction (delivery confirmed, quality still open) is
visible before any money moves. The ledger never releases funds by itself:
release always goes through ``FundReleaseService.release``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import SettlementPolicy
from models import (
    EscrowStatus, EscrowTransaction, ReleaseCondition, ReleaseConditionType,
    Transaction, TransactionStatus
)
from utils.datetime_helpers import as_utc, days_from, is_past, utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.escrow_state_validator import EscrowStateValidator
from utils.exceptions import NotFoundError, StateError, ValidationError
from utils.transaction_state_validator import DEADLINE_RELEASABLE_STATES

logger = logging.getLogger(__name__)


# Condition rows created for every escrow, in display order
DEFAULT_RELEASE_CONDITIONS = (
    (ReleaseConditionType.DELIVERY_CONFIRMED, "Delivery must be confirmed by buyer"),
    (ReleaseConditionType.QUALITY_APPROVED, "Quality must be approved by buyer"),
    (ReleaseConditionType.DOCUMENTS_VERIFIED, "All documents must be verified"),
)

# Flag/timestamp columns on EscrowTransaction mirrored from each condition
_CONDITION_FLAGS = {
    ReleaseConditionType.DELIVERY_CONFIRMED: ("delivery_confirmed", "delivery_confirmed_at"),
    ReleaseConditionType.QUALITY_APPROVED: ("quality_approved", "quality_approved_at"),
    ReleaseConditionType.DOCUMENTS_VERIFIED: ("documents_verified", "documents_verified_at"),
}


@dataclass
class ReleaseEligibility:
    """Whether an escrow may pay out now, and why not if it may not"""
    eligible: bool
    deadline_reached: bool
    all_conditions_met: bool
    fully_funded: bool
    reason: str = ""


class EscrowLedger:
    """Custody bookkeeping for transaction escrows"""

    def __init__(self, policy: Optional[SettlementPolicy] = None):
        self.policy = policy or SettlementPolicy.from_config()

    async def create_escrow(
        self,
        session: AsyncSession,
        transaction: Transaction,
        now: Optional[datetime] = None,
    ) -> EscrowTransaction:
        """Open a PENDING escrow with every release condition unsatisfied"""
        now = now or utc_now()
        escrow = EscrowTransaction(
            transaction_id=transaction.id,
            total_amount=transaction.amount,
            held_amount=Decimal("0"),
            currency=transaction.currency,
            status=EscrowStatus.PENDING.value,
            auto_release_date=days_from(now, self.policy.auto_release_days),
        )
        session.add(escrow)
        await session.flush()

        for condition_type, description in DEFAULT_RELEASE_CONDITIONS:
            session.add(ReleaseCondition(
                escrow_id=escrow.id,
                type=condition_type.value,
                description=description,
                satisfied=False,
            ))
        await session.flush()

        logger.info(
            f"🔐 ESCROW_LEDGER: Created escrow {escrow.id} for transaction {transaction.id} "
            f"(total={escrow.total_amount}, auto_release={escrow.auto_release_date.isoformat()})"
        )
        return escrow

    async def get_escrow(self, session: AsyncSession, transaction_id: int) -> EscrowTransaction:
        result = await session.execute(
            select(EscrowTransaction).where(EscrowTransaction.transaction_id == transaction_id)
        )
        escrow = result.scalar_one_or_none()
        if escrow is None:
            raise NotFoundError(f"Escrow for transaction {transaction_id} not found")
        return escrow

    async def get_conditions(self, session: AsyncSession, escrow_id: int) -> List[ReleaseCondition]:
        result = await session.execute(
            select(ReleaseCondition)
            .where(ReleaseCondition.escrow_id == escrow_id)
            .order_by(ReleaseCondition.id)
        )
        return list(result.scalars().all())

    async def hold_funds(
        self,
        session: AsyncSession,
        escrow: EscrowTransaction,
        amount: Decimal,
        now: Optional[datetime] = None,
    ) -> EscrowTransaction:
        """
        Record buyer funds entering custody.

        The first payment moves the escrow PENDING -> HELD; later payments top
        up ``held_amount`` until it reaches ``total_amount``.
        """
        amount = MonetaryDecimal.quantize(amount)
        if amount <= 0:
            raise ValidationError("Payment amount must be positive")

        held = MonetaryDecimal.quantize(escrow.held_amount or 0)
        total = MonetaryDecimal.quantize(escrow.total_amount)
        if held + amount > total:
            raise ValidationError(
                f"Payment of {amount} would exceed escrow total {total} (already held {held})",
                details={"held_amount": str(held), "total_amount": str(total)},
            )

        if escrow.status == EscrowStatus.PENDING.value:
            EscrowStateValidator.validate_and_transition(escrow, EscrowStatus.HELD)
            escrow.hold_date = now or utc_now()
        elif escrow.status != EscrowStatus.HELD.value:
            raise StateError(
                f"Escrow {escrow.id} cannot accept funds while {escrow.status}",
                current_status=escrow.status,
                error_code="INVALID_ESCROW_STATE",
            )

        escrow.held_amount = held + amount
        escrow.updated_at = now or utc_now()
        await session.flush()

        logger.info(f"💰 ESCROW_LEDGER: Escrow {escrow.id} now holds {escrow.held_amount} of {total}")
        return escrow

    async def satisfy_condition(
        self,
        session: AsyncSession,
        escrow: EscrowTransaction,
        condition_type: ReleaseConditionType,
        satisfied_by_id: Optional[int],
        now: Optional[datetime] = None,
    ) -> ReleaseCondition:
        """Mark one release condition met; repeating it keeps the first timestamp"""
        now = now or utc_now()
        result = await session.execute(
            select(ReleaseCondition).where(
                ReleaseCondition.escrow_id == escrow.id,
                ReleaseCondition.type == condition_type.value,
            )
        )
        condition = result.scalar_one_or_none()
        if condition is None:
            raise NotFoundError(f"Release condition {condition_type.value} missing on escrow {escrow.id}")

        if not condition.satisfied:
            condition.satisfied = True
            condition.satisfied_at = now
            condition.satisfied_by_id = satisfied_by_id

            flag, stamp = _CONDITION_FLAGS[condition_type]
            setattr(escrow, flag, True)
            setattr(escrow, stamp, now)
            escrow.updated_at = now
            await session.flush()
            logger.info(f"✅ ESCROW_LEDGER: Escrow {escrow.id} condition {condition_type.value} satisfied")

        return condition

    async def condition_status(self, session: AsyncSession, escrow: EscrowTransaction) -> Dict[str, bool]:
        conditions = await self.get_conditions(session, escrow.id)
        return {condition.type: condition.satisfied for condition in conditions}

    async def all_conditions_met(self, session: AsyncSession, escrow: EscrowTransaction) -> bool:
        conditions = await self.get_conditions(session, escrow.id)
        return bool(conditions) and all(condition.satisfied for condition in conditions)

    async def release_eligibility(
        self,
        session: AsyncSession,
        escrow: EscrowTransaction,
        transaction_status: TransactionStatus,
        now: Optional[datetime] = None,
    ) -> ReleaseEligibility:
        """
        Decide whether funds may be released.

        Full release needs every condition satisfied while the transaction is
        QUALITY_APPROVED, or the auto-release deadline reached while the buyer
        holds the goods (delivery confirmed through quality approved).
        """
        now = now or utc_now()
        deadline_reached = is_past(escrow.auto_release_date, now)
        conditions_met = await self.all_conditions_met(session, escrow)
        fully_funded = MonetaryDecimal.quantize(escrow.held_amount or 0) >= MonetaryDecimal.quantize(escrow.total_amount)

        def verdict(eligible: bool, reason: str = "") -> ReleaseEligibility:
            return ReleaseEligibility(eligible, deadline_reached, conditions_met, fully_funded, reason)

        if escrow.status != EscrowStatus.HELD.value:
            return verdict(False, f"Escrow is {escrow.status}, not held")
        if not fully_funded:
            return verdict(False, "Escrow is not fully funded")
        if transaction_status == TransactionStatus.QUALITY_APPROVED and conditions_met:
            return verdict(True)
        if deadline_reached and transaction_status in DEADLINE_RELEASABLE_STATES:
            return verdict(True)
        if transaction_status == TransactionStatus.QUALITY_APPROVED:
            return verdict(False, "Release conditions are not all satisfied")
        return verdict(False, f"Transaction is {transaction_status.value} and the auto-release date has not passed")

    async def mark_released(self, session: AsyncSession, escrow: EscrowTransaction,
                            now: Optional[datetime] = None) -> EscrowTransaction:
        EscrowStateValidator.validate_and_transition(escrow, EscrowStatus.RELEASED)
        escrow.release_date = now or utc_now()
        escrow.updated_at = escrow.release_date
        await session.flush()
        return escrow

    async def mark_disputed(self, session: AsyncSession, escrow: EscrowTransaction,
                            now: Optional[datetime] = None) -> EscrowTransaction:
        EscrowStateValidator.validate_and_transition(escrow, EscrowStatus.DISPUTED)
        escrow.updated_at = now or utc_now()
        await session.flush()
        return escrow

    async def mark_refunded(self, session: AsyncSession, escrow: EscrowTransaction,
                            now: Optional[datetime] = None) -> EscrowTransaction:
        EscrowStateValidator.validate_and_transition(escrow, EscrowStatus.REFUNDED)
        escrow.refund_date = now or utc_now()
        escrow.updated_at = escrow.refund_date
        await session.flush()
        return escrow

    async def find_due_for_auto_release(
        self,
        session: AsyncSession,
        now: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[int]:
        """Transaction ids whose escrow deadline passed while funds are still held"""
        now = now or utc_now()
        result = await session.execute(
            select(Transaction.id)
            .join(EscrowTransaction, EscrowTransaction.transaction_id == Transaction.id)
            .where(
                EscrowTransaction.status == EscrowStatus.HELD.value,
                EscrowTransaction.auto_release_date <= now,
                Transaction.status.in_([s.value for s in DEADLINE_RELEASABLE_STATES]),
            )
            .order_by(EscrowTransaction.auto_release_date)
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    def snapshot(escrow: EscrowTransaction) -> Dict[str, object]:
        """Plain-dict view of the escrow for API responses"""
        return {
            "id": escrow.id,
            "transactionId": escrow.transaction_id,
            "status": escrow.status,
            "totalAmount": f"{MonetaryDecimal.quantize(escrow.total_amount):.2f}",
            "heldAmount": f"{MonetaryDecimal.quantize(escrow.held_amount or 0):.2f}",
            "currency": escrow.currency,
            "deliveryConfirmed": escrow.delivery_confirmed,
            "qualityApproved": escrow.quality_approved,
            "documentsVerified": escrow.documents_verified,
            "autoReleaseDate": as_utc(escrow.auto_release_date).isoformat() if escrow.auto_release_date else None,
            "holdDate": as_utc(escrow.hold_date).isoformat() if escrow.hold_date else None,
            "releaseDate": as_utc(escrow.release_date).isoformat() if escrow.release_date else None,
        }
