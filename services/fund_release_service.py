"""
Fund Release Service
Computes the platform fee and supplier payout and releases escrowed funds.

This is the only code path that moves a transaction to FUNDS_RELEASED. The
quality gate, admins and the scheduled auto-release sweep all call
``release``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, NamedTuple, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import SettlementPolicy
from database import async_managed_session
from models import NotificationType, TransactionStatus, User, UserRole
from services.escrow_ledger import EscrowLedger
from services.settlement_side_effects import SettlementSideEffects
from services.status_history_service import SYSTEM_ACTOR, StatusHistoryService
from utils.datetime_helpers import as_utc, utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import AlreadyReleasedError, AuthorizationError, StateError, ValidationError
from utils.json_serialization import money_str
from utils.optimistic_locking import load_transaction
from utils.transaction_state_validator import (
    RELEASED_STATES, TransactionEvent, TransactionStateValidator
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeeBreakdown:
    """Platform fee split for one release"""
    amount: Decimal
    fee_rate: Decimal
    platform_fee: Decimal
    payout_amount: Decimal


class ReleaseResult(NamedTuple):
    """Result of a fund release operation"""

    transaction_id: int
    payout_amount: Decimal
    platform_fee: Decimal
    release_transaction_id: str
    released_at: datetime
    previous_status: TransactionStatus
    buyer_id: int
    supplier_id: int
    reason: str
    released_by_id: Optional[int] = None


class FundReleaseService:
    """Releases escrow to the supplier, net of the platform fee"""

    # Quality gate approval
    AUTO_RELEASE_REASON = "auto-release"
    # Scheduled sweep after the escrow deadline
    DEADLINE_RELEASE_REASON = "auto-release-deadline"
    AUTOMATIC_REASONS = frozenset({AUTO_RELEASE_REASON, DEADLINE_RELEASE_REASON})

    def __init__(
        self,
        policy: Optional[SettlementPolicy] = None,
        ledger: Optional[EscrowLedger] = None,
        side_effects: Optional[SettlementSideEffects] = None,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
    ):
        self.policy = policy or SettlementPolicy.from_config()
        self.ledger = ledger or EscrowLedger(self.policy)
        self.side_effects = side_effects or SettlementSideEffects(session_factory=session_factory)
        self.session_factory = session_factory

    def calculate(self, amount: Decimal) -> FeeBreakdown:
        """
        Split ``amount`` into platform fee and supplier payout.

        The fee is rounded half-up to cents and the payout takes the remainder,
        so fee + payout always equals the quantized amount.
        """
        gross = MonetaryDecimal.quantize(amount)
        platform_fee = MonetaryDecimal.multiply_precise(gross, self.policy.platform_fee_rate)
        payout_amount = MonetaryDecimal.subtract_precise(gross, platform_fee)
        return FeeBreakdown(
            amount=gross,
            fee_rate=self.policy.platform_fee_rate,
            platform_fee=platform_fee,
            payout_amount=payout_amount,
        )

    async def release(
        self,
        transaction_id: int,
        released_by_id: Optional[int],
        reason: str,
        expected_status: Optional[TransactionStatus] = None,
        now: Optional[datetime] = None,
        automatic: bool = False,
    ) -> ReleaseResult:
        """
        Release escrowed funds for a transaction.

        Args:
            transaction_id: Transaction to pay out
            released_by_id: Acting user; admins for manual releases, ``None`` for the sweep
            reason: ``auto-release``, ``auto-release-deadline`` or a free-text admin reason
            expected_status: Status the caller observed; the write fails if it changed
            automatic: Set only by the quality gate and the deadline sweep; skips the admin check

        Raises:
            AlreadyReleasedError: Funds were released by an earlier call
            StateError: Status or release conditions do not allow a release
            AuthorizationError: Manual release by a non-admin
            ValidationError: Manual release using an automatic reason
            NotFoundError: Unknown transaction
        """
        if automatic and reason not in self.AUTOMATIC_REASONS:
            raise ValueError(f"Automatic release needs one of {sorted(self.AUTOMATIC_REASONS)}, got {reason!r}")

        now = now or utc_now()
        async with async_managed_session(self.session_factory) as session:
            result = await self._release_in_session(
                session, transaction_id, released_by_id, reason, expected_status, now, automatic
            )

        logger.info(
            f"💰 FUND_RELEASE: Transaction {transaction_id} released "
            f"payout={result.payout_amount} fee={result.platform_fee} ref={result.release_transaction_id} ({reason})"
        )
        await self._announce(result)
        return result

    async def _release_in_session(
        self,
        session: AsyncSession,
        transaction_id: int,
        released_by_id: Optional[int],
        reason: str,
        expected_status: Optional[TransactionStatus],
        now: datetime,
        automatic: bool,
    ) -> ReleaseResult:
        transaction = await load_transaction(session, transaction_id)
        current = TransactionStatus(transaction.status)

        if current in RELEASED_STATES or transaction.funds_released_at is not None:
            logger.warning(f"🚫 FUND_RELEASE: Transaction {transaction_id} already released ({current.value})")
            raise AlreadyReleasedError(
                "Funds have already been released",
                current_status=current.value,
            )

        if expected_status is not None and expected_status != current:
            raise StateError(
                f"Transaction {transaction_id} is {current.value}, expected {expected_status.value}",
                current_status=current.value,
                error_code="STALE_STATUS",
            )

        if not automatic:
            await self._require_admin(session, released_by_id)
            if reason in self.AUTOMATIC_REASONS:
                raise ValidationError(
                    f"\"{reason}\" is reserved for automatic releases",
                    error_code="RESERVED_RELEASE_REASON",
                )

        TransactionStateValidator.validate_event(current, TransactionEvent.RELEASE_FUNDS, transaction_id)

        escrow = await self.ledger.get_escrow(session, transaction_id)
        eligibility = await self.ledger.release_eligibility(session, escrow, current, now)
        if not eligibility.eligible:
            logger.warning(f"🚫 FUND_RELEASE: Transaction {transaction_id} not releasable: {eligibility.reason}")
            raise StateError(
                eligibility.reason,
                current_status=current.value,
                error_code="RELEASE_NOT_ALLOWED",
                details={
                    "allConditionsMet": eligibility.all_conditions_met,
                    "deadlineReached": eligibility.deadline_reached,
                    "fullyFunded": eligibility.fully_funded,
                },
            )

        breakdown = self.calculate(transaction.amount)
        release_reference = f"payout_{transaction.id}_{int(now.timestamp() * 1000)}"

        await StatusHistoryService.apply_transition(
            session,
            transaction,
            current,
            TransactionStatus.FUNDS_RELEASED,
            released_by_id,
            self._history_reason(reason, breakdown),
            metadata={
                "amount": breakdown.amount,
                "platformFee": breakdown.platform_fee,
                "payoutAmount": breakdown.payout_amount,
                "feeRate": breakdown.fee_rate,
                "releaseTransactionId": release_reference,
                "releaseReason": reason,
                "deadlineReached": eligibility.deadline_reached,
            },
            updates={
                "funds_released_at": now,
                "funds_released_by_id": None if automatic else released_by_id,
                "release_reason": reason,
                "platform_fee": breakdown.platform_fee,
                "payout_amount": breakdown.payout_amount,
                "release_transaction_id": release_reference,
            },
        )
        await self.ledger.mark_released(session, escrow, now)
        await StatusHistoryService.record_milestone(
            session,
            transaction.id,
            TransactionStatus.FUNDS_RELEASED,
            f"Funds released: {MonetaryDecimal.format_money(breakdown.payout_amount)} "
            f"(after {self.policy.platform_fee_percent_display} platform fee)",
            SYSTEM_ACTOR if automatic else "admin",
            at=now,
        )

        return ReleaseResult(
            transaction_id=transaction.id,
            payout_amount=breakdown.payout_amount,
            platform_fee=breakdown.platform_fee,
            release_transaction_id=release_reference,
            released_at=now,
            previous_status=current,
            buyer_id=transaction.buyer_id,
            supplier_id=transaction.supplier_id,
            reason=reason,
            released_by_id=released_by_id,
        )

    @staticmethod
    def _history_reason(reason: str, breakdown: FeeBreakdown) -> str:
        if reason == FundReleaseService.AUTO_RELEASE_REASON:
            return f"Funds auto-released after quality approval (payout {breakdown.payout_amount})"
        if reason == FundReleaseService.DEADLINE_RELEASE_REASON:
            return f"Funds auto-released at escrow deadline (payout {breakdown.payout_amount})"
        return f"Funds released: {reason}"

    @staticmethod
    async def _require_admin(session: AsyncSession, user_id: Optional[int]) -> None:
        user = await session.get(User, user_id) if user_id is not None else None
        if user is None or user.role != UserRole.ADMIN.value:
            raise AuthorizationError("Only admins can manually release funds")

    async def _announce(self, result: ReleaseResult) -> None:
        payout = MonetaryDecimal.format_money(result.payout_amount)
        payload = {
            "transactionId": result.transaction_id,
            "payoutAmount": result.payout_amount,
            "platformFee": result.platform_fee,
            "releaseTransactionId": result.release_transaction_id,
        }
        await self.side_effects.emit(result.supplier_id, "fundsReleased", payload)
        await self.side_effects.emit(result.buyer_id, "fundsReleased", payload)
        await self.side_effects.notify(
            result.supplier_id,
            NotificationType.ESCROW_RELEASED,
            "Payment Released",
            f"{payout} has been released to your account.",
            result.transaction_id,
        )
        await self.side_effects.notify(
            result.buyer_id,
            NotificationType.TRANSACTION_COMPLETED,
            "Funds Released to Supplier",
            f"Escrowed funds for transaction {result.transaction_id} have been released to the supplier.",
            result.transaction_id,
        )
        await self.side_effects.log_activity(
            result.released_by_id,
            "FUNDS_RELEASED",
            result.transaction_id,
            payload,
        )

    async def get_release_info(self, transaction_id: int, caller_id: int) -> Dict[str, Any]:
        """Read-only view of a transaction's release state for the parties and admins"""
        async with async_managed_session(self.session_factory) as session:
            transaction = await load_transaction(session, transaction_id, for_update=False)
            if caller_id not in (transaction.buyer_id, transaction.supplier_id):
                caller = await session.get(User, caller_id)
                if caller is None or caller.role != UserRole.ADMIN.value:
                    raise AuthorizationError("Not authorized to view this transaction")
            escrow = await self.ledger.get_escrow(session, transaction_id)
            released = transaction.funds_released_at is not None

            info = {
                "transactionId": transaction.id,
                "status": transaction.status,
                "fundsReleased": released,
                "fundsReleasedAt": as_utc(transaction.funds_released_at).isoformat() if released else None,
                "fundsReleasedById": transaction.funds_released_by_id,
                "releaseReason": transaction.release_reason,
                "amount": money_str(transaction.amount),
                "platformFee": money_str(transaction.platform_fee),
                "payoutAmount": money_str(transaction.payout_amount),
                "releaseTransactionId": transaction.release_transaction_id,
                "escrow": self.ledger.snapshot(escrow),
            }
            if not released:
                projected = self.calculate(transaction.amount)
                info["projectedPlatformFee"] = money_str(projected.platform_fee)
                info["projectedPayoutAmount"] = money_str(projected.payout_amount)
            return info
