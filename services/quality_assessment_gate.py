"""
Quality Assessment Gate
Validates the buyer's post-delivery decision and triggers release or dispute.

Rating and decision must agree: APPROVED needs a rating of at least 3 and
REJECTED a rating of at most 2. A rating of 3 can only approve and a rating
of 2 can only reject. Mismatches are rejected outright, never adjusted.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from config import SettlementPolicy
from database import async_managed_session
from models import (
    ApprovalStatus, NotificationType, ReleaseConditionType, TransactionStatus, UserRole, User
)
from services.dispute_initiator import DisputeInitiator, DisputeOpening
from services.escrow_ledger import EscrowLedger
from services.fund_release_service import FundReleaseService
from services.settlement_side_effects import SettlementSideEffects
from services.status_history_service import StatusHistoryService
from utils.datetime_helpers import utc_now
from utils.exceptions import (
    AlreadyReleasedError, AuthorizationError, SettlementError, StateError, ValidationError
)
from utils.optimistic_locking import load_transaction
from utils.serializers import serialize_quality_state, serialize_transaction
from utils.transaction_state_validator import TransactionEvent, TransactionStateValidator

logger = logging.getLogger(__name__)


@dataclass
class QualityAssessmentRequest:
    """Buyer's quality decision"""
    transaction_id: int
    caller_id: int
    rating: int
    notes: str
    approval_status: Union[str, ApprovalStatus]
    issues: List[str] = field(default_factory=list)
    photos: List[str] = field(default_factory=list)
    expected_status: Optional[TransactionStatus] = None


@dataclass
class QualityAssessmentResult:
    transaction: Dict[str, Any]
    approval_status: ApprovalStatus
    fund_released: bool = False
    dispute_created: bool = False
    dispute_id: Optional[int] = None
    payout_amount: Optional[Decimal] = None
    release_error: Optional[str] = None
    message: str = ""


class QualityAssessmentGate:
    """Applies a buyer's quality assessment to a delivered transaction"""

    MIN_RATING = 1
    MAX_RATING = 5
    MIN_NOTES_LENGTH = 10
    APPROVE_MIN_RATING = 3
    REJECT_MAX_RATING = 2

    APPROVED_MESSAGE = "Quality approved. Funds are being released to the supplier."
    REJECTED_MESSAGE = "Quality rejected. A dispute has been opened for review."

    def __init__(
        self,
        fund_release: Optional[FundReleaseService] = None,
        ledger: Optional[EscrowLedger] = None,
        side_effects: Optional[SettlementSideEffects] = None,
        policy: Optional[SettlementPolicy] = None,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
    ):
        self.policy = policy or SettlementPolicy.from_config()
        self.ledger = ledger or EscrowLedger(self.policy)
        self.side_effects = side_effects or SettlementSideEffects(session_factory=session_factory)
        self.fund_release = fund_release or FundReleaseService(
            self.policy, self.ledger, self.side_effects, session_factory
        )
        self.session_factory = session_factory

    @classmethod
    def validate_fields(cls, rating: Any, notes: Any, approval_status: Any) -> ApprovalStatus:
        """
        Check the submitted fields in order and return the parsed decision.

        Raises:
            ValidationError: On the first field that fails
        """
        if isinstance(rating, bool) or not isinstance(rating, int) or not cls.MIN_RATING <= rating <= cls.MAX_RATING:
            raise ValidationError(
                f"Rating must be between {cls.MIN_RATING} and {cls.MAX_RATING}",
                error_code="INVALID_RATING",
            )

        if not isinstance(notes, str) or len(notes.strip()) < cls.MIN_NOTES_LENGTH:
            raise ValidationError(
                f"Notes must be at least {cls.MIN_NOTES_LENGTH} characters",
                error_code="INVALID_NOTES",
            )

        try:
            decision = approval_status if isinstance(approval_status, ApprovalStatus) \
                else ApprovalStatus(str(approval_status).upper())
        except ValueError:
            raise ValidationError(
                "Approval status must be APPROVED or REJECTED",
                error_code="INVALID_APPROVAL_STATUS",
            )

        if decision == ApprovalStatus.APPROVED and rating < cls.APPROVE_MIN_RATING:
            raise ValidationError(
                f"Cannot approve with rating less than {cls.APPROVE_MIN_RATING}",
                error_code="RATING_DECISION_MISMATCH",
            )
        if decision == ApprovalStatus.REJECTED and rating > cls.REJECT_MAX_RATING:
            raise ValidationError(
                f"Cannot reject with rating greater than {cls.REJECT_MAX_RATING}",
                error_code="RATING_DECISION_MISMATCH",
            )

        return decision

    async def assess(self, request: QualityAssessmentRequest) -> QualityAssessmentResult:
        """
        Record the buyer's decision, then release funds or open a dispute.

        Raises:
            ValidationError: Field or rating/decision mismatch
            NotFoundError: Unknown transaction
            AuthorizationError: Caller is not the buyer
            StateError: Transaction is not awaiting a quality assessment
        """
        decision = self.validate_fields(request.rating, request.notes, request.approval_status)
        notes = request.notes.strip()
        issues = list(request.issues or [])
        photos = list(request.photos or [])
        now = utc_now()

        async with async_managed_session(self.session_factory) as session:
            transaction, dispute = await self._record_decision(
                session, request, decision, notes, issues, photos, now
            )
            buyer_id, supplier_id = transaction.buyer_id, transaction.supplier_id

        approved = decision == ApprovalStatus.APPROVED
        logger.info(
            f"{'✅' if approved else '❌'} QUALITY_GATE: Transaction {request.transaction_id} "
            f"{decision.value} with rating {request.rating}/5"
        )

        result = QualityAssessmentResult(
            transaction={},
            approval_status=decision,
            message=self.APPROVED_MESSAGE if approved else self.REJECTED_MESSAGE,
        )

        if approved:
            await self._auto_release(request, result)
        else:
            result.dispute_created = dispute.dispute_created
            result.dispute_id = dispute.dispute_id

        await self._announce(request, decision, notes, issues, buyer_id, supplier_id, result)

        async with async_managed_session(self.session_factory) as session:
            refreshed = await load_transaction(session, request.transaction_id, for_update=False)
            result.transaction = serialize_transaction(refreshed)
        return result

    async def _record_decision(
        self,
        session: AsyncSession,
        request: QualityAssessmentRequest,
        decision: ApprovalStatus,
        notes: str,
        issues: List[str],
        photos: List[str],
        now: datetime,
    ):
        transaction = await load_transaction(session, request.transaction_id)

        if transaction.buyer_id != request.caller_id:
            raise AuthorizationError("Only the buyer can assess quality")

        current = TransactionStatus(transaction.status)
        if request.expected_status is not None and request.expected_status != current:
            raise StateError(
                f"Transaction {transaction.id} is {current.value}, expected {request.expected_status.value}",
                current_status=current.value,
                error_code="STALE_STATUS",
            )

        approved = decision == ApprovalStatus.APPROVED
        event = TransactionEvent.APPROVE_QUALITY if approved else TransactionEvent.REJECT_QUALITY
        target = TransactionStateValidator.validate_event(current, event, transaction.id)

        updates = {
            "quality_rating": request.rating,
            "quality_notes": notes,
            "quality_issues": issues,
            "quality_photos": photos,
            "quality_assessed_at": now,
            "quality_assessed_by_id": request.caller_id,
            "acceptance_reason": notes if approved else None,
            "rejection_reason": None if approved else notes,
        }
        reason = (
            f"Quality approved with rating {request.rating}/5" if approved
            else f"Quality rejected: {notes}"
        )
        await StatusHistoryService.apply_transition(
            session,
            transaction,
            current,
            target,
            request.caller_id,
            reason,
            metadata={
                "rating": request.rating,
                "issues": issues,
                "approvalStatus": decision.value,
            },
            updates=updates,
        )

        escrow = await self.ledger.get_escrow(session, transaction.id)
        dispute = DisputeOpening(dispute_created=False, dispute_id=None)
        if approved:
            await self.ledger.satisfy_condition(
                session, escrow, ReleaseConditionType.QUALITY_APPROVED, request.caller_id, now
            )
            milestone = f"Quality approved with {request.rating}/5 stars"
        else:
            await self.ledger.mark_disputed(session, escrow, now)
            dispute = await DisputeInitiator.open_for_quality_rejection(session, transaction, notes)
            milestone = f"Quality rejected: {', '.join(issues) if issues else 'Issues reported'}"

        await StatusHistoryService.record_milestone(session, transaction.id, target, milestone, "buyer", at=now)
        return transaction, dispute

    async def _auto_release(self, request: QualityAssessmentRequest, result: QualityAssessmentResult) -> None:
        """Release after approval; a failure leaves the approval in place and is reported, not raised"""
        try:
            release = await self.fund_release.release(
                request.transaction_id,
                request.caller_id,
                FundReleaseService.AUTO_RELEASE_REASON,
                expected_status=TransactionStatus.QUALITY_APPROVED,
                automatic=True,
            )
            result.fund_released = True
            result.payout_amount = release.payout_amount
        except AlreadyReleasedError:
            # Another request paid out between our commit and this call
            result.fund_released = True
        except SettlementError as e:
            logger.warning(f"⚠️ QUALITY_GATE: Auto-release failed for transaction {request.transaction_id}: {e.message}")
            result.release_error = e.message
        except Exception as e:
            logger.error(f"❌ QUALITY_GATE: Auto-release error for transaction {request.transaction_id}: {e}")
            result.release_error = "Fund release failed; it will be retried"

    async def _announce(
        self,
        request: QualityAssessmentRequest,
        decision: ApprovalStatus,
        notes: str,
        issues: List[str],
        buyer_id: int,
        supplier_id: int,
        result: QualityAssessmentResult,
    ) -> None:
        approved = decision == ApprovalStatus.APPROVED
        event = "qualityApproved" if approved else "qualityRejected"
        payload = {
            "transactionId": request.transaction_id,
            "rating": request.rating,
            "approvalStatus": decision.value,
            "issues": issues,
            "fundReleased": result.fund_released,
            "disputeId": result.dispute_id,
        }
        await self.side_effects.emit(supplier_id, event, payload)
        await self.side_effects.emit(buyer_id, event, payload)

        if approved:
            await self.side_effects.notify(
                supplier_id,
                NotificationType.QUALITY_ASSESSMENT,
                "Quality Approved",
                f"Buyer approved quality with a rating of {request.rating}/5.",
                request.transaction_id,
            )
        else:
            await self.side_effects.notify_role(
                NotificationType.DISPUTE_OPENED,
                "Dispute Needs Review",
                f"Buyer rejected quality for transaction {request.transaction_id}. Reason: {notes}",
                request.transaction_id,
            )

        await self.side_effects.log_activity(
            request.caller_id,
            "QUALITY_APPROVED" if approved else "QUALITY_REJECTED",
            request.transaction_id,
            payload,
        )

    async def get_quality_state(self, transaction_id: int, caller_id: int) -> Dict[str, Any]:
        """Assessment fields for the buyer, the supplier or an admin"""
        async with async_managed_session(self.session_factory) as session:
            transaction = await load_transaction(session, transaction_id, for_update=False)
            if caller_id not in (transaction.buyer_id, transaction.supplier_id):
                caller = await session.get(User, caller_id)
                if caller is None or caller.role != UserRole.ADMIN.value:
                    raise AuthorizationError("Not authorized to view this transaction")
            return serialize_quality_state(transaction)
