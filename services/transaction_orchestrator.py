"""
Transaction Lifecycle Orchestrator
Single entry point for creating transactions and moving them through their lifecycle.

``create`` turns an accepted quotation into a transaction plus escrow in one
database unit. ``advance`` applies every later lifecycle event under the same
contract: validate the source status, mutate, append one history row and one
milestone, then announce the change to buyer and supplier after commit.
A balance paid after shipment is the one exception: it funds the escrow and
records a milestone but leaves the status where it is.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Set, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import SettlementPolicy
from database import async_managed_session
from models import (
    EscrowStatus, EscrowTransaction, NotificationType, PaymentMethod, PaymentType, Quotation, QuotationStatus,
    ReleaseConditionType, Requirement, RequirementStatus, TERMINAL_FOR_QUOTATION, Transaction,
    TransactionStatus, User, UserRole
)
from services.escrow_ledger import EscrowLedger
from services.fund_release_service import FundReleaseService, ReleaseResult
from services.payment_gateway import PaymentGateway, PaymentIntentResult
from services.quality_assessment_gate import (
    QualityAssessmentGate, QualityAssessmentRequest, QualityAssessmentResult
)
from services.settlement_side_effects import SettlementSideEffects
from services.status_history_service import SYSTEM_ACTOR, StatusHistoryService
from utils.datetime_helpers import as_utc, days_from, utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import (
    AuthorizationError, ConflictError, NotFoundError, SettlementError, StateError, ValidationError
)
from utils.optimistic_locking import OptimisticLockManager, load_transaction
from utils.serializers import serialize_transaction
from utils.transaction_state_validator import TransactionEvent, TransactionStateValidator

logger = logging.getLogger(__name__)

BUYER = "buyer"
SUPPLIER = "supplier"
ADMIN = "admin"

PAYMENT_EVENTS = {
    PaymentType.ADVANCE: TransactionEvent.CONFIRM_PAYMENT,
    PaymentType.FULL: TransactionEvent.CONFIRM_FULL_PAYMENT,
    PaymentType.BALANCE: TransactionEvent.CONFIRM_BALANCE_PAYMENT,
}


@dataclass
class TransactionCreationRequest:
    """Request model for transaction creation"""
    requirement_id: int
    quotation_id: int
    supplier_id: int
    buyer_id: int
    payment_method: Union[str, PaymentMethod]


@dataclass
class TransactionCreationResponse:
    """Response model for transaction creation"""
    transaction: Dict[str, Any]
    escrow: Dict[str, Any]
    payment_intent: Optional[Dict[str, Any]] = None
    payment_intent_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction": self.transaction,
            "escrow": self.escrow,
            "paymentIntent": self.payment_intent,
            "paymentIntentError": self.payment_intent_error,
        }


@dataclass
class TransitionStep:
    """What one lifecycle event writes and announces"""
    reason: str
    milestone: str
    realtime_event: str
    updates: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


class TransactionOrchestrator:
    """
    Coordinates the escrow ledger, status history, quality gate and fund
    release for the whole purchase lifecycle.
    """

    # Who may trigger each event; "system" is a call with no acting user
    EVENT_ACTORS: Dict[TransactionEvent, Set[str]] = {
        TransactionEvent.CONFIRM_PAYMENT: {BUYER, ADMIN},
        TransactionEvent.CONFIRM_FULL_PAYMENT: {BUYER, ADMIN},
        TransactionEvent.CONFIRM_BALANCE_PAYMENT: {BUYER, ADMIN},
        TransactionEvent.SHIP: {SUPPLIER},
        TransactionEvent.MARK_IN_TRANSIT: {SUPPLIER, ADMIN, SYSTEM_ACTOR},
        TransactionEvent.CONFIRM_DELIVERY: {BUYER},
        TransactionEvent.REQUEST_QUALITY_CHECK: {BUYER, ADMIN, SYSTEM_ACTOR},
        TransactionEvent.START_QUALITY_CHECK: {BUYER, ADMIN},
        TransactionEvent.ESCALATE_DISPUTE: {BUYER, SUPPLIER, ADMIN},
        TransactionEvent.COMPLETE: {BUYER, ADMIN, SYSTEM_ACTOR},
        TransactionEvent.CANCEL: {BUYER, ADMIN},
        TransactionEvent.REFUND: {ADMIN},
    }

    # (recipient, type, title, message) sent after the event commits
    EVENT_NOTICES: Dict[TransactionEvent, List[tuple]] = {
        TransactionEvent.CONFIRM_PAYMENT: [
            (SUPPLIER, NotificationType.PAYMENT_RECEIVED, "Buyer Payment Received",
             "Advance payment was recorded for transaction {id}. Prepare production kickoff."),
            (ADMIN, NotificationType.PAYMENT_RECEIVED, "Buyer Payment Submitted",
             "Buyer submitted advance payment for transaction {id}. Please verify and confirm progression."),
        ],
        TransactionEvent.CONFIRM_FULL_PAYMENT: [
            (SUPPLIER, NotificationType.PAYMENT_RECEIVED, "Buyer Payment Received",
             "Full payment for transaction {id} is held in escrow."),
            (ADMIN, NotificationType.PAYMENT_RECEIVED, "Buyer Payment Submitted",
             "Buyer paid transaction {id} in full. Please verify the escrow deposit."),
        ],
        TransactionEvent.CONFIRM_BALANCE_PAYMENT: [
            (SUPPLIER, NotificationType.PAYMENT_RECEIVED, "Balance Payment Received",
             "The balance for transaction {id} is now held in escrow."),
        ],
        TransactionEvent.SHIP: [
            (BUYER, NotificationType.SHIPMENT_UPDATE, "Order Shipped",
             "Your order for transaction {id} has shipped."),
        ],
        TransactionEvent.CONFIRM_DELIVERY: [
            (SUPPLIER, NotificationType.DELIVERY_CONFIRMED, "Delivery Confirmed",
             "The buyer confirmed delivery for transaction {id}. Quality assessment is pending."),
        ],
        TransactionEvent.ESCALATE_DISPUTE: [
            (ADMIN, NotificationType.DISPUTE_OPENED, "Dispute Escalated",
             "Transaction {id} was escalated for arbitration."),
        ],
        TransactionEvent.COMPLETE: [
            (BUYER, NotificationType.TRANSACTION_COMPLETED, "Transaction Completed",
             "Transaction {id} is complete."),
            (SUPPLIER, NotificationType.TRANSACTION_COMPLETED, "Transaction Completed",
             "Transaction {id} is complete."),
        ],
        TransactionEvent.CANCEL: [
            (SUPPLIER, NotificationType.TRANSACTION_CANCELLED, "Transaction Cancelled",
             "Transaction {id} was cancelled before payment."),
        ],
        TransactionEvent.REFUND: [
            (BUYER, NotificationType.REFUND_ISSUED, "Refund Issued",
             "Escrowed funds for transaction {id} are being refunded to you."),
            (SUPPLIER, NotificationType.REFUND_ISSUED, "Transaction Refunded",
             "Escrowed funds for transaction {id} were refunded to the buyer."),
        ],
    }

    def __init__(
        self,
        policy: Optional[SettlementPolicy] = None,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        side_effects: Optional[SettlementSideEffects] = None,
        payment_gateway: Optional[PaymentGateway] = None,
        ledger: Optional[EscrowLedger] = None,
        fund_release: Optional[FundReleaseService] = None,
        quality_gate: Optional[QualityAssessmentGate] = None,
    ):
        self.policy = policy or SettlementPolicy.from_config()
        self.session_factory = session_factory
        self.side_effects = side_effects or SettlementSideEffects(session_factory=session_factory)
        self.payment_gateway = payment_gateway or PaymentGateway()
        self.ledger = ledger or EscrowLedger(self.policy)
        self.fund_release = fund_release or FundReleaseService(
            self.policy, self.ledger, self.side_effects, session_factory
        )
        self.quality_gate = quality_gate or QualityAssessmentGate(
            self.fund_release, self.ledger, self.side_effects, self.policy, session_factory
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(self, request: TransactionCreationRequest) -> TransactionCreationResponse:
        """
        Create a transaction and its escrow from a quotation.

        The database work is all-or-nothing. The payment intent is requested
        after commit; if the gateway fails the transaction still exists and
        ``payment_intent_error`` says why.

        Raises:
            NotFoundError: Requirement or quotation missing
            AuthorizationError: Requirement belongs to someone else
            ValidationError: Mismatched ids, bad payment method or expired quotation
            ConflictError: Quotation already accepted or a live transaction exists
        """
        payment_method = self._parse_payment_method(request.payment_method)
        now = utc_now()

        logger.info(
            f"🔄 TXN_ORCHESTRATOR: Creating transaction for quotation {request.quotation_id} "
            f"(buyer {request.buyer_id})"
        )

        async with async_managed_session(self.session_factory) as session:
            transaction, escrow = await self._create_in_session(session, request, payment_method, now)
            transaction_view = serialize_transaction(transaction)
            escrow_view = self.ledger.snapshot(escrow)

        logger.info(
            f"✅ TXN_ORCHESTRATOR: Created transaction {transaction.id} amount={transaction.amount} "
            f"escrow={escrow.id} auto_release={escrow_view['autoReleaseDate']}"
        )

        response = TransactionCreationResponse(transaction=transaction_view, escrow=escrow_view)
        intent = await self._request_payment_intent(transaction)
        if intent.success:
            response.payment_intent = intent.to_dict()
            response.transaction["paymentIntentId"] = intent.payment_intent_id
        else:
            response.payment_intent_error = intent.error

        await self.side_effects.notify(
            transaction.supplier_id,
            NotificationType.TRANSACTION_CREATED,
            "New Order Received",
            f"Transaction {transaction.id} was created from your quotation.",
            transaction.id,
        )
        await self.side_effects.notify(
            transaction.buyer_id,
            NotificationType.TRANSACTION_CREATED,
            "Order Placed",
            f"Transaction {transaction.id} was created. Complete payment to proceed.",
            transaction.id,
        )
        await self.side_effects.emit_to_parties(transaction, "transactionCreated", {"amount": transaction.amount})
        await self.side_effects.log_activity(
            request.buyer_id, "TRANSACTION_CREATED", transaction.id,
            {"quotationId": request.quotation_id, "amount": transaction.amount},
        )
        return response

    async def _create_in_session(
        self,
        session: AsyncSession,
        request: TransactionCreationRequest,
        payment_method: PaymentMethod,
        now: datetime,
    ):
        requirement = await session.get(Requirement, request.requirement_id)
        if requirement is None:
            raise NotFoundError(f"Requirement {request.requirement_id} not found")

        quotation = await session.get(Quotation, request.quotation_id)
        if quotation is None:
            raise NotFoundError(f"Quotation {request.quotation_id} not found")

        if requirement.buyer_id != request.buyer_id:
            raise AuthorizationError("Requirement does not belong to this buyer")

        if quotation.requirement_id != requirement.id:
            raise ValidationError("Quotation does not belong to this requirement", error_code="QUOTATION_MISMATCH")

        if quotation.supplier_id != request.supplier_id:
            raise ValidationError("Supplier does not match the quotation", error_code="SUPPLIER_MISMATCH")

        self._check_quotation_acceptable(quotation, now)

        active = await session.execute(
            select(Transaction.id).where(
                Transaction.quotation_id == quotation.id,
                Transaction.status.notin_(TERMINAL_FOR_QUOTATION),
            )
        )
        existing_id = active.scalars().first()
        if existing_id is not None:
            raise ConflictError(
                "An active transaction already exists for this quotation",
                error_code="TRANSACTION_EXISTS",
                details={"transactionId": existing_id},
            )

        # Accept the quotation only if nobody accepted it since we read it
        flipped = await session.execute(
            update(Quotation)
            .where(
                Quotation.id == quotation.id,
                Quotation.status.notin_([QuotationStatus.ACCEPTED.value, QuotationStatus.EXPIRED.value]),
            )
            .values(status=QuotationStatus.ACCEPTED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount == 0:
            raise ConflictError("Quotation has already been accepted", error_code="QUOTATION_ACCEPTED")

        requirement.status = RequirementStatus.ACCEPTED.value
        requirement.updated_at = now

        amount = MonetaryDecimal.quantize(quotation.total)
        advance_amount = MonetaryDecimal.percentage_of(amount, self.policy.advance_percentage)
        balance_amount = MonetaryDecimal.subtract_precise(amount, advance_amount)
        advance_pct = self.policy.advance_percentage.normalize()

        transaction = Transaction(
            buyer_id=request.buyer_id,
            supplier_id=quotation.supplier_id,
            requirement_id=requirement.id,
            quotation_id=quotation.id,
            status=TransactionStatus.PAYMENT_PENDING.value,
            version=1,
            amount=amount,
            currency=quotation.currency or self.policy.default_currency,
            payment_method=payment_method.value,
            advance_amount=advance_amount,
            balance_amount=balance_amount,
            payment_terms=f"{advance_pct:f}% advance, {(Decimal('100') - advance_pct).normalize():f}% on delivery confirmation",
            estimated_delivery=days_from(now, quotation.lead_time_days or 0),
            created_at=now,
        )
        session.add(transaction)
        try:
            await session.flush()
        except IntegrityError as e:
            logger.warning(f"🚫 TXN_ORCHESTRATOR: Concurrent create lost for quotation {quotation.id}: {e.orig}")
            raise ConflictError(
                "An active transaction already exists for this quotation",
                error_code="TRANSACTION_EXISTS",
            ) from e

        escrow = await self.ledger.create_escrow(session, transaction, now)
        await StatusHistoryService.record_transition(
            session,
            transaction.id,
            None,
            TransactionStatus.PAYMENT_PENDING,
            request.buyer_id,
            f"Transaction created from quotation {quotation.id}",
            metadata={"quotationId": quotation.id, "amount": amount, "paymentMethod": payment_method.value},
            at=now,
        )
        await StatusHistoryService.record_milestone(
            session, transaction.id, TransactionStatus.PAYMENT_PENDING, "Transaction initiated", BUYER, at=now
        )
        return transaction, escrow

    @staticmethod
    def _parse_payment_method(value: Union[str, PaymentMethod]) -> PaymentMethod:
        if isinstance(value, PaymentMethod):
            return value
        try:
            return PaymentMethod(str(value).upper())
        except ValueError:
            raise ValidationError(
                f"Payment method must be one of {[m.value for m in PaymentMethod]}",
                error_code="INVALID_PAYMENT_METHOD",
            )

    @staticmethod
    def _check_quotation_acceptable(quotation: Quotation, now: datetime) -> None:
        if quotation.status == QuotationStatus.ACCEPTED.value:
            raise ConflictError("Quotation has already been accepted", error_code="QUOTATION_ACCEPTED")
        if quotation.status == QuotationStatus.EXPIRED.value or (
            quotation.valid_until is not None and as_utc(quotation.valid_until) < now
        ):
            raise ValidationError("Quotation has expired", error_code="QUOTATION_EXPIRED")
        if quotation.status == QuotationStatus.REJECTED.value:
            raise ValidationError("Quotation was rejected", error_code="QUOTATION_REJECTED")

    async def _request_payment_intent(self, transaction: Transaction) -> PaymentIntentResult:
        """Ask the gateway for a payment intent; never raises"""
        try:
            intent = await self.payment_gateway.create_payment_intent(
                transaction.amount,
                transaction.currency,
                transaction.id,
                transaction.buyer_id,
                {"quotationId": transaction.quotation_id, "supplierId": transaction.supplier_id},
            )
        except Exception as e:
            logger.error(f"❌ PAYMENT_INTENT: Gateway error for transaction {transaction.id}: {e}")
            return PaymentIntentResult(success=False, error=str(e))

        if not intent.success:
            logger.warning(f"⚠️ PAYMENT_INTENT: Failed for transaction {transaction.id}: {intent.error}")
            return intent

        try:
            async with async_managed_session(self.session_factory) as session:
                await session.execute(
                    update(Transaction)
                    .where(Transaction.id == transaction.id)
                    .values(payment_intent_id=intent.payment_intent_id)
                    .execution_options(synchronize_session=False)
                )
            transaction.payment_intent_id = intent.payment_intent_id
        except Exception as e:
            logger.error(f"❌ PAYMENT_INTENT: Could not store {intent.payment_intent_id} on transaction {transaction.id}: {e}")
        return intent

    async def retry_payment_intent(self, transaction_id: int, caller_id: int) -> PaymentIntentResult:
        """Request a payment intent again for a transaction still awaiting payment"""
        async with async_managed_session(self.session_factory) as session:
            transaction = await load_transaction(session, transaction_id, for_update=False)
            if transaction.buyer_id != caller_id:
                raise AuthorizationError("Only the buyer can request payment")
            if transaction.status != TransactionStatus.PAYMENT_PENDING.value:
                raise StateError("Transaction is not awaiting payment", current_status=transaction.status)
        return await self._request_payment_intent(transaction)

    # ------------------------------------------------------------------
    # Lifecycle events
    # ------------------------------------------------------------------

    async def advance(
        self,
        transaction_id: int,
        event: TransactionEvent,
        actor_id: Optional[int],
        expected_status: Optional[TransactionStatus] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **params: Any,
    ) -> Transaction:
        """
        Apply one lifecycle event.

        Args:
            transaction_id: Transaction to move
            event: Lifecycle event to apply
            actor_id: Acting user, ``None`` for scheduled jobs
            expected_status: Status the caller observed; the write fails if it changed
            reason: Overrides the default history reason
            metadata: Extra structured data for the history row
            **params: Event inputs (payment amount, tracking number, delivery location, rating ...)

        Returns:
            The updated transaction

        Raises:
            StateError: Illegal source status or lost race
            AuthorizationError: Actor may not trigger this event
            ValidationError: Bad event inputs
            NotFoundError: Unknown transaction
        """
        if event in (TransactionEvent.APPROVE_QUALITY, TransactionEvent.REJECT_QUALITY):
            await self.assess_quality(QualityAssessmentRequest(
                transaction_id=transaction_id,
                caller_id=actor_id,
                rating=params.get("rating"),
                notes=params.get("notes"),
                approval_status="APPROVED" if event == TransactionEvent.APPROVE_QUALITY else "REJECTED",
                issues=params.get("issues") or [],
                photos=params.get("photos") or [],
                expected_status=expected_status,
            ))
            return await self.get_transaction(transaction_id)

        if event == TransactionEvent.RELEASE_FUNDS:
            await self.release_funds(transaction_id, actor_id, reason or "Manual release", expected_status)
            return await self.get_transaction(transaction_id)

        now = utc_now()
        async with async_managed_session(self.session_factory) as session:
            transaction = await load_transaction(session, transaction_id)
            current = TransactionStatus(transaction.status)

            if expected_status is not None and expected_status != current:
                raise StateError(
                    f"Transaction {transaction_id} is {current.value}, expected {expected_status.value}",
                    current_status=current.value,
                    error_code="STALE_STATUS",
                )

            top_up = TransactionStateValidator.is_top_up(current, event)
            if top_up:
                target = current
            else:
                target = TransactionStateValidator.validate_event(current, event, transaction_id)
            actor = await self._resolve_actor(session, transaction, actor_id, event)
            escrow = await self.ledger.get_escrow(session, transaction.id)
            step = await self._prepare_step(session, transaction, escrow, event, actor_id, actor, now, params)

            if top_up:
                # Funding only: the version bump still fences out concurrent writers
                await OptimisticLockManager(session).compare_and_set_status(
                    transaction, current, current, step.updates
                )
            else:
                await StatusHistoryService.apply_transition(
                    session,
                    transaction,
                    current,
                    target,
                    actor_id,
                    reason or step.reason,
                    metadata={**step.metadata, **(metadata or {}), "event": event.value},
                    updates=step.updates,
                )
            await StatusHistoryService.record_milestone(session, transaction.id, target, step.milestone, actor, at=now)

        logger.info(
            f"✅ TXN_ORCHESTRATOR: Transaction {transaction_id} {current.value} → {target.value} "
            f"({event.value} by {actor})"
        )
        await self._announce_step(transaction, event, step, actor_id)

        if top_up and current == TransactionStatus.QUALITY_APPROVED:
            await self._release_after_top_up(transaction_id)
            return await self.get_transaction(transaction_id)
        return transaction

    async def _release_after_top_up(self, transaction_id: int) -> None:
        """An approval that was waiting on the balance is paid out as soon as the escrow is full"""
        try:
            await self.fund_release.release(
                transaction_id,
                None,
                FundReleaseService.AUTO_RELEASE_REASON,
                expected_status=TransactionStatus.QUALITY_APPROVED,
                automatic=True,
            )
        except SettlementError as e:
            logger.warning(f"⚠️ TXN_ORCHESTRATOR: Release after balance failed for transaction {transaction_id}: {e.message}")

    async def _resolve_actor(
        self,
        session: AsyncSession,
        transaction: Transaction,
        actor_id: Optional[int],
        event: TransactionEvent,
    ) -> str:
        if actor_id is None:
            actor = SYSTEM_ACTOR
        elif actor_id == transaction.buyer_id:
            actor = BUYER
        elif actor_id == transaction.supplier_id:
            actor = SUPPLIER
        else:
            user = await session.get(User, actor_id)
            actor = ADMIN if user is not None and user.role == UserRole.ADMIN.value else None

        allowed = self.EVENT_ACTORS.get(event, set())
        if actor not in allowed:
            raise AuthorizationError(
                f"Only {' or '.join(sorted(allowed))} can {event.value.replace('_', ' ')}"
            )
        return actor

    async def _prepare_step(
        self,
        session: AsyncSession,
        transaction: Transaction,
        escrow: EscrowTransaction,
        event: TransactionEvent,
        actor_id: Optional[int],
        actor: str,
        now: datetime,
        params: Dict[str, Any],
    ) -> TransitionStep:
        """Perform the event's domain mutation and describe what to record"""
        if event in PAYMENT_EVENTS.values():
            return await self._prepare_payment(session, transaction, escrow, event, now, params)

        if event == TransactionEvent.SHIP:
            tracking_number = (params.get("tracking_number") or "").strip()
            shipping_provider = (params.get("shipping_provider") or "").strip()
            if len(tracking_number) < 3:
                raise ValidationError("Tracking number must be at least 3 characters", error_code="INVALID_TRACKING")
            if not shipping_provider:
                raise ValidationError("Shipping provider is required", error_code="INVALID_SHIPPING_PROVIDER")
            # Shipping documents accompany the tracking details
            await self.ledger.satisfy_condition(
                session, escrow, ReleaseConditionType.DOCUMENTS_VERIFIED, actor_id, now
            )
            return TransitionStep(
                reason=f"Shipped via {shipping_provider} (tracking {tracking_number})",
                milestone=f"Order shipped via {shipping_provider}",
                realtime_event="shipmentConfirmed",
                updates={
                    "tracking_number": tracking_number,
                    "shipping_provider": shipping_provider,
                    "shipped_at": now,
                },
                metadata={"trackingNumber": tracking_number, "shippingProvider": shipping_provider},
            )

        if event == TransactionEvent.MARK_IN_TRANSIT:
            return TransitionStep("Shipment in transit", "Shipment in transit", "shipmentInTransit")

        if event == TransactionEvent.CONFIRM_DELIVERY:
            location = (params.get("location") or "delivery address").strip()
            await self.ledger.satisfy_condition(
                session, escrow, ReleaseConditionType.DELIVERY_CONFIRMED, actor_id, now
            )
            return TransitionStep(
                reason=f"Delivery confirmed at {location}",
                milestone=f"Delivery confirmed by buyer at {location}",
                realtime_event="deliveryConfirmed",
                updates={"delivery_confirmed_at": now, "delivery_location": location},
                metadata={"location": location},
            )

        if event == TransactionEvent.REQUEST_QUALITY_CHECK:
            return TransitionStep(
                "Quality assessment pending",
                f"Quality assessment required within {self.policy.quality_reminder_days} days",
                "qualityAssessmentStarted",
            )

        if event == TransactionEvent.START_QUALITY_CHECK:
            return TransitionStep("Quality inspection started", "Quality inspection in progress", "qualityCheckStarted")

        if event == TransactionEvent.ESCALATE_DISPUTE:
            if escrow.status == EscrowStatus.HELD.value:
                await self.ledger.mark_disputed(session, escrow, now)
            return TransitionStep("Dispute escalated for arbitration", "Dispute escalated for review", "disputeEscalated")

        if event == TransactionEvent.COMPLETE:
            automatic = actor == SYSTEM_ACTOR
            return TransitionStep(
                reason=f"Automatic completion after {self.policy.auto_complete_hours} hours" if automatic
                else "Transaction completed",
                milestone="Transaction completed automatically" if automatic else "Transaction completed",
                realtime_event="transactionCompleted",
                updates={"completed_at": now},
            )

        if event == TransactionEvent.CANCEL:
            return TransitionStep(
                "Transaction cancelled", "Transaction cancelled", "transactionCancelled",
                updates={"cancelled_at": now},
            )

        if event == TransactionEvent.REFUND:
            await self.ledger.mark_refunded(session, escrow, now)
            return TransitionStep(
                "Escrow refunded to buyer", "Funds refunded to buyer", "transactionRefunded",
                updates={"refunded_at": now},
                metadata={"refundedAmount": MonetaryDecimal.quantize(escrow.held_amount or 0)},
            )

        raise ValidationError(f"Unsupported event {event.value}")

    async def _prepare_payment(
        self,
        session: AsyncSession,
        transaction: Transaction,
        escrow: EscrowTransaction,
        event: TransactionEvent,
        now: datetime,
        params: Dict[str, Any],
    ) -> TransitionStep:
        held = MonetaryDecimal.quantize(escrow.held_amount or 0)
        total = MonetaryDecimal.quantize(escrow.total_amount)
        if event == TransactionEvent.CONFIRM_PAYMENT:
            expected, label = MonetaryDecimal.quantize(transaction.advance_amount or 0), "Advance"
        elif event == TransactionEvent.CONFIRM_FULL_PAYMENT:
            expected, label = total, "Full"
        else:
            expected, label = MonetaryDecimal.subtract_precise(total, held), "Balance"

        amount = params.get("amount")
        try:
            amount = expected if amount is None else MonetaryDecimal.quantize(amount)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid payment amount {amount!r}", error_code="INVALID_AMOUNT")
        if amount != expected:
            raise ValidationError(
                f"{label} payment must be {expected}, got {amount}",
                error_code="PAYMENT_AMOUNT_MISMATCH",
                details={"expected": str(expected), "received": str(amount)},
            )

        await self.ledger.hold_funds(session, escrow, amount, now)

        updates: Dict[str, Any] = {}
        if transaction.payment_confirmed_at is None:
            updates["payment_confirmed_at"] = now
        if params.get("payment_method"):
            updates["payment_method"] = self._parse_payment_method(params["payment_method"]).value

        return TransitionStep(
            reason=f"{label} payment received",
            milestone=f"{label} payment of {MonetaryDecimal.format_money(amount)} received",
            realtime_event="paymentReceived",
            updates=updates,
            metadata={"paymentType": label.lower(), "amount": amount, "heldAmount": escrow.held_amount},
        )

    async def _announce_step(
        self,
        transaction: Transaction,
        event: TransactionEvent,
        step: TransitionStep,
        actor_id: Optional[int],
    ) -> None:
        await self.side_effects.emit_to_parties(transaction, step.realtime_event, step.metadata)
        for recipient, notification_type, title, template in self.EVENT_NOTICES.get(event, []):
            message = template.format(id=transaction.id)
            if recipient == ADMIN:
                await self.side_effects.notify_role(notification_type, title, message, transaction.id)
            else:
                user_id = transaction.buyer_id if recipient == BUYER else transaction.supplier_id
                await self.side_effects.notify(user_id, notification_type, title, message, transaction.id)
        await self.side_effects.log_activity(actor_id, event.value.upper(), transaction.id, step.metadata)

    # ------------------------------------------------------------------
    # Convenience operations
    # ------------------------------------------------------------------

    async def confirm_payment(
        self,
        transaction_id: int,
        actor_id: int,
        payment_type: Union[str, PaymentType] = PaymentType.FULL,
        amount: Optional[Decimal] = None,
        payment_method: Optional[str] = None,
    ) -> Transaction:
        try:
            payment_type = payment_type if isinstance(payment_type, PaymentType) else PaymentType(str(payment_type).lower())
        except ValueError:
            raise ValidationError("Payment type must be advance, balance or full", error_code="INVALID_PAYMENT_TYPE")
        return await self.advance(
            transaction_id, PAYMENT_EVENTS[payment_type], actor_id,
            amount=amount, payment_method=payment_method,
        )

    async def mark_shipped(self, transaction_id: int, supplier_id: int, tracking_number: str,
                           shipping_provider: str) -> Transaction:
        return await self.advance(
            transaction_id, TransactionEvent.SHIP, supplier_id,
            tracking_number=tracking_number, shipping_provider=shipping_provider,
        )

    async def mark_in_transit(self, transaction_id: int, actor_id: Optional[int]) -> Transaction:
        return await self.advance(transaction_id, TransactionEvent.MARK_IN_TRANSIT, actor_id)

    async def confirm_delivery(self, transaction_id: int, buyer_id: int, location: Optional[str] = None) -> Transaction:
        """Confirm receipt and open the quality assessment window (two history rows)"""
        await self.advance(transaction_id, TransactionEvent.CONFIRM_DELIVERY, buyer_id, location=location)
        return await self.advance(
            transaction_id, TransactionEvent.REQUEST_QUALITY_CHECK, buyer_id,
            expected_status=TransactionStatus.DELIVERY_CONFIRMED,
        )

    async def start_quality_check(self, transaction_id: int, actor_id: int) -> Transaction:
        return await self.advance(transaction_id, TransactionEvent.START_QUALITY_CHECK, actor_id)

    async def assess_quality(self, request: QualityAssessmentRequest) -> QualityAssessmentResult:
        return await self.quality_gate.assess(request)

    async def get_quality_state(self, transaction_id: int, caller_id: int) -> Dict[str, Any]:
        return await self.quality_gate.get_quality_state(transaction_id, caller_id)

    async def release_funds(
        self,
        transaction_id: int,
        released_by_id: Optional[int],
        reason: str,
        expected_status: Optional[TransactionStatus] = None,
    ) -> ReleaseResult:
        return await self.fund_release.release(transaction_id, released_by_id, reason, expected_status)

    async def escalate_dispute(self, transaction_id: int, actor_id: int) -> Transaction:
        return await self.advance(transaction_id, TransactionEvent.ESCALATE_DISPUTE, actor_id)

    async def complete(self, transaction_id: int, actor_id: Optional[int] = None) -> Transaction:
        return await self.advance(transaction_id, TransactionEvent.COMPLETE, actor_id)

    async def cancel(self, transaction_id: int, actor_id: int, reason: Optional[str] = None) -> Transaction:
        return await self.advance(transaction_id, TransactionEvent.CANCEL, actor_id, reason=reason)

    async def refund(self, transaction_id: int, admin_id: int, reason: Optional[str] = None) -> Transaction:
        return await self.advance(transaction_id, TransactionEvent.REFUND, admin_id, reason=reason)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_transaction(self, transaction_id: int) -> Transaction:
        async with async_managed_session(self.session_factory) as session:
            return await load_transaction(session, transaction_id, for_update=False)

    async def get_history(self, transaction_id: int, caller_id: int) -> Dict[str, Any]:
        """History rows and milestones, visible to the parties and admins"""
        async with async_managed_session(self.session_factory) as session:
            transaction = await load_transaction(session, transaction_id, for_update=False)
            if caller_id not in (transaction.buyer_id, transaction.supplier_id):
                caller = await session.get(User, caller_id)
                if caller is None or caller.role != UserRole.ADMIN.value:
                    raise AuthorizationError("Not authorized to view this transaction")

            history = await StatusHistoryService.get_history(session, transaction_id)
            milestones = await StatusHistoryService.get_milestones(session, transaction_id)
            return {
                "transactionId": transaction_id,
                "status": transaction.status,
                "history": [
                    {
                        "oldStatus": entry.old_status,
                        "newStatus": entry.new_status,
                        "changedById": entry.changed_by_id,
                        "reason": entry.reason,
                        "metadata": entry.change_metadata or {},
                        "timestamp": as_utc(entry.created_at).isoformat(),
                    }
                    for entry in history
                ],
                "milestones": [
                    {
                        "status": milestone.status,
                        "description": milestone.description,
                        "actor": milestone.actor,
                        "timestamp": as_utc(milestone.created_at).isoformat(),
                    }
                    for milestone in milestones
                ],
            }


_transaction_orchestrator: Optional[TransactionOrchestrator] = None


def get_transaction_orchestrator() -> TransactionOrchestrator:
    """Get global orchestrator instance"""
    global _transaction_orchestrator
    if _transaction_orchestrator is None:
        _transaction_orchestrator = TransactionOrchestrator()
    return _transaction_orchestrator
