"""
Transaction lifecycle tests
Payments into escrow, shipping, delivery, disputes, cancellation and refunds through the orchestrator
"""

import pytest
from decimal import Decimal

from sqlalchemy import select

from models import EscrowTransaction, NotificationType, Transaction, TransactionStatus
from services.quality_assessment_gate import QualityAssessmentRequest
from utils.exceptions import AuthorizationError, NotFoundError, StateError, ValidationError
from utils.transaction_state_validator import TransactionEvent


async def _escrow(session_factory, transaction_id):
    async with session_factory() as session:
        return (await session.execute(
            select(EscrowTransaction).where(EscrowTransaction.transaction_id == transaction_id)
        )).scalar_one()


class TestPayments:

    @pytest.mark.asyncio
    async def test_advance_then_balance(self, orchestrator, session_factory, parties, created_transaction):
        transaction = await orchestrator.confirm_payment(created_transaction, parties.buyer_id, "advance")
        assert transaction.status == "payment_received"
        assert transaction.payment_confirmed_at is not None
        first_confirmation = transaction.payment_confirmed_at

        escrow = await _escrow(session_factory, created_transaction)
        assert escrow.status == "held"
        assert escrow.held_amount == Decimal("30000.00")

        transaction = await orchestrator.confirm_payment(
            created_transaction, parties.buyer_id, "balance", Decimal("70000")
        )
        assert transaction.status == "escrow_held"
        assert transaction.payment_confirmed_at == first_confirmation
        escrow = await _escrow(session_factory, created_transaction)
        assert escrow.held_amount == Decimal("100000.00")

    @pytest.mark.asyncio
    async def test_balance_after_delivery_then_approval_releases(self, orchestrator, session_factory, parties,
                                                                 created_transaction):
        await orchestrator.confirm_payment(created_transaction, parties.buyer_id, "advance")
        await orchestrator.mark_shipped(created_transaction, parties.supplier_id, "TRK-88", "DHL")
        await orchestrator.confirm_delivery(created_transaction, parties.buyer_id)

        transaction = await orchestrator.confirm_payment(created_transaction, parties.buyer_id, "balance")
        assert transaction.status == "quality_pending"
        escrow = await _escrow(session_factory, created_transaction)
        assert escrow.held_amount == Decimal("100000.00")

        result = await orchestrator.assess_quality(QualityAssessmentRequest(
            transaction_id=created_transaction,
            caller_id=parties.buyer_id,
            rating=4,
            notes="Bearings within tolerance",
            approval_status="APPROVED",
        ))
        assert result.fund_released is True

        view = await orchestrator.get_history(created_transaction, parties.buyer_id)
        statuses = [entry["newStatus"] for entry in view["history"]]
        assert statuses == [
            "payment_pending", "payment_received", "shipped", "delivery_confirmed",
            "quality_pending", "quality_approved", "funds_released",
        ]
        assert "Balance payment of $70,000.00 received" in [m["description"] for m in view["milestones"]]

    @pytest.mark.asyncio
    async def test_balance_after_approval_releases_held_approval(self, orchestrator, session_factory, parties,
                                                                 created_transaction):
        await orchestrator.confirm_payment(created_transaction, parties.buyer_id, "advance")
        await orchestrator.mark_shipped(created_transaction, parties.supplier_id, "TRK-88", "DHL")
        await orchestrator.confirm_delivery(created_transaction, parties.buyer_id)
        result = await orchestrator.assess_quality(QualityAssessmentRequest(
            transaction_id=created_transaction,
            caller_id=parties.buyer_id,
            rating=4,
            notes="Bearings within tolerance",
            approval_status="APPROVED",
        ))
        assert result.fund_released is False
        assert result.release_error == "Escrow is not fully funded"

        transaction = await orchestrator.confirm_payment(created_transaction, parties.buyer_id, "balance")

        assert transaction.status == "funds_released"
        assert transaction.release_reason == "auto-release"
        assert transaction.funds_released_by_id is None
        assert transaction.payout_amount == Decimal("98000.00")
        escrow = await _escrow(session_factory, created_transaction)
        assert escrow.status == "released"

    @pytest.mark.asyncio
    async def test_balance_in_transit_keeps_status(self, orchestrator, parties, created_transaction):
        await orchestrator.confirm_payment(created_transaction, parties.buyer_id, "advance")
        await orchestrator.mark_shipped(created_transaction, parties.supplier_id, "TRK-88", "DHL")
        await orchestrator.mark_in_transit(created_transaction, parties.supplier_id)
        before = await orchestrator.get_transaction(created_transaction)

        transaction = await orchestrator.confirm_payment(created_transaction, parties.buyer_id, "balance")

        assert transaction.status == "in_transit"
        assert transaction.version == before.version + 1
        view = await orchestrator.get_history(created_transaction, parties.buyer_id)
        assert [entry["newStatus"] for entry in view["history"]][-1] == "in_transit"

    @pytest.mark.asyncio
    async def test_balance_refused_once_fully_funded(self, orchestrator, parties, delivered_transaction):
        with pytest.raises(ValidationError):
            await orchestrator.confirm_payment(delivered_transaction, parties.buyer_id, "balance")

    @pytest.mark.asyncio
    async def test_amount_must_match_expected(self, orchestrator, session_factory, parties, created_transaction):
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.confirm_payment(created_transaction, parties.buyer_id, "full", Decimal("99999.99"))

        assert exc_info.value.error_code == "PAYMENT_AMOUNT_MISMATCH"
        escrow = await _escrow(session_factory, created_transaction)
        assert escrow.status == "pending"

    @pytest.mark.asyncio
    async def test_unknown_payment_type(self, orchestrator, parties, created_transaction):
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.confirm_payment(created_transaction, parties.buyer_id, "installment")
        assert exc_info.value.error_code == "INVALID_PAYMENT_TYPE"

    @pytest.mark.asyncio
    async def test_supplier_cannot_confirm_payment(self, orchestrator, parties, created_transaction):
        with pytest.raises(AuthorizationError):
            await orchestrator.confirm_payment(created_transaction, parties.supplier_id, "full")

    @pytest.mark.asyncio
    async def test_payment_notifies_supplier_and_admins(self, orchestrator, parties, created_transaction,
                                                        notifications_for):
        await orchestrator.confirm_payment(created_transaction, parties.buyer_id, "advance")

        supplier_notes = await notifications_for(parties.supplier_id, NotificationType.PAYMENT_RECEIVED)
        admin_notes = await notifications_for(parties.admin_id, NotificationType.PAYMENT_RECEIVED)
        assert [note.title for note in supplier_notes] == ["Buyer Payment Received"]
        assert [note.title for note in admin_notes] == ["Buyer Payment Submitted"]

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, orchestrator, parties):
        with pytest.raises(NotFoundError):
            await orchestrator.confirm_payment(4242, parties.buyer_id, "full")


class TestShipping:

    @pytest.mark.asyncio
    async def test_ship_records_tracking_and_documents(self, orchestrator, session_factory, parties,
                                                       created_transaction):
        await orchestrator.confirm_payment(created_transaction, parties.buyer_id, "full")

        transaction = await orchestrator.mark_shipped(created_transaction, parties.supplier_id, " TRK-55 ", "DHL")

        assert transaction.status == "shipped"
        assert transaction.tracking_number == "TRK-55"
        assert transaction.shipping_provider == "DHL"
        assert transaction.shipped_at is not None
        escrow = await _escrow(session_factory, created_transaction)
        assert escrow.documents_verified is True
        assert escrow.delivery_confirmed is False

    @pytest.mark.asyncio
    async def test_tracking_number_too_short(self, orchestrator, parties, created_transaction):
        await orchestrator.confirm_payment(created_transaction, parties.buyer_id, "full")

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.mark_shipped(created_transaction, parties.supplier_id, "T1", "DHL")
        assert exc_info.value.error_code == "INVALID_TRACKING"

        transaction = await orchestrator.get_transaction(created_transaction)
        assert transaction.status == "escrow_held"

    @pytest.mark.asyncio
    async def test_only_supplier_ships(self, orchestrator, parties, created_transaction):
        await orchestrator.confirm_payment(created_transaction, parties.buyer_id, "full")

        with pytest.raises(AuthorizationError):
            await orchestrator.mark_shipped(created_transaction, parties.buyer_id, "TRK-55", "DHL")

    @pytest.mark.asyncio
    async def test_in_transit_then_delivery(self, orchestrator, session_factory, parties, created_transaction):
        await orchestrator.confirm_payment(created_transaction, parties.buyer_id, "full")
        await orchestrator.mark_shipped(created_transaction, parties.supplier_id, "TRK-55", "DHL")

        transaction = await orchestrator.mark_in_transit(created_transaction, parties.supplier_id)
        assert transaction.status == "in_transit"

        transaction = await orchestrator.confirm_delivery(created_transaction, parties.buyer_id)
        assert transaction.status == "quality_pending"
        assert transaction.delivery_location == "delivery address"
        escrow = await _escrow(session_factory, created_transaction)
        assert escrow.delivery_confirmed is True

    @pytest.mark.asyncio
    async def test_supplier_cannot_confirm_delivery(self, orchestrator, parties, created_transaction):
        await orchestrator.confirm_payment(created_transaction, parties.buyer_id, "full")
        await orchestrator.mark_shipped(created_transaction, parties.supplier_id, "TRK-55", "DHL")

        with pytest.raises(AuthorizationError):
            await orchestrator.confirm_delivery(created_transaction, parties.supplier_id)


class TestAdvance:

    @pytest.mark.asyncio
    async def test_stale_expected_status_rejected(self, orchestrator, parties, created_transaction):
        with pytest.raises(StateError) as exc_info:
            await orchestrator.advance(
                created_transaction,
                TransactionEvent.CONFIRM_FULL_PAYMENT,
                parties.buyer_id,
                expected_status=TransactionStatus.ESCROW_HELD,
            )
        assert exc_info.value.error_code == "STALE_STATUS"

    @pytest.mark.asyncio
    async def test_approve_event_goes_through_quality_gate(self, orchestrator, parties, delivered_transaction):
        transaction = await orchestrator.advance(
            delivered_transaction,
            TransactionEvent.APPROVE_QUALITY,
            parties.buyer_id,
            rating=4,
            notes="All units pass inspection",
        )
        assert transaction.status == "funds_released"
        assert transaction.quality_rating == 4

    @pytest.mark.asyncio
    async def test_outsider_cannot_act(self, orchestrator, parties, created_transaction):
        with pytest.raises(AuthorizationError):
            await orchestrator.cancel(created_transaction, parties.outsider_id)


class TestCancellationAndRefund:

    @pytest.mark.asyncio
    async def test_cancel_after_payment_refused(self, orchestrator, parties, created_transaction):
        await orchestrator.confirm_payment(created_transaction, parties.buyer_id, "full")

        with pytest.raises(StateError):
            await orchestrator.cancel(created_transaction, parties.buyer_id)

    @pytest.mark.asyncio
    async def test_admin_can_cancel_before_payment(self, orchestrator, parties, created_transaction):
        await orchestrator.cancel(created_transaction, parties.admin_id, "Buyer changed plans")

        transaction = await orchestrator.get_transaction(created_transaction)
        assert transaction.status == "cancelled"
        view = await orchestrator.get_history(created_transaction, parties.buyer_id)
        assert view["history"][-1]["reason"] == "Buyer changed plans"

    @pytest.mark.asyncio
    async def test_refund_is_admin_only(self, orchestrator, parties, delivered_transaction):
        await orchestrator.assess_quality(QualityAssessmentRequest(
            transaction_id=delivered_transaction,
            caller_id=parties.buyer_id,
            rating=1,
            notes="Wrong parts were shipped",
            approval_status="REJECTED",
        ))

        with pytest.raises(AuthorizationError):
            await orchestrator.refund(delivered_transaction, parties.buyer_id)

        transaction = await orchestrator.refund(delivered_transaction, parties.admin_id, "Goods returned")
        assert transaction.status == "refunded"
        assert transaction.refunded_at is not None

    @pytest.mark.asyncio
    async def test_dispute_escalation_notifies_admins(self, orchestrator, session_factory, parties,
                                                      delivered_transaction, notifications_for):
        await orchestrator.assess_quality(QualityAssessmentRequest(
            transaction_id=delivered_transaction,
            caller_id=parties.buyer_id,
            rating=2,
            notes="Finish does not match sample",
            approval_status="REJECTED",
        ))

        transaction = await orchestrator.escalate_dispute(delivered_transaction, parties.supplier_id)

        assert transaction.status == "disputed"
        titles = [note.title for note in await notifications_for(parties.admin_id, NotificationType.DISPUTE_OPENED)]
        assert "Dispute Escalated" in titles
        escrow = await _escrow(session_factory, delivered_transaction)
        assert escrow.status == "disputed"


class TestCompletion:

    @pytest.mark.asyncio
    async def test_complete_only_after_release(self, orchestrator, parties, delivered_transaction):
        with pytest.raises(StateError):
            await orchestrator.complete(delivered_transaction, parties.buyer_id)

    @pytest.mark.asyncio
    async def test_history_access_limited_to_parties(self, orchestrator, parties, created_transaction):
        view = await orchestrator.get_history(created_transaction, parties.admin_id)
        assert view["history"][0]["newStatus"] == "payment_pending"

        with pytest.raises(AuthorizationError):
            await orchestrator.get_history(created_transaction, parties.outsider_id)
