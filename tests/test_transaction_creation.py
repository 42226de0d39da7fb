"""
Transaction creation tests
Covers the all-or-nothing create unit, duplicate protection and the best-effort payment intent
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from models import (
    EscrowTransaction, NotificationType, Quotation, QuotationStatus, ReleaseCondition, Requirement,
    Transaction, TransactionMilestone, TransactionStatus, TransactionStatusHistory
)
from services.payment_gateway import PaymentIntentResult
from utils.datetime_helpers import as_utc, utc_now
from utils.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError


async def _count(session_factory, model):
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


def _parse(value):
    return as_utc(datetime.fromisoformat(value))


class TestCreateTransaction:

    @pytest.mark.asyncio
    async def test_amounts_and_dates_follow_quotation(self, orchestrator, make_quotation, creation_request):
        quotation = await make_quotation(total="50000.00", lead_time_days=10)
        before = utc_now()

        response = await orchestrator.create(creation_request(quotation))

        transaction = response.transaction
        assert transaction["status"] == "payment_pending"
        assert transaction["amount"] == "50000.00"
        assert transaction["advanceAmount"] == "15000.00"
        assert transaction["balanceAmount"] == "35000.00"
        assert transaction["paymentTerms"] == "30% advance, 70% on delivery confirmation"
        assert transaction["paymentMethod"] == "BANK_TRANSFER"

        estimated = _parse(transaction["estimatedDelivery"])
        assert before + timedelta(days=10) <= estimated <= utc_now() + timedelta(days=10)

        escrow = response.escrow
        assert escrow["status"] == "pending"
        assert escrow["totalAmount"] == "50000.00"
        assert escrow["heldAmount"] == "0.00"
        auto_release = _parse(escrow["autoReleaseDate"])
        assert before + timedelta(days=30) <= auto_release <= utc_now() + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_create_writes_one_of_everything(self, orchestrator, session_factory, quotation, creation_request):
        response = await orchestrator.create(creation_request(quotation))
        transaction_id = response.transaction["id"]

        assert await _count(session_factory, Transaction) == 1
        assert await _count(session_factory, EscrowTransaction) == 1
        assert await _count(session_factory, ReleaseCondition) == 3
        assert await _count(session_factory, TransactionMilestone) == 1

        async with session_factory() as session:
            history = (await session.execute(select(TransactionStatusHistory))).scalars().all()
            assert len(history) == 1
            assert history[0].old_status is None
            assert history[0].new_status == "payment_pending"
            assert history[0].transaction_id == transaction_id

            conditions = (await session.execute(select(ReleaseCondition))).scalars().all()
            assert not any(condition.satisfied for condition in conditions)
            assert {condition.type for condition in conditions} == {
                "delivery_confirmed", "quality_approved", "documents_verified"
            }

            stored_quotation = await session.get(Quotation, quotation.quotation_id)
            requirement = await session.get(Requirement, quotation.requirement_id)
            assert stored_quotation.status == "accepted"
            assert requirement.status == "accepted"

    @pytest.mark.asyncio
    async def test_payment_intent_is_stored(self, orchestrator, session_factory, payment_gateway,
                                            quotation, creation_request):
        response = await orchestrator.create(creation_request(quotation))

        assert response.payment_intent["paymentIntentId"] == "pi_test_123"
        assert response.payment_intent_error is None
        payment_gateway.create_payment_intent.assert_awaited_once()
        args = payment_gateway.create_payment_intent.await_args.args
        assert args[0] == Decimal("100000.00")

        async with session_factory() as session:
            transaction = await session.get(Transaction, response.transaction["id"])
            assert transaction.payment_intent_id == "pi_test_123"

    @pytest.mark.asyncio
    async def test_payment_intent_failure_is_not_fatal(self, orchestrator, session_factory, payment_gateway,
                                                       quotation, creation_request):
        payment_gateway.create_payment_intent.return_value = PaymentIntentResult(
            success=False, error="HTTP 503"
        )

        response = await orchestrator.create(creation_request(quotation))

        assert response.payment_intent is None
        assert response.payment_intent_error == "HTTP 503"
        assert await _count(session_factory, Transaction) == 1

    @pytest.mark.asyncio
    async def test_payment_intent_exception_is_not_fatal(self, orchestrator, session_factory, payment_gateway,
                                                         quotation, creation_request):
        payment_gateway.create_payment_intent.side_effect = RuntimeError("gateway down")

        response = await orchestrator.create(creation_request(quotation))

        assert response.payment_intent_error == "gateway down"
        assert response.transaction["status"] == "payment_pending"

    @pytest.mark.asyncio
    async def test_parties_are_notified(self, orchestrator, parties, quotation, creation_request,
                                        notifications_for, emitted_events):
        await orchestrator.create(creation_request(quotation))

        supplier_notes = await notifications_for(parties.supplier_id, NotificationType.TRANSACTION_CREATED)
        buyer_notes = await notifications_for(parties.buyer_id, NotificationType.TRANSACTION_CREATED)
        assert len(supplier_notes) == 1
        assert len(buyer_notes) == 1
        assert {user_id for user_id, event, _ in emitted_events if event == "transactionCreated"} == {
            parties.buyer_id, parties.supplier_id
        }


class TestCreateRejections:

    @pytest.mark.asyncio
    async def test_second_create_conflicts(self, orchestrator, session_factory, quotation, creation_request):
        await orchestrator.create(creation_request(quotation))

        with pytest.raises(ConflictError):
            await orchestrator.create(creation_request(quotation))

        assert await _count(session_factory, Transaction) == 1
        assert await _count(session_factory, EscrowTransaction) == 1

    @pytest.mark.asyncio
    async def test_index_allows_one_live_transaction_per_quotation(self, orchestrator, session_factory, parties,
                                                                  quotation, creation_request):
        await orchestrator.create(creation_request(quotation))

        def _row(status):
            return Transaction(
                buyer_id=parties.buyer_id,
                supplier_id=parties.supplier_id,
                requirement_id=quotation.requirement_id,
                quotation_id=quotation.quotation_id,
                status=status,
                amount=Decimal("100000.00"),
                currency="USD",
                payment_method="BANK_TRANSFER",
            )

        async with session_factory() as session:
            session.add(_row(TransactionStatus.CANCELLED.value))
            await session.commit()

        async with session_factory() as session:
            session.add(_row(TransactionStatus.PAYMENT_PENDING.value))
            with pytest.raises(IntegrityError):
                await session.flush()
            await session.rollback()

    @pytest.mark.asyncio
    async def test_create_racing_past_the_lookup_conflicts(self, orchestrator, session_factory, quotation,
                                                           creation_request, monkeypatch):
        await orchestrator.create(creation_request(quotation))

        # A second request that read the quotation before the first one committed
        async with session_factory() as session:
            stored = await session.get(Quotation, quotation.quotation_id)
            stored.status = QuotationStatus.SUBMITTED.value
            await session.commit()
        monkeypatch.setattr(
            "services.transaction_orchestrator.TERMINAL_FOR_QUOTATION",
            tuple(status.value for status in TransactionStatus),
        )

        with pytest.raises(ConflictError) as exc_info:
            await orchestrator.create(creation_request(quotation))

        assert exc_info.value.error_code == "TRANSACTION_EXISTS"
        assert exc_info.value.http_status == 409
        assert await _count(session_factory, Transaction) == 1
        assert await _count(session_factory, EscrowTransaction) == 1

    @pytest.mark.asyncio
    async def test_already_accepted_quotation_conflicts(self, orchestrator, make_quotation, creation_request):
        quotation = await make_quotation(status=QuotationStatus.ACCEPTED)

        with pytest.raises(ConflictError) as exc_info:
            await orchestrator.create(creation_request(quotation))
        assert exc_info.value.http_status == 409

    @pytest.mark.asyncio
    async def test_expired_quotation_rejected(self, orchestrator, make_quotation, creation_request):
        quotation = await make_quotation(valid_days=-1)

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.create(creation_request(quotation))
        assert exc_info.value.error_code == "QUOTATION_EXPIRED"

    @pytest.mark.asyncio
    async def test_unknown_quotation(self, orchestrator, quotation, creation_request):
        quotation.quotation_id = 9999

        with pytest.raises(NotFoundError):
            await orchestrator.create(creation_request(quotation))

    @pytest.mark.asyncio
    async def test_other_buyers_requirement_forbidden(self, orchestrator, parties, quotation, creation_request):
        with pytest.raises(AuthorizationError):
            await orchestrator.create(creation_request(quotation, buyer_id=parties.outsider_id))

    @pytest.mark.asyncio
    async def test_supplier_mismatch(self, orchestrator, parties, quotation, creation_request):
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.create(creation_request(quotation, supplier_id=parties.admin_id))
        assert exc_info.value.error_code == "SUPPLIER_MISMATCH"

    @pytest.mark.asyncio
    async def test_unknown_payment_method(self, orchestrator, session_factory, quotation, creation_request):
        with pytest.raises(ValidationError):
            await orchestrator.create(creation_request(quotation, payment_method="BARTER"))
        assert await _count(session_factory, Transaction) == 0

    @pytest.mark.asyncio
    async def test_failed_create_leaves_quotation_untouched(self, orchestrator, session_factory, parties,
                                                            quotation, creation_request):
        with pytest.raises(ValidationError):
            await orchestrator.create(creation_request(quotation, supplier_id=parties.admin_id))

        async with session_factory() as session:
            stored = await session.get(Quotation, quotation.quotation_id)
            assert stored.status == "submitted"

    @pytest.mark.asyncio
    async def test_buyer_can_cancel_before_payment(self, orchestrator, session_factory, parties,
                                                               quotation, creation_request):
        response = await orchestrator.create(creation_request(quotation))
        await orchestrator.cancel(response.transaction["id"], parties.buyer_id)

        async with session_factory() as session:
            transaction = await session.get(Transaction, response.transaction["id"])
            assert transaction.status == "cancelled"
            assert transaction.cancelled_at is not None
