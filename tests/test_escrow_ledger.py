"""
Escrow ledger tests
Funding, release conditions and auto-release eligibility
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from models import ReleaseConditionType, TransactionStatus
from services.escrow_ledger import EscrowLedger
from utils.datetime_helpers import utc_now
from utils.exceptions import StateError, ValidationError


@pytest.fixture
def ledger(policy):
    return EscrowLedger(policy)


class TestFunding:

    @pytest.mark.asyncio
    async def test_advance_then_balance(self, ledger, session_factory, created_transaction):
        async with session_factory() as session:
            escrow = await ledger.get_escrow(session, created_transaction)
            await ledger.hold_funds(session, escrow, Decimal("30000.00"))
            assert escrow.status == "held"
            assert escrow.hold_date is not None

            await ledger.hold_funds(session, escrow, Decimal("70000.00"))
            assert escrow.held_amount == Decimal("100000.00")

    @pytest.mark.asyncio
    async def test_overfunding_rejected(self, ledger, session_factory, created_transaction):
        async with session_factory() as session:
            escrow = await ledger.get_escrow(session, created_transaction)
            with pytest.raises(ValidationError):
                await ledger.hold_funds(session, escrow, Decimal("100000.01"))
            assert escrow.status == "pending"

    @pytest.mark.asyncio
    async def test_non_positive_amount_rejected(self, ledger, session_factory, created_transaction):
        async with session_factory() as session:
            escrow = await ledger.get_escrow(session, created_transaction)
            with pytest.raises(ValidationError):
                await ledger.hold_funds(session, escrow, Decimal("0"))

    @pytest.mark.asyncio
    async def test_released_escrow_takes_no_funds(self, ledger, session_factory, created_transaction):
        async with session_factory() as session:
            escrow = await ledger.get_escrow(session, created_transaction)
            await ledger.hold_funds(session, escrow, Decimal("50000.00"))
            await ledger.mark_released(session, escrow)

            with pytest.raises(StateError):
                await ledger.hold_funds(session, escrow, Decimal("10.00"))


class TestConditions:

    @pytest.mark.asyncio
    async def test_satisfying_a_condition_mirrors_flag(self, ledger, session_factory, parties,
                                                       created_transaction):
        async with session_factory() as session:
            escrow = await ledger.get_escrow(session, created_transaction)
            condition = await ledger.satisfy_condition(
                session, escrow, ReleaseConditionType.DELIVERY_CONFIRMED, parties.buyer_id
            )

            assert condition.satisfied is True
            assert condition.satisfied_by_id == parties.buyer_id
            assert escrow.delivery_confirmed is True
            assert escrow.delivery_confirmed_at is not None
            status = await ledger.condition_status(session, escrow)
            assert status == {
                "delivery_confirmed": True,
                "quality_approved": False,
                "documents_verified": False,
            }
            assert await ledger.all_conditions_met(session, escrow) is False

    @pytest.mark.asyncio
    async def test_repeat_keeps_first_timestamp(self, ledger, session_factory, parties, created_transaction):
        async with session_factory() as session:
            escrow = await ledger.get_escrow(session, created_transaction)
            first = utc_now() - timedelta(hours=1)
            await ledger.satisfy_condition(session, escrow, ReleaseConditionType.DOCUMENTS_VERIFIED, None, first)
            condition = await ledger.satisfy_condition(
                session, escrow, ReleaseConditionType.DOCUMENTS_VERIFIED, parties.admin_id
            )
            assert condition.satisfied_at == first
            assert condition.satisfied_by_id is None


class TestEligibility:

    @pytest.mark.asyncio
    async def test_unfunded_escrow_never_eligible(self, ledger, session_factory, created_transaction):
        async with session_factory() as session:
            escrow = await ledger.get_escrow(session, created_transaction)
            later = utc_now() + timedelta(days=31)
            verdict = await ledger.release_eligibility(session, escrow, TransactionStatus.QUALITY_PENDING, later)
            assert verdict.eligible is False
            assert verdict.deadline_reached is True

    @pytest.mark.asyncio
    async def test_deadline_makes_delivered_escrow_eligible(self, ledger, session_factory, delivered_transaction):
        async with session_factory() as session:
            escrow = await ledger.get_escrow(session, delivered_transaction)

            now_verdict = await ledger.release_eligibility(session, escrow, TransactionStatus.QUALITY_PENDING)
            assert now_verdict.eligible is False

            later = utc_now() + timedelta(days=31)
            later_verdict = await ledger.release_eligibility(
                session, escrow, TransactionStatus.QUALITY_PENDING, later
            )
            assert later_verdict.eligible is True
            assert later_verdict.all_conditions_met is False

    @pytest.mark.asyncio
    async def test_deadline_ignored_for_rejected_goods(self, ledger, session_factory, delivered_transaction):
        async with session_factory() as session:
            escrow = await ledger.get_escrow(session, delivered_transaction)
            later = utc_now() + timedelta(days=31)
            verdict = await ledger.release_eligibility(session, escrow, TransactionStatus.QUALITY_REJECTED, later)
            assert verdict.eligible is False

    @pytest.mark.asyncio
    async def test_due_query_finds_only_expired_held_escrows(self, ledger, session_factory,
                                                             delivered_transaction):
        async with session_factory() as session:
            assert await ledger.find_due_for_auto_release(session) == []
            due = await ledger.find_due_for_auto_release(session, utc_now() + timedelta(days=31))
            assert due == [delivered_transaction]
