"""
Shared fixtures for settlement tests

Every test gets its own in-memory SQLite database (aiosqlite, one shared
connection through StaticPool) and a fully wired orchestrator whose payment
gateway is an AsyncMock.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import logging
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config import SettlementPolicy
from database import create_tables
from models import (
    Notification, Quotation, QuotationStatus, Requirement, RequirementStatus, User, UserRole
)
from services.payment_gateway import PaymentGateway, PaymentIntentResult
from services.realtime_events import RealtimeEventEmitter
from services.settlement_side_effects import SettlementSideEffects
from services.transaction_orchestrator import TransactionCreationRequest, TransactionOrchestrator
from utils.datetime_helpers import utc_now

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def policy():
    return SettlementPolicy(
        platform_fee_rate=Decimal("0.02"),
        advance_percentage=Decimal("30"),
        auto_release_days=30,
        auto_complete_hours=48,
        quality_reminder_days=7,
    )


@pytest.fixture
def payment_gateway():
    gateway = AsyncMock(spec=PaymentGateway)
    gateway.create_payment_intent.return_value = PaymentIntentResult(
        success=True,
        payment_intent_id="pi_test_123",
        client_secret="pi_test_123_secret",
    )
    return gateway


@pytest.fixture
def emitted_events():
    """(user_id, event, payload) tuples pushed through the realtime emitter"""
    return []


@pytest.fixture
def events(emitted_events):
    emitter = RealtimeEventEmitter()

    async def capture(user_id, event, payload):
        emitted_events.append((user_id, event, payload))

    emitter.subscribe(capture)
    return emitter


@pytest.fixture
def orchestrator(policy, session_factory, payment_gateway, events):
    side_effects = SettlementSideEffects(events=events, session_factory=session_factory)
    return TransactionOrchestrator(
        policy=policy,
        session_factory=session_factory,
        side_effects=side_effects,
        payment_gateway=payment_gateway,
    )


@pytest_asyncio.fixture
async def parties(session_factory):
    """Buyer, supplier, admin and an unrelated user"""
    async with session_factory() as session:
        buyer = User(email="buyer@example.com", name="Buyer", role=UserRole.BUYER.value)
        supplier = User(email="supplier@example.com", name="Supplier", role=UserRole.SUPPLIER.value)
        admin = User(email="admin@example.com", name="Admin", role=UserRole.ADMIN.value)
        outsider = User(email="outsider@example.com", name="Outsider", role=UserRole.BUYER.value)
        session.add_all([buyer, supplier, admin, outsider])
        await session.commit()
        return SimpleNamespace(
            buyer_id=buyer.id, supplier_id=supplier.id, admin_id=admin.id, outsider_id=outsider.id
        )


@pytest.fixture
def make_quotation(session_factory, parties):
    """Factory for a requirement plus a supplier quotation against it"""

    async def _make(total="100000.00", lead_time_days=10, valid_days=14, status=QuotationStatus.SUBMITTED):
        async with session_factory() as session:
            requirement = Requirement(
                buyer_id=parties.buyer_id,
                title="Industrial bearings",
                description="5000 units, grade A",
                status=RequirementStatus.QUOTED.value,
            )
            session.add(requirement)
            await session.flush()
            quotation = Quotation(
                requirement_id=requirement.id,
                supplier_id=parties.supplier_id,
                total=Decimal(total),
                currency="USD",
                lead_time_days=lead_time_days,
                valid_until=utc_now() + timedelta(days=valid_days),
                status=status.value,
            )
            session.add(quotation)
            await session.commit()
            return SimpleNamespace(requirement_id=requirement.id, quotation_id=quotation.id)

    return _make


@pytest_asyncio.fixture
async def quotation(make_quotation):
    return await make_quotation()


@pytest.fixture
def creation_request(parties):
    def _request(quotation, payment_method="BANK_TRANSFER", buyer_id=None, supplier_id=None):
        return TransactionCreationRequest(
            requirement_id=quotation.requirement_id,
            quotation_id=quotation.quotation_id,
            supplier_id=supplier_id or parties.supplier_id,
            buyer_id=buyer_id or parties.buyer_id,
            payment_method=payment_method,
        )

    return _request


@pytest_asyncio.fixture
async def created_transaction(orchestrator, quotation, creation_request):
    """Transaction id in PAYMENT_PENDING"""
    response = await orchestrator.create(creation_request(quotation))
    return response.transaction["id"]


@pytest_asyncio.fixture
async def delivered_transaction(orchestrator, parties, created_transaction):
    """Transaction id paid in full, shipped and delivered (QUALITY_PENDING)"""
    transaction_id = created_transaction
    await orchestrator.confirm_payment(transaction_id, parties.buyer_id, "full")
    await orchestrator.mark_shipped(transaction_id, parties.supplier_id, "TRK-0001", "DHL")
    await orchestrator.confirm_delivery(transaction_id, parties.buyer_id, "Warehouse 4")
    return transaction_id


@pytest.fixture
def notifications_for(session_factory):
    async def _query(user_id, notification_type=None):
        async with session_factory() as session:
            stmt = select(Notification).where(Notification.user_id == user_id).order_by(Notification.id)
            if notification_type is not None:
                stmt = stmt.where(Notification.type == notification_type.value)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    return _query
