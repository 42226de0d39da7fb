"""
Trade Settlement Platform - Database Schema
===========================================

Schema for the escrow-protected purchase lifecycle:
- Buyer requirements and supplier quotations
- One transaction per accepted quotation, with its escrow custody record
- Release conditions gating the supplier payout
- Append-only status history and UI-facing milestones
- Notifications and activity log written by the side-effect collaborators
"""

from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, func, text, JSON
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class UserRole(Enum):
    """Platform roles used for authorization and notification routing"""
    BUYER = "buyer"
    SUPPLIER = "supplier"
    ADMIN = "admin"


class RequirementStatus(Enum):
    OPEN = "open"
    QUOTED = "quoted"
    ACCEPTED = "accepted"
    CLOSED = "closed"


class QuotationStatus(Enum):
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class TransactionStatus(Enum):
    """Purchase lifecycle states"""
    INITIATED = "initiated"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_RECEIVED = "payment_received"
    ESCROW_HELD = "escrow_held"
    SHIPPED = "shipped"
    IN_TRANSIT = "in_transit"
    DELIVERY_CONFIRMED = "delivery_confirmed"
    QUALITY_PENDING = "quality_pending"
    QUALITY_CHECK = "quality_check"
    QUALITY_APPROVED = "quality_approved"
    QUALITY_REJECTED = "quality_rejected"
    FUNDS_RELEASED = "funds_released"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class EscrowStatus(Enum):
    """Custody state of buyer funds"""
    PENDING = "pending"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class ReleaseConditionType(Enum):
    DELIVERY_CONFIRMED = "delivery_confirmed"
    QUALITY_APPROVED = "quality_approved"
    DOCUMENTS_VERIFIED = "documents_verified"


class PaymentMethod(Enum):
    STRIPE = "STRIPE"
    BANK_TRANSFER = "BANK_TRANSFER"
    WIRE = "WIRE"
    ESCROW = "ESCROW"


class PaymentType(Enum):
    """How much of the escrow a buyer payment covers"""
    ADVANCE = "advance"
    BALANCE = "balance"
    FULL = "full"


class ApprovalStatus(Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class NotificationType(Enum):
    TRANSACTION_CREATED = "transaction_created"
    PAYMENT_RECEIVED = "payment_received"
    SHIPMENT_UPDATE = "shipment_update"
    DELIVERY_CONFIRMED = "delivery_confirmed"
    QUALITY_ASSESSMENT = "quality_assessment"
    DISPUTE_OPENED = "dispute_opened"
    ESCROW_RELEASED = "escrow_released"
    TRANSACTION_COMPLETED = "transaction_completed"
    TRANSACTION_CANCELLED = "transaction_cancelled"
    REFUND_ISSUED = "refund_issued"


# Transactions in these states free their quotation for a new transaction
TERMINAL_FOR_QUOTATION = (TransactionStatus.CANCELLED.value, TransactionStatus.REFUNDED.value)
ACTIVE_QUOTATION_PREDICATE = "status NOT IN ('cancelled', 'refunded')"


# ============================================================================
# CORE MODELS
# ============================================================================

class User(Base):
    """Platform participants"""
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False, default=UserRole.BUYER.value, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', role='{self.role}')>"


class Requirement(Base):
    """Buyer purchase requirement that suppliers quote against"""
    __tablename__ = 'requirements'

    id = Column(Integer, primary_key=True, autoincrement=True)
    buyer_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(20), default=RequirementStatus.OPEN.value, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    quotations = relationship("Quotation", back_populates="requirement")

    def __repr__(self):
        return f"<Requirement(id={self.id}, buyer_id={self.buyer_id}, status='{self.status}')>"


class Quotation(Base):
    """Supplier offer for a requirement"""
    __tablename__ = 'quotations'

    id = Column(Integer, primary_key=True, autoincrement=True)
    requirement_id = Column(Integer, ForeignKey('requirements.id'), nullable=False, index=True)
    supplier_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    total = Column(Numeric(38, 18), nullable=False)
    currency = Column(String(10), nullable=False, default="USD")
    lead_time_days = Column(Integer, nullable=False, default=0)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    status = Column(String(20), default=QuotationStatus.SUBMITTED.value, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    requirement = relationship("Requirement", back_populates="quotations")

    __table_args__ = (
        CheckConstraint('total > 0', name='ck_quotation_total_positive'),
        CheckConstraint('lead_time_days >= 0', name='ck_quotation_lead_time_non_negative'),
    )

    def __repr__(self):
        return f"<Quotation(id={self.id}, requirement_id={self.requirement_id}, total={self.total}, status='{self.status}')>"


class Transaction(Base):
    """Escrow-protected purchase created from an accepted quotation"""
    __tablename__ = 'transactions'

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Participants and source documents
    buyer_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    supplier_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    requirement_id = Column(Integer, ForeignKey('requirements.id'), nullable=False, index=True)
    quotation_id = Column(Integer, ForeignKey('quotations.id'), nullable=False, index=True)

    # Lifecycle
    status = Column(String(32), default=TransactionStatus.PAYMENT_PENDING.value, nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1, server_default="1")

    # Financial details
    amount = Column(Numeric(38, 18), nullable=False)
    currency = Column(String(10), nullable=False)
    payment_method = Column(String(20), nullable=False)
    advance_amount = Column(Numeric(38, 18), nullable=True)
    balance_amount = Column(Numeric(38, 18), nullable=True)
    payment_terms = Column(String(255), nullable=True)
    payment_intent_id = Column(String(128), nullable=True)
    payment_confirmed_at = Column(DateTime(timezone=True), nullable=True)

    # Shipping and delivery
    estimated_delivery = Column(DateTime(timezone=True), nullable=True)
    tracking_number = Column(String(100), nullable=True)
    shipping_provider = Column(String(100), nullable=True)
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    delivery_confirmed_at = Column(DateTime(timezone=True), nullable=True)
    delivery_location = Column(String(255), nullable=True)
    quality_reminder_sent_at = Column(DateTime(timezone=True), nullable=True)

    # Quality assessment
    quality_rating = Column(Integer, nullable=True)
    quality_notes = Column(Text, nullable=True)
    quality_issues = Column(JSON, nullable=True)
    quality_photos = Column(JSON, nullable=True)
    quality_assessed_at = Column(DateTime(timezone=True), nullable=True)
    quality_assessed_by_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    acceptance_reason = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    # Fund release
    funds_released_at = Column(DateTime(timezone=True), nullable=True)
    funds_released_by_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    release_reason = Column(String(255), nullable=True)
    platform_fee = Column(Numeric(38, 18), nullable=True)
    payout_amount = Column(Numeric(38, 18), nullable=True)
    release_transaction_id = Column(String(128), nullable=True, unique=True)

    # Important timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    escrow = relationship("EscrowTransaction", back_populates="transaction", uselist=False)

    __table_args__ = (
        # At most one live transaction per quotation; concurrent creates lose with IntegrityError
        Index(
            'uq_transactions_active_quotation',
            'quotation_id',
            unique=True,
            postgresql_where=text(ACTIVE_QUOTATION_PREDICATE),
            sqlite_where=text(ACTIVE_QUOTATION_PREDICATE),
        ),
        CheckConstraint('amount > 0', name='ck_transaction_amount_positive'),
        CheckConstraint(
            'quality_rating IS NULL OR (quality_rating >= 1 AND quality_rating <= 5)',
            name='ck_transaction_quality_rating_range'
        ),
    )

    def __repr__(self):
        return f"<Transaction(id={self.id}, quotation_id={self.quotation_id}, amount={self.amount}, status='{self.status}')>"


class EscrowTransaction(Base):
    """Custody record for a transaction's funds"""
    __tablename__ = 'escrow_transactions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(Integer, ForeignKey('transactions.id'), nullable=False, unique=True)

    total_amount = Column(Numeric(38, 18), nullable=False)
    held_amount = Column(Numeric(38, 18), nullable=False, default=0)
    currency = Column(String(10), nullable=False)
    status = Column(String(20), default=EscrowStatus.PENDING.value, nullable=False, index=True)

    # Condition flags mirrored from ReleaseCondition rows for quick reads
    delivery_confirmed = Column(Boolean, default=False, nullable=False)
    delivery_confirmed_at = Column(DateTime(timezone=True), nullable=True)
    quality_approved = Column(Boolean, default=False, nullable=False)
    quality_approved_at = Column(DateTime(timezone=True), nullable=True)
    documents_verified = Column(Boolean, default=False, nullable=False)
    documents_verified_at = Column(DateTime(timezone=True), nullable=True)

    auto_release_date = Column(DateTime(timezone=True), nullable=False, index=True)
    hold_date = Column(DateTime(timezone=True), nullable=True)
    release_date = Column(DateTime(timezone=True), nullable=True)
    refund_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    transaction = relationship("Transaction", back_populates="escrow")
    conditions = relationship(
        "ReleaseCondition", back_populates="escrow", order_by="ReleaseCondition.id"
    )

    __table_args__ = (
        CheckConstraint('held_amount >= 0', name='ck_escrow_held_non_negative'),
        CheckConstraint('held_amount <= total_amount', name='ck_escrow_held_within_total'),
    )

    def __repr__(self):
        return f"<EscrowTransaction(id={self.id}, transaction_id={self.transaction_id}, status='{self.status}')>"


class ReleaseCondition(Base):
    """Named precondition gating the supplier payout"""
    __tablename__ = 'release_conditions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    escrow_id = Column(Integer, ForeignKey('escrow_transactions.id'), nullable=False, index=True)
    type = Column(String(32), nullable=False)
    description = Column(String(255), nullable=False)
    satisfied = Column(Boolean, default=False, nullable=False)
    satisfied_at = Column(DateTime(timezone=True), nullable=True)
    satisfied_by_id = Column(Integer, ForeignKey('users.id'), nullable=True)

    escrow = relationship("EscrowTransaction", back_populates="conditions")

    __table_args__ = (
        UniqueConstraint('escrow_id', 'type', name='uq_release_condition_escrow_type'),
    )

    def __repr__(self):
        return f"<ReleaseCondition(escrow_id={self.escrow_id}, type='{self.type}', satisfied={self.satisfied})>"


class TransactionStatusHistory(Base):
    """Append-only audit trail of transaction status changes"""
    __tablename__ = 'transaction_status_history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(Integer, ForeignKey('transactions.id'), nullable=False, index=True)
    old_status = Column(String(32), nullable=True)  # NULL for the creation row
    new_status = Column(String(32), nullable=False)
    changed_by_id = Column(Integer, ForeignKey('users.id'), nullable=True)  # NULL for system actions
    reason = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    change_metadata = Column('metadata', JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)

    __table_args__ = (
        Index('ix_status_history_transaction_created', 'transaction_id', 'created_at'),
    )

    def __repr__(self):
        return f"<TransactionStatusHistory(transaction_id={self.transaction_id}, {self.old_status} -> {self.new_status})>"


class TransactionMilestone(Base):
    """Human-readable progress marker shown to buyer and supplier"""
    __tablename__ = 'transaction_milestones'

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(Integer, ForeignKey('transactions.id'), nullable=False, index=True)
    status = Column(String(32), nullable=False)
    description = Column(Text, nullable=False)
    actor = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<TransactionMilestone(transaction_id={self.transaction_id}, status='{self.status}')>"


class Notification(Base):
    """In-app notification; paired DISPUTE_OPENED rows also represent a dispute"""
    __tablename__ = 'notifications'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    type = Column(String(32), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    resource_type = Column(String(32), nullable=True)
    resource_id = Column(Integer, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_notifications_resource', 'resource_type', 'resource_id'),
    )

    def __repr__(self):
        return f"<Notification(id={self.id}, user_id={self.user_id}, type='{self.type}')>"


class ActivityLog(Base):
    """Best-effort user activity trail"""
    __tablename__ = 'activity_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=True, index=True)
    action = Column(String(64), nullable=False)
    resource_type = Column(String(32), nullable=True)
    resource_id = Column(Integer, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<ActivityLog(user_id={self.user_id}, action='{self.action}')>"
