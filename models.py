"""
Creator Marketplace Settlement - Database Schema
================================================

Schema for the order / escrow / payout settlement engine:
- Orders created from accepted campaign agreements
- Stripe payment records and the webhook idempotency ledger
- Escrow holds per agreement and per-creator balances
- Creator withdrawal requests processed by admins

Campaigns, agreements and submissions are owned by other parts of the
marketplace; only the columns the settlement engine reads or writes are mapped.
"""

from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, func, text, JSON
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# Monetary columns: two decimal places, MAD by default
MONEY = Numeric(12, 2)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class UserRole(Enum):
    """Caller roles carried in the bearer token"""
    BRAND = "brand"
    CREATOR = "creator"
    ADMIN = "admin"


class AgreementStatus(Enum):
    """Campaign agreement states (only ACCEPTED agreements can be ordered)"""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class OrderStatus(Enum):
    """Order lifecycle states"""
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentStatus(Enum):
    """Gateway payment record states"""
    PENDING = "PENDING"
    CAPTURED = "CAPTURED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class WebhookEventStatus(Enum):
    """Webhook idempotency marker states"""
    PENDING = "PENDING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


class EscrowStatus(Enum):
    """Agreement escrow hold states"""
    ACTIVE = "active"
    RELEASED = "released"
    REFUNDED = "refunded"


class WithdrawalStatus(Enum):
    """Creator payout request states"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"


# Payout requests that still hold a reservation on the creator balance
ACTIVE_WITHDRAWAL_STATUSES = (
    WithdrawalStatus.PENDING.value,
    WithdrawalStatus.APPROVED.value,
    WithdrawalStatus.PROCESSING.value,
)


class SubmissionStatus(Enum):
    """Content submission review states"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REVISION_REQUESTED = "revision_requested"


class LedgerEntryType(Enum):
    """Creator balance mutation kinds"""
    ESCROW_RELEASE = "escrow_release"
    WITHDRAWAL_RESERVE = "withdrawal_reserve"
    WITHDRAWAL_RESTORE = "withdrawal_restore"
    WITHDRAWAL_COMPLETE = "withdrawal_complete"


# ============================================================================
# MARKETPLACE ENTITIES (read by the settlement engine)
# ============================================================================

class Campaign(Base):
    """Brand campaign"""
    __tablename__ = 'campaigns'

    id = Column(Integer, primary_key=True, autoincrement=True)
    brand_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class CampaignAgreement(Base):
    """Agreement between a brand and a creator for one campaign"""
    __tablename__ = 'campaign_agreements'

    id = Column(Integer, primary_key=True, autoincrement=True)
    campaign_id = Column(Integer, ForeignKey('campaigns.id'), nullable=False, index=True)
    brand_id = Column(String(64), nullable=False, index=True)
    creator_id = Column(String(64), nullable=False, index=True)
    price = Column(MONEY, nullable=False)
    status = Column(String(20), default=AgreementStatus.PENDING.value, nullable=False)

    # Settlement back-references
    order_id = Column(Integer, nullable=True)
    payment_status = Column(String(20), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class Submission(Base):
    """Creator video submission for a campaign"""
    __tablename__ = 'submissions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    campaign_id = Column(Integer, ForeignKey('campaigns.id'), nullable=False, index=True)
    creator_id = Column(String(64), nullable=False, index=True)
    watermarked_url = Column(Text, nullable=False)
    original_url = Column(Text, nullable=False)
    watermark_removed = Column(Boolean, default=False, nullable=False)
    status = Column(String(30), default=SubmissionStatus.PENDING.value, nullable=False)
    submitted_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)


# ============================================================================
# SETTLEMENT ENTITIES
# ============================================================================

class Order(Base):
    """Brand order paying a creator for one agreement"""
    __tablename__ = 'orders'

    id = Column(Integer, primary_key=True, autoincrement=True)
    brand_id = Column(String(64), nullable=False, index=True)
    creator_id = Column(String(64), nullable=False, index=True)
    campaign_id = Column(Integer, nullable=False, index=True)
    agreement_id = Column(Integer, ForeignKey('campaign_agreements.id'), nullable=False, unique=True)

    # Financial details
    amount = Column(MONEY, nullable=False)
    gateway_fee = Column(MONEY, nullable=False)
    total_charged = Column(MONEY, nullable=False)
    currency = Column(String(3), nullable=False, default="MAD")

    status = Column(String(20), default=OrderStatus.PENDING_PAYMENT.value, nullable=False, index=True)
    description = Column(Text, nullable=True)
    order_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_order_amount_positive'),
        CheckConstraint('gateway_fee >= 0', name='ck_order_fee_non_negative'),
        Index('ix_orders_campaign_creator_status', 'campaign_id', 'creator_id', 'status'),
    )


class PaymentRecord(Base):
    """Gateway payment attempt for an order"""
    __tablename__ = 'payments'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=False, index=True)
    provider = Column(String(20), nullable=False, default="stripe")
    payment_intent_id = Column(String(255), nullable=False, unique=True)
    status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    fee = Column(MONEY, nullable=False)
    currency = Column(String(3), nullable=False, default="MAD")
    gateway_payload = Column(JSON, nullable=True)

    # Set when a newer checkout for the same order replaced this intent
    superseded = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class WebhookEvent(Base):
    """Webhook idempotency ledger: one row per provider event id"""
    __tablename__ = 'webhook_events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(20), nullable=False)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False)
    status = Column(String(20), default=WebhookEventStatus.PENDING.value, nullable=False, index=True)
    payload = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, default=1, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('provider', 'event_id', name='uq_webhook_event_provider_id'),
    )


class EscrowRecord(Base):
    """Funds held for one agreement between payment and content approval"""
    __tablename__ = 'agreement_escrow'

    id = Column(Integer, primary_key=True, autoincrement=True)
    agreement_id = Column(Integer, ForeignKey('campaign_agreements.id'), nullable=False, unique=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=False, index=True)
    brand_id = Column(String(64), nullable=False)
    creator_id = Column(String(64), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    status = Column(String(20), default=EscrowStatus.ACTIVE.value, nullable=False, index=True)
    platform_fee = Column(MONEY, nullable=True)
    net_amount = Column(MONEY, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    released_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_escrow_amount_positive'),
    )


class CreatorBalance(Base):
    """Per-creator balance with database-level non-negativity guarantees"""
    __tablename__ = 'creator_balances'

    id = Column(Integer, primary_key=True, autoincrement=True)
    creator_id = Column(String(64), nullable=False, unique=True)
    available = Column(MONEY, nullable=False, default=0)
    pending_withdrawal = Column(MONEY, nullable=False, default=0)
    total_earned = Column(MONEY, nullable=False, default=0)
    total_withdrawn = Column(MONEY, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint('available >= 0', name='ck_balance_available_non_negative'),
        CheckConstraint('pending_withdrawal >= 0', name='ck_balance_pending_non_negative'),
        CheckConstraint('total_earned >= 0', name='ck_balance_earned_non_negative'),
        CheckConstraint('total_withdrawn >= 0', name='ck_balance_withdrawn_non_negative'),
    )


class BalanceLedgerEntry(Base):
    """Append-only audit trail of creator balance mutations"""
    __tablename__ = 'balance_ledger'

    id = Column(Integer, primary_key=True, autoincrement=True)
    creator_id = Column(String(64), nullable=False, index=True)
    entry_type = Column(String(30), nullable=False)
    amount = Column(MONEY, nullable=False)
    reference = Column(String(100), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_balance_ledger_creator_created', 'creator_id', 'created_at'),
    )


class WithdrawalRequest(Base):
    """Creator payout request processed manually by an admin"""
    __tablename__ = 'payout_requests'

    id = Column(Integer, primary_key=True, autoincrement=True)
    creator_id = Column(String(64), nullable=False, index=True)
    requested_amount = Column(MONEY, nullable=False)
    bank_fee = Column(MONEY, nullable=False)
    net_amount = Column(MONEY, nullable=False)
    bank_details = Column(JSON, nullable=False)
    status = Column(String(20), default=WithdrawalStatus.PENDING.value, nullable=False, index=True)

    # Admin processing
    processed_by = Column(String(64), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    receipt_url = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint('requested_amount > 0', name='ck_payout_amount_positive'),
        CheckConstraint('net_amount > 0', name='ck_payout_net_positive'),
        # At most one request per creator may hold a balance reservation
        Index(
            'uq_payout_active_creator',
            'creator_id',
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'APPROVED', 'PROCESSING')"),
            sqlite_where=text("status IN ('PENDING', 'APPROVED', 'PROCESSING')"),
        ),
    )


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp for explicit lifecycle columns"""
    return datetime.now(timezone.utc)
