"""
CinemaRwa Monetization Core - Database Schema
=============================================

Schema for the monetization and access subsystem:
- Users with creator balances and subscription state
- Content (movies, series, episodes) with prices and series pricing tiers
- Payments from mobile money (Lanari Pay) and cards (Stripe)
- Entitlements granting time-bounded access
- Withdrawals (manual creator payouts and automatic split tracking)
- Outbox and webhook ledger for reliable asynchronous processing

All amounts are stored as Numeric; balances are never allowed below zero.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text, JSON,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, func, text
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


MONEY = Numeric(18, 2)
RATE = Numeric(18, 6)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class Currency(Enum):
    """Currencies accepted at the API boundary; RWF is the settlement currency"""
    RWF = "RWF"
    USD = "USD"
    EUR = "EUR"
    GHS = "GHS"
    XOF = "XOF"


class UserRole(Enum):
    VIEWER = "viewer"
    FILMMAKER = "filmmaker"
    ADMIN = "admin"


class PayoutMethod(Enum):
    MOMO = "momo"
    BANK = "bank"
    CARD_PROCESSOR = "card-processor"
    PAYPAL = "paypal"


class ContentKind(Enum):
    MOVIE = "movie"
    SERIES = "series"
    EPISODE = "episode"


class ContentStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AccessPeriod(Enum):
    """Lifetime of an entitlement"""
    ONE_TIME = "one-time"
    HOURS_24 = "24h"
    DAYS_7 = "7d"
    DAYS_30 = "30d"
    DAYS_90 = "90d"
    DAYS_180 = "180d"
    DAYS_365 = "365d"

    @property
    def days(self) -> Optional[int]:
        return ACCESS_PERIOD_DAYS.get(self)


ACCESS_PERIOD_DAYS = {
    AccessPeriod.HOURS_24: 1,
    AccessPeriod.DAYS_7: 7,
    AccessPeriod.DAYS_30: 30,
    AccessPeriod.DAYS_90: 90,
    AccessPeriod.DAYS_180: 180,
    AccessPeriod.DAYS_365: 365,
}


class PaymentKind(Enum):
    MOVIE_WATCH = "movie_watch"
    MOVIE_DOWNLOAD = "movie_download"
    SERIES_ACCESS = "series_access"
    SERIES_EPISODE = "series_episode"
    SUBSCRIPTION_UPGRADE = "subscription_upgrade"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"

    @property
    def requires_owner(self) -> bool:
        return self not in SUBSCRIPTION_KINDS


SUBSCRIPTION_KINDS = frozenset({PaymentKind.SUBSCRIPTION_UPGRADE, PaymentKind.SUBSCRIPTION_RENEWAL})


class PaymentMethod(Enum):
    MOMO = "momo"
    CARD = "card"


class PaymentProvider(Enum):
    LANARI_PAY = "lanari_pay"
    STRIPE = "stripe"
    INTERNAL = "internal"


class PaymentState(Enum):
    """Payment lifecycle: pending -> succeeded | failed (terminal)"""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SubscriptionPeriod(Enum):
    MONTH = "month"
    YEAR = "year"


class EntitlementScope(Enum):
    """Basis on which access is granted"""
    TITLE = "title"
    SERIES = "series"
    SUBSCRIPTION = "subscription"
    OWNER = "owner"
    FREE = "free"


class EntitlementState(Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    RENEWED = "renewed"


class WithdrawalKind(Enum):
    MANUAL_WITHDRAWAL = "manual_withdrawal"
    AUTOMATIC_PAYOUT = "automatic_payout"
    ADMIN_FEE = "admin_fee"


class WithdrawalState(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


class WebhookProvider(Enum):
    LANARI_PAY = "lanari_pay"
    STRIPE = "stripe"


class OutboxEventType(Enum):
    PAYMENT_CONFIRMATION_EMAIL = "payment_confirmation_email"
    WITHDRAWAL_STATUS_EMAIL = "withdrawal_status_email"


# ============================================================================
# VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class Subscription:
    """A user's platform subscription"""
    plan: str
    start_at: datetime
    end_at: datetime
    max_devices: int
    period: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        return now < self.end_at


# ============================================================================
# MODELS
# ============================================================================

class User(Base):
    """Viewer, filmmaker or admin account with creator balances"""
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(20), default=UserRole.VIEWER.value, nullable=False)
    preferred_language: Mapped[str] = mapped_column(String(5), default="en", nullable=False)

    # Payout destination for creators
    payout_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    payout_method: Mapped[str] = mapped_column(String(20), default=PayoutMethod.MOMO.value, nullable=False)

    # Creator balances (RWF)
    pending_balance: Mapped[Decimal] = mapped_column(MONEY, default=0, nullable=False)
    processing_balance: Mapped[Decimal] = mapped_column(MONEY, default=0, nullable=False)
    available_balance: Mapped[Decimal] = mapped_column(MONEY, default=0, nullable=False)
    total_earned: Mapped[Decimal] = mapped_column(MONEY, default=0, nullable=False)
    last_withdrawal_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Subscription state
    subscription_plan: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    subscription_period: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    subscription_start_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    subscription_end_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    max_devices: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    active_devices: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    contents: Mapped[List["Content"]] = relationship("Content", back_populates="owner")

    __table_args__ = (
        CheckConstraint('pending_balance >= 0', name='ck_users_pending_balance_positive'),
        CheckConstraint('processing_balance >= 0', name='ck_users_processing_balance_positive'),
        CheckConstraint('available_balance >= 0', name='ck_users_available_balance_positive'),
        CheckConstraint('total_earned >= 0', name='ck_users_total_earned_positive'),
    )

    @property
    def subscription(self) -> Optional[Subscription]:
        if not self.subscription_plan or not self.subscription_end_at:
            return None
        return Subscription(
            plan=self.subscription_plan,
            start_at=self.subscription_start_at or self.subscription_end_at,
            end_at=self.subscription_end_at,
            max_devices=self.max_devices,
            period=self.subscription_period,
        )

    def __repr__(self):
        return f"<User(id={self.id}, role={self.role})>"


class Content(Base):
    """Movie, series or episode with its pricing"""
    __tablename__ = 'contents'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('users.id'), nullable=True, index=True)
    parent_series_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('contents.id'), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), default=ContentStatus.APPROVED.value, nullable=False)

    currency: Mapped[str] = mapped_column(String(3), default=Currency.RWF.value, nullable=False)
    view_price: Mapped[Decimal] = mapped_column(MONEY, default=0, nullable=False)
    download_price: Mapped[Decimal] = mapped_column(MONEY, default=0, nullable=False)
    pricing_tiers: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)  # access period -> price
    royalty_percent: Mapped[int] = mapped_column(Integer, default=70, nullable=False)

    total_revenue: Mapped[Decimal] = mapped_column(MONEY, default=0, nullable=False)
    total_views: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    season_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    episode_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    owner: Mapped[Optional["User"]] = relationship("User", back_populates="contents")

    __table_args__ = (
        CheckConstraint('view_price >= 0', name='ck_contents_view_price_positive'),
        CheckConstraint('download_price >= 0', name='ck_contents_download_price_positive'),
        CheckConstraint('royalty_percent >= 0 AND royalty_percent <= 100', name='ck_contents_royalty_range'),
        Index('ix_contents_series_status', 'parent_series_id', 'status'),
    )

    def tier_price(self, period: AccessPeriod) -> Optional[Decimal]:
        """Declared series price for an access period, if any"""
        tiers = self.pricing_tiers or {}
        raw = tiers.get(period.value)
        if raw is None:
            return None
        return Decimal(str(raw))

    def __repr__(self):
        return f"<Content(id={self.id}, kind={self.kind}, title={self.title!r})>"


class Payment(Base):
    """Customer payment for a title, series or subscription"""
    __tablename__ = 'payments'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    content_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('contents.id'), nullable=True, index=True)
    series_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('contents.id'), nullable=True)
    plan_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)

    # Settlement amount (RWF) plus the originals for audit
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default=Currency.RWF.value, nullable=False)
    original_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    original_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    exchange_rate: Mapped[Decimal] = mapped_column(RATE, default=1, nullable=False)

    # Distribution
    creator_share: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    platform_share: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    creator_percentage: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_percentage: Mapped[int] = mapped_column(Integer, nullable=False)
    owner_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('users.id'), nullable=True, index=True)

    # Access being purchased
    access_period: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    subscription_period: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Lifecycle
    state: Mapped[str] = mapped_column(String(20), default=PaymentState.PENDING.value, nullable=False, index=True)
    reference_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True, index=True)
    client_reference: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    gateway_tx_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payer_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    payer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Exactly-once guards
    ledger_applied: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    side_effects_applied: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    payment_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    content: Mapped[Optional["Content"]] = relationship("Content", foreign_keys=[content_id])

    __table_args__ = (
        CheckConstraint('amount >= 0', name='ck_payments_amount_positive'),
        CheckConstraint('creator_share >= 0', name='ck_payments_creator_share_positive'),
        CheckConstraint('platform_share >= 0', name='ck_payments_platform_share_positive'),
        Index('ix_payments_state_method_created', 'state', 'method', 'created_at'),
    )

    @property
    def payment_kind(self) -> PaymentKind:
        return PaymentKind(self.kind)

    @property
    def is_terminal(self) -> bool:
        return self.state in (PaymentState.SUCCEEDED.value, PaymentState.FAILED.value)

    def __repr__(self):
        return f"<Payment(id={self.id}, kind={self.kind}, state={self.state}, amount={self.amount})>"


class Entitlement(Base):
    """Access grant for a user on a piece of content"""
    __tablename__ = 'entitlements'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    content_id: Mapped[int] = mapped_column(Integer, ForeignKey('contents.id'), nullable=False, index=True)
    series_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('contents.id'), nullable=True, index=True)
    scope: Mapped[str] = mapped_column(String(20), nullable=False)
    period: Mapped[str] = mapped_column(String(10), nullable=False)
    price_paid: Mapped[Decimal] = mapped_column(MONEY, default=0, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default=Currency.RWF.value, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    payment_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('payments.id'), nullable=True, index=True)
    previous_entitlement_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('entitlements.id'), nullable=True)
    state: Mapped[str] = mapped_column(String(20), default=EntitlementState.ACTIVE.value, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        Index(
            'uq_entitlements_active_title',
            'user_id', 'content_id',
            unique=True,
            postgresql_where=text("scope = 'title' AND state = 'active'"),
            sqlite_where=text("scope = 'title' AND state = 'active'"),
        ),
        Index('ix_entitlements_user_content_state', 'user_id', 'content_id', 'state'),
        Index('ix_entitlements_user_series_state', 'user_id', 'series_id', 'state'),
    )

    def is_active(self, now: datetime) -> bool:
        if self.state != EntitlementState.ACTIVE.value:
            return False
        return self.expires_at is None or now < self.expires_at

    def __repr__(self):
        return f"<Entitlement(id={self.id}, user={self.user_id}, content={self.content_id}, scope={self.scope})>"


class Withdrawal(Base):
    """Creator payout request or automatic split tracking record"""
    __tablename__ = 'withdrawals'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default=Currency.RWF.value, nullable=False)
    method: Mapped[str] = mapped_column(String(20), default=PayoutMethod.MOMO.value, nullable=False)
    destination: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    kind: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    state: Mapped[str] = mapped_column(String(20), default=WithdrawalState.PENDING.value, nullable=False, index=True)

    payment_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('payments.id'), nullable=True, index=True)
    gateway_ref: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    approval_claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Disbursement sent but its outcome unknown; held until the gateway confirms
    payout_unconfirmed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    requested_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    payment: Mapped[Optional["Payment"]] = relationship("Payment")

    __table_args__ = (
        UniqueConstraint('payment_id', 'kind', name='uq_withdrawals_payment_kind'),
        CheckConstraint('amount >= 0', name='ck_withdrawals_amount_positive'),
        Index('ix_withdrawals_user_state', 'user_id', 'state'),
    )

    def __repr__(self):
        return f"<Withdrawal(id={self.id}, kind={self.kind}, state={self.state}, amount={self.amount})>"


class OutboxEvent(Base):
    """Outbox pattern for reliable event processing"""
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True)
    event_type = Column(String(50), nullable=False)
    aggregate_id = Column(String(100), nullable=False)
    event_data = Column(JSON, nullable=False)
    processed = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    processed_at = Column(DateTime, nullable=True)

    retry_count = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        Index('ix_outbox_events_processed', 'processed'),
        Index('ix_outbox_events_event_type', 'event_type'),
        Index('ix_outbox_events_aggregate_id', 'aggregate_id'),
        Index('ix_outbox_events_created_at', 'created_at'),
    )

    def __repr__(self):
        return f"<OutboxEvent(event_type={self.event_type}, aggregate_id={self.aggregate_id}, processed={self.processed})>"


class WebhookEventLedger(Base):
    """Every inbound gateway webhook, kept for idempotency and audit"""
    __tablename__ = "webhook_event_ledger"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_provider = Column(String(50), nullable=False)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=True)
    reference = Column(String(255), nullable=True, index=True)
    status = Column(String(50), nullable=False, default="received")
    payload = Column(JSON, nullable=True)
    processing_result = Column(Text, nullable=True)
    duplicate_count = Column(Integer, default=0, nullable=False)

    received_at = Column(DateTime, server_default=func.now(), nullable=False)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint('event_provider', 'event_id', name='uq_webhook_event_provider_id'),
        Index('ix_webhook_event_ledger_status', 'status'),
    )

    def __repr__(self):
        return f"<WebhookEventLedger(provider={self.event_provider}, event_id={self.event_id}, status={self.status})>"
