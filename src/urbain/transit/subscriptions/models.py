"""
Subscription billing models and database tables.

Tables reference each other by foreign key only; no ORM relationships are
declared, so every read goes through an explicit repository function and
returns a plain value object (see ``mappers``).
"""

from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from urbain.transit.db import Base, TimestampMixin


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ============================================================================
# Enums
# ============================================================================


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    PENDING_PAYMENT = "PENDING_PAYMENT"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)

    @property
    def is_live(self) -> bool:
        """Counts against the one-per-plan rule (see ``LIVE_STATUSES``)."""
        return self in LIVE_STATUSES


# A PENDING_PAYMENT row holds the slot while its first charge is in flight
LIVE_STATUSES = (
    SubscriptionStatus.PENDING_PAYMENT,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAUSED,
)


class PaymentStatus(str, Enum):
    """Payment attempt status. PENDING is written before the gateway call."""

    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self != PaymentStatus.PENDING


class PaymentKind(str, Enum):
    """Money direction of a payment row."""

    CHARGE = "CHARGE"
    REFUND = "REFUND"


class PaymentPurpose(str, Enum):
    """Why a payment row exists."""

    INITIAL = "INITIAL"
    RENEWAL = "RENEWAL"
    REFUND = "REFUND"


class PaymentMethod(str, Enum):
    """Payment instrument."""

    CARD = "CARD"
    MOBILE_MONEY = "MOBILE_MONEY"
    WALLET = "WALLET"


class HistoryEventType(str, Enum):
    """Ledger event types."""

    CREATED = "CREATED"
    ACTIVATED = "ACTIVATED"
    CREATION_FAILED = "CREATION_FAILED"
    RENEWED = "RENEWED"
    RENEWAL_FAILED = "RENEWAL_FAILED"
    PAUSED = "PAUSED"
    RESUMED = "RESUMED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    AUTO_CANCELLED = "AUTO_CANCELLED"
    PAYMENT_METHOD_UPDATED = "PAYMENT_METHOD_UPDATED"


def _live_subscription_clause() -> str:
    statuses = ", ".join(f"'{s.value}'" for s in LIVE_STATUSES)
    return f"status IN ({statuses}) AND deleted_at IS NULL"


def _enum_column(enum_cls: type[Enum], length: int = 32) -> SAEnum:
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
    )


# ============================================================================
# Database tables
# ============================================================================


class PlanTable(TimestampMixin, Base):
    """SQLAlchemy table for transit plans."""

    __tablename__ = "transit_plans"

    plan_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    features: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    duration_days: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (Index("ix_transit_plans_active", "is_active"),)


class SubscriptionTable(TimestampMixin, Base):
    """SQLAlchemy table for user subscriptions."""

    __tablename__ = "transit_subscriptions"

    subscription_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    plan_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("transit_plans.plan_id"), nullable=False
    )

    status: Mapped[SubscriptionStatus] = mapped_column(
        _enum_column(SubscriptionStatus), nullable=False
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    next_billing_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    amount_paid: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Stored payment method
    payment_method: Mapped[PaymentMethod] = mapped_column(
        _enum_column(PaymentMethod), nullable=False, default=PaymentMethod.CARD
    )
    card_token: Mapped[str | None] = mapped_column(String(128), nullable=True)
    card_exp_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    card_exp_year: Mapped[int | None] = mapped_column(Integer, nullable=True)

    qr_code_data: Mapped[str | None] = mapped_column(Text, nullable=True)

    # First failed renewal attempt of the current cycle; drives the grace window
    renewal_failed_at: Mapped[date | None] = mapped_column(Date, nullable=True)
    # Sweep claim, see BillingScheduler
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_transit_subscriptions_user", "user_id"),
        Index("ix_transit_subscriptions_user_plan_status", "user_id", "plan_id", "status"),
        Index("ix_transit_subscriptions_due", "status", "auto_renew", "next_billing_date"),
        Index("ix_transit_subscriptions_deleted_at", "deleted_at"),
        # One live subscription per (user, plan) across processes
        Index(
            "uq_transit_subscriptions_live",
            "user_id",
            "plan_id",
            unique=True,
            sqlite_where=text(_live_subscription_clause()),
            postgresql_where=text(_live_subscription_clause()),
        ),
    )


class PaymentTable(Base):
    """SQLAlchemy table for payment attempts (one row per attempt)."""

    __tablename__ = "transit_payments"

    payment_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    subscription_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("transit_subscriptions.subscription_id"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus), nullable=False, default=PaymentStatus.PENDING
    )
    kind: Mapped[PaymentKind] = mapped_column(
        _enum_column(PaymentKind), nullable=False, default=PaymentKind.CHARGE
    )
    purpose: Mapped[PaymentPurpose] = mapped_column(_enum_column(PaymentPurpose), nullable=False)
    method: Mapped[PaymentMethod] = mapped_column(_enum_column(PaymentMethod), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    # Key sent to the provider; retries of a timed-out attempt reuse it
    gateway_key: Mapped[str] = mapped_column(String(255), nullable=False)
    external_txn_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    refunded_payment_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("transit_payments.payment_id"), nullable=True
    )
    refunded_external_txn_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_transient: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    billing_cycle_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    # Card token kept on PENDING rows only, so a crashed attempt can be re-driven
    card_token: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_transit_payments_subscription", "subscription_id"),
        Index("ix_transit_payments_status", "status"),
        Index("ix_transit_payments_external_txn", "external_txn_id"),
        Index("ix_transit_payments_refunded", "refunded_payment_id"),
    )


class SubscriptionHistoryTable(Base):
    """SQLAlchemy table for the append-only subscription ledger."""

    __tablename__ = "transit_subscription_history"

    # Insertion order; timestamps can collide under a frozen clock
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True, default=_new_id)
    subscription_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("transit_subscriptions.subscription_id"), nullable=False
    )
    old_status: Mapped[SubscriptionStatus | None] = mapped_column(
        _enum_column(SubscriptionStatus), nullable=True
    )
    new_status: Mapped[SubscriptionStatus] = mapped_column(
        _enum_column(SubscriptionStatus), nullable=False
    )
    event_type: Mapped[HistoryEventType] = mapped_column(
        _enum_column(HistoryEventType), nullable=False
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    __table_args__ = (
        Index("ix_transit_history_subscription", "subscription_id"),
        Index("ix_transit_history_type", "event_type"),
        Index("ix_transit_history_timestamp", "timestamp"),
    )


# ============================================================================
# Value objects
# ============================================================================


class ValueObject(BaseModel):
    """Immutable snapshot built from a table row."""

    model_config = ConfigDict(frozen=True, from_attributes=True)


class Plan(ValueObject):
    """Read-only plan definition."""

    plan_id: str
    code: str
    name: str
    description: str | None = None
    features: list[str] = Field(default_factory=list)
    price: Decimal
    currency: str
    duration_days: int
    is_active: bool


class SubscriptionSnapshot(ValueObject):
    """Subscription state as returned by every public operation."""

    subscription_id: str
    user_id: str
    plan_id: str
    status: SubscriptionStatus
    start_date: date
    end_date: date
    next_billing_date: date | None = None
    amount_paid: Decimal
    auto_renew: bool
    payment_method: PaymentMethod
    card_last4: str | None = None
    qr_code_data: str | None = None
    renewal_failed_at: date | None = None
    version: int
    deleted_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PaymentRecord(ValueObject):
    """A single payment attempt."""

    payment_id: str
    subscription_id: str
    amount: Decimal
    currency: str
    status: PaymentStatus
    kind: PaymentKind
    purpose: PaymentPurpose
    method: PaymentMethod
    idempotency_key: str
    gateway_key: str
    external_txn_id: str | None = None
    refunded_payment_id: str | None = None
    refunded_external_txn_id: str | None = None
    reason: str | None = None
    failure_reason: str | None = None
    failure_transient: bool = False
    billing_cycle_start: date | None = None
    created_at: datetime
    completed_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == PaymentStatus.SUCCEEDED


class HistoryEvent(ValueObject):
    """A single ledger entry."""

    event_id: str
    subscription_id: str
    old_status: SubscriptionStatus | None = None
    new_status: SubscriptionStatus
    event_type: HistoryEventType
    timestamp: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


__all__ = [
    "LIVE_STATUSES",
    "HistoryEvent",
    "HistoryEventType",
    "PaymentKind",
    "PaymentMethod",
    "PaymentPurpose",
    "PaymentRecord",
    "PaymentStatus",
    "PaymentTable",
    "Plan",
    "PlanTable",
    "SubscriptionHistoryTable",
    "SubscriptionSnapshot",
    "SubscriptionStatus",
    "SubscriptionTable",
]
