import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import BigInteger, Boolean, DateTime, Enum, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base


class PaymentOrderStatus(enum.Enum):
    pending = "PENDING"
    paid = "PAID"
    failed = "FAILED"
    cancelled = "CANCELLED"


class BillingState(enum.Enum):
    within_free_tier = "WITHIN_FREE_TIER"
    exceeds_free_tier_unblocked = "EXCEEDS_FREE_TIER_UNBLOCKED"
    billing_due_blocked = "BILLING_DUE_BLOCKED"
    paid_active = "PAID_ACTIVE"


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, unique=True
    )
    billing_day: Mapped[int] = mapped_column(Integer, nullable=False)
    next_billing_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_billed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


class BillingInfo(Base):
    __tablename__ = "billing_info"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, unique=True
    )
    payment_method_added: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payment_info_received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    services_blocked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    blocked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


class PaymentOrder(Base):
    __tablename__ = "payment_orders"
    __table_args__ = (Index("ix_payment_orders_owner_status", "owner_id", "status"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    external_order_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    provider_order_id: Mapped[str | None] = mapped_column(String(64))
    payment_session_id: Mapped[str | None] = mapped_column(String(255))
    payment_link: Mapped[str | None] = mapped_column(String(512))
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    cost_usd: Mapped[Decimal] = mapped_column(Numeric(14, 6), nullable=False, default=Decimal("0"))
    pinned_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[PaymentOrderStatus] = mapped_column(
        Enum(PaymentOrderStatus), default=PaymentOrderStatus.pending, nullable=False
    )
    billing_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    billing_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
