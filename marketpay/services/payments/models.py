"""Payment service database models.

This DB is the source of truth for payment and refund state, the transition
timeline, webhook deliveries and the service-local outbox. `orders` belongs to
the storefront; only its payment status column is written here.
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column

from marketpay.common.db import Base, JSONType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# A payment blocks new attempts for its order until it fails, is cancelled or is
# fully refunded.
ACTIVE_PAYMENT_CLAUSE = text(
    "status NOT IN ('failed', 'cancelled', 'refunded') AND refund_status <> 'fully_refunded'"
)


class Payment(Base):
    """Current state of one payment attempt for an order."""

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("total_refunded + refund_reserved <= amount", name="ck_payments_refund_le_amount"),
        Index(
            "uq_payments_active_order",
            "order_id",
            unique=True,
            postgresql_where=ACTIVE_PAYMENT_CLAUSE,
            sqlite_where=ACTIVE_PAYMENT_CLAUSE,
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id: Mapped[str] = mapped_column(String, index=True)
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    payment_method: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, index=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processor_reference: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    processor_response: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    last_provider_status: Mapped[str | None] = mapped_column(String, nullable=True)
    total_refunded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Held by refunds sent to a provider and not yet settled.
    refund_reserved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refund_status: Mapped[str] = mapped_column(String, nullable=False, default="none")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    customer_info: Mapped[dict] = mapped_column(JSONType, default=dict)
    # `metadata` is reserved on declarative classes.
    payment_metadata: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )


class PaymentRefund(Base):
    """One refund request against a payment."""

    __tablename__ = "payment_refunds"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    payment_id: Mapped[str] = mapped_column(ForeignKey("payments.id"), index=True)
    amount: Mapped[int] = mapped_column(Integer)
    reason: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="pending")
    processor_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    processor_response: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class PaymentTimeline(Base):
    """Immutable audit trail of every status transition."""

    __tablename__ = "payment_timeline"

    timeline_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    payment_id: Mapped[str] = mapped_column(ForeignKey("payments.id"), index=True)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    event_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class WebhookLog(Base):
    """One row per provider webhook delivery and what was done with it."""

    __tablename__ = "webhook_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    provider: Mapped[str] = mapped_column(String, index=True)
    event_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    payment_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    provider_status: Mapped[str | None] = mapped_column(String, nullable=True)
    outcome: Mapped[str] = mapped_column(String)
    payload: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class OutboxEvent(Base):
    """Events waiting to be published to Kafka."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Order(Base):
    """Storefront order; only `payment_status` is written by this service."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    payment_status: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, onupdate=utcnow)
