"""Booking database models.

This DB holds orders and their audit trail, customer profiles, payment setup
saga records, processed gateway webhooks, and the service-local outbox.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from washbook.common.db import Base, JSONType, utcnow
from washbook.common.state_machine import OrderStatus

_STATUS_VALUES = ", ".join(f"'{status.value}'" for status in OrderStatus)


class Order(Base):
    """One booking. Created by the payment setup saga in draft status."""

    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("total_cents >= subtotal_cents", name="ck_orders_total_gte_subtotal"),
        CheckConstraint(
            "user_id IS NULL OR (guest_name IS NULL AND guest_email IS NULL AND guest_phone IS NULL)",
            name="ck_orders_identity_exclusive",
        ),
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name="ck_orders_status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    saga_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    guest_name: Mapped[str | None] = mapped_column(String, nullable=True)
    guest_email: Mapped[str | None] = mapped_column(String, nullable=True)
    guest_phone: Mapped[str | None] = mapped_column(String, nullable=True)
    service_type: Mapped[str] = mapped_column(String, index=True)
    service_category: Mapped[str] = mapped_column(String)
    partner_id: Mapped[str] = mapped_column(String, index=True)
    slot_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    slot_end: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    delivery_slot_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivery_slot_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String, index=True)
    subtotal_cents: Mapped[int] = mapped_column(Integer)
    tax_cents: Mapped[int] = mapped_column(Integer, default=0)
    delivery_cents: Mapped[int] = mapped_column(Integer, default=0)
    total_cents: Mapped[int] = mapped_column(Integer)
    order_details: Mapped[dict] = mapped_column(JSONType, default=dict)
    address_snapshot: Mapped[dict] = mapped_column(JSONType, default=dict)
    setup_intent_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    saved_payment_method_id: Mapped[str | None] = mapped_column(String, nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_method_saved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    card_validated: Mapped[bool] = mapped_column(Boolean, default=False)
    setup_status: Mapped[str | None] = mapped_column(String, nullable=True)
    setup_client_secret: Mapped[str | None] = mapped_column(String, nullable=True)
    setup_error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    setup_error_message: Mapped[str | None] = mapped_column(String, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def is_guest(self) -> bool:
        return self.user_id is None


class OrderEvent(Base):
    """Audit trail of order status changes."""

    __tablename__ = "order_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    from_status: Mapped[str | None] = mapped_column(String, nullable=True)
    to_status: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class PaymentSaga(Base):
    """Progress record for one payment setup saga execution."""

    __tablename__ = "payment_sagas"
    __table_args__ = (
        CheckConstraint("status IN ('pending', 'completed', 'failed')", name="ck_payment_sagas_status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    type: Mapped[str] = mapped_column(String, default="payment_authorization")
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    params: Mapped[dict] = mapped_column(JSONType)
    steps: Mapped[list] = mapped_column(JSONType, default=list)
    error_message: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class OutboxEvent(Base):
    """Events waiting to be published to Kafka by the booking service."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class StripeWebhookEvent(Base):
    """Gateway webhook deliveries already handled; Stripe redelivers on any non-2xx."""

    __tablename__ = "stripe_webhook_events"

    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONType)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
