"""Booking flow around the payment setup saga.

Reserves capacity, runs the saga, hands capacity back when the saga fails, and
enqueues the `orders.booked` event once the order is ready. Also owns the
post-booking status changes (state-machine checked, version guarded).
"""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import update

from washbook.common.config import CommonSettings, settings
from washbook.common.db import utcnow
from washbook.common.errors import OrderConflictError, OrderNotFoundError, SlotUnavailableError
from washbook.common.events import ORDERS_BOOKED_TOPIC, EventEnvelope
from washbook.common.logging import logger, trace_id_ctx
from washbook.common.metrics import booking_requests_total
from washbook.common.outbox import enqueue_event
from washbook.common.state_machine import OrderStatus, ensure_transition
from washbook.services.booking.gateway import PaymentGateway
from washbook.services.booking.models import Order, OrderEvent, OutboxEvent
from washbook.services.booking.saga import PaymentSetupSaga
from washbook.services.booking.schemas import BookingParams
from washbook.services.capacity.service import CapacityService


@dataclass
class BookingResult:
    order: Order
    saga_id: str

    @property
    def requires_action(self) -> bool:
        return self.order.setup_status == "requires_action"

    @property
    def client_secret(self) -> str | None:
        return self.order.setup_client_secret


class BookingService:
    def __init__(
        self,
        session_factory,
        gateway: PaymentGateway,
        capacity: CapacityService,
        config: CommonSettings = settings,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.capacity = capacity
        self.config = config

    async def book(self, params: BookingParams) -> BookingResult:
        """Reserve the pickup slot, save the card, finalize the order."""

        booking_requests_total.labels(service=self.config.service_name).inc()
        slot = params.slot
        if not await self.capacity.reserve(slot.partner_id, params.service_type.value, slot.slot_start):
            raise SlotUnavailableError("The selected time slot is full. Please choose another slot.")

        saga = PaymentSetupSaga(self.session_factory, self.gateway, self.config)
        try:
            order = await saga.execute(params)
        except Exception:
            try:
                await self.capacity.release(slot.partner_id, params.service_type.value, slot.slot_start)
            except Exception:
                logger.exception("capacity_release_failed partner_id=%s slot_start=%s", slot.partner_id, slot.slot_start)
            raise

        self._enqueue_booked(order, params)
        return BookingResult(order=order, saga_id=saga.saga_id)

    def _enqueue_booked(self, order: Order, params: BookingParams) -> None:
        """Queue the booking notification. Failures are logged, never raised."""

        event = EventEnvelope(
            event_type=ORDERS_BOOKED_TOPIC,
            aggregate_id=order.id,
            trace_id=trace_id_ctx.get() or order.id,
            payload={
                "service_type": order.service_type,
                "slot_start": params.slot.slot_start.isoformat(),
                "slot_end": params.slot.slot_end.isoformat(),
                "total_cents": order.total_cents,
                "phone": params.contact_phone(),
                "guest_email": params.guest_email,
                "user_id": params.user_id,
            },
        )
        try:
            with self.session_factory() as db:
                enqueue_event(db, OutboxEvent, ORDERS_BOOKED_TOPIC, event)
                db.commit()
        except Exception:
            logger.exception("booking_notification_enqueue_failed order_id=%s", order.id)

    def get_order(self, order_id: str) -> Order:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return order

    def transition(self, order_id: str, to_status: str, reason: str, paid_at: datetime | None = None) -> Order:
        """Apply one validated status change with optimistic concurrency."""

        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise OrderNotFoundError(f"Order {order_id} not found")
            from_status, version = order.status, order.version
            if from_status == to_status:
                return order
            values = {"status": to_status, "version": version + 1, "updated_at": utcnow()}
            if paid_at is not None:
                values["paid_at"] = paid_at
            ensure_transition(
                from_status,
                to_status,
                order.service_type,
                {"paid_at": paid_at or order.paid_at, "saved_payment_method_id": order.saved_payment_method_id},
            )
            result = db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == from_status, Order.version == version)
                .values(**values)
            )
            if result.rowcount != 1:
                raise OrderConflictError(f"optimistic concurrency conflict for order {order_id} (expected version {version})")
            db.add(OrderEvent(order_id=order_id, from_status=from_status, to_status=to_status, reason=reason))
            db.commit()
            db.refresh(order)
        logger.info("order_transitioned order_id=%s from=%s to=%s reason=%s", order_id, from_status, to_status, reason)
        return order

    async def cancel(self, order_id: str, reason: str) -> Order:
        """Cancel the order and give its pickup capacity back."""

        current = self.get_order(order_id)
        if current.status == OrderStatus.CANCELED:
            return current
        order = self.transition(order_id, OrderStatus.CANCELED.value, reason)
        try:
            await self.capacity.release(order.partner_id, order.service_type, order.slot_start)
        except Exception:
            logger.exception("capacity_release_failed order_id=%s", order_id)
        return order
