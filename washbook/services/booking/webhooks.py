"""Setup intent outcomes reported by Stripe webhooks.

A booking whose card needed a customer challenge is finalized in
`pending_pickup` with `setup_status="requires_action"`. Stripe reports how the
challenge ended: `setup_intent.succeeded` marks the card saved, and
`setup_intent.setup_failed` stores the classified error and cancels the
order, which hands its slot back. Deliveries are recorded by event id, so a
redelivered event is acknowledged without being applied twice.
"""

from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from washbook.common.config import CommonSettings, settings
from washbook.common.db import utcnow
from washbook.common.errors import OrderConflictError
from washbook.common.logging import log_context, logger
from washbook.common.metrics import stripe_webhook_events_total
from washbook.common.payment_errors import log_payment_error
from washbook.common.state_machine import is_cancellable
from washbook.services.booking.models import Order, StripeWebhookEvent
from washbook.services.booking.service import BookingService
from washbook.services.booking.stripe_gateway import setup_error_to_gateway_error

SETUP_SUCCEEDED = "setup_intent.succeeded"
SETUP_FAILED = "setup_intent.setup_failed"


class SetupIntentWebhooks:
    def __init__(self, session_factory, bookings: BookingService, config: CommonSettings = settings) -> None:
        self.session_factory = session_factory
        self.bookings = bookings
        self.config = config

    async def handle(self, event: dict[str, Any]) -> str:
        """Apply one verified event and return what happened to it."""

        event_id, event_type = event["id"], event["type"]
        with self.session_factory() as db:
            if db.get(StripeWebhookEvent, event_id) is not None:
                logger.info("stripe_webhook_duplicate event_id=%s type=%s", event_id, event_type)
                return "duplicate"

        intent = (event.get("data") or {}).get("object") or {}
        with log_context(event_id=event_id):
            if event_type == SETUP_SUCCEEDED:
                outcome = self._setup_succeeded(intent)
            elif event_type == SETUP_FAILED:
                outcome = await self._setup_failed(intent)
            else:
                outcome = "ignored"
            self._record(event_id, event_type, outcome, intent)
        stripe_webhook_events_total.labels(
            service=self.config.service_name, event_type=event_type, outcome=outcome
        ).inc()
        logger.info("stripe_webhook_processed event_id=%s type=%s outcome=%s", event_id, event_type, outcome)
        return outcome

    @staticmethod
    def _order_for(db, setup_intent_id: str | None) -> Order | None:
        if not setup_intent_id:
            return None
        return db.execute(select(Order).where(Order.setup_intent_id == setup_intent_id)).scalars().first()

    @staticmethod
    def _write(db, order: Order, **values: Any) -> None:
        result = db.execute(
            update(Order)
            .where(Order.id == order.id, Order.version == order.version)
            .values(version=order.version + 1, updated_at=utcnow(), **values)
        )
        if result.rowcount != 1:
            raise OrderConflictError(f"order {order.id} changed while applying a setup webhook")

    def _setup_succeeded(self, intent: dict[str, Any]) -> str:
        with self.session_factory() as db:
            order = self._order_for(db, intent.get("id"))
            if order is None:
                logger.warning("stripe_webhook_order_not_found setup_intent_id=%s", intent.get("id"))
                return "order_not_found"
            values: dict[str, Any] = {
                "setup_status": "succeeded",
                "setup_client_secret": None,
                "setup_error_code": None,
                "setup_error_message": None,
                "payment_method_saved_at": utcnow(),
            }
            if isinstance(intent.get("payment_method"), str):
                values["saved_payment_method_id"] = intent["payment_method"]
            self._write(db, order, **values)
            db.commit()
        logger.info("setup_intent_succeeded order_id=%s setup_intent_id=%s", order.id, intent.get("id"))
        return "setup_succeeded"

    async def _setup_failed(self, intent: dict[str, Any]) -> str:
        with self.session_factory() as db:
            order = self._order_for(db, intent.get("id"))
            if order is None:
                logger.warning("stripe_webhook_order_not_found setup_intent_id=%s", intent.get("id"))
                return "order_not_found"
            classified = log_payment_error(
                setup_error_to_gateway_error(intent.get("last_setup_error")),
                order.id,
                "setup_intent_webhook",
                setup_intent_id=intent.get("id"),
            )
            self._write(
                db,
                order,
                setup_status="failed",
                setup_client_secret=None,
                setup_error_code=classified.code or classified.type.value,
                setup_error_message=classified.user_message,
            )
            db.commit()
            order_id, status = order.id, order.status

        if not is_cancellable(status):
            logger.warning("setup_failed_order_kept order_id=%s status=%s", order_id, status)
            return "setup_failed"
        await self.bookings.cancel(order_id, f"card_setup_failed:{classified.type.value}")
        return "order_canceled"

    def _record(self, event_id: str, event_type: str, outcome: str, intent: dict[str, Any]) -> None:
        with self.session_factory() as db:
            db.add(StripeWebhookEvent(event_id=event_id, event_type=event_type, outcome=outcome, payload=intent))
            try:
                db.commit()
            except IntegrityError:
                # A concurrent delivery of the same event recorded it first.
                db.rollback()
                logger.info("stripe_webhook_already_recorded event_id=%s", event_id)
