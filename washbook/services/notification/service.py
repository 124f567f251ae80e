"""Notification consumer for booked orders.

Delivery is fire-and-forget from the booking side: nothing here can roll back
a booking. SMS goes out when a phone number is on file; otherwise the booking
is only recorded on the log channel.
"""

from datetime import datetime
from zoneinfo import ZoneInfo

from sqlalchemy import select

from washbook.common.config import settings
from washbook.common.events import ORDERS_BOOKED_TOPIC, EventEnvelope, consume_forever
from washbook.common.logging import logger
from washbook.common.metrics import duplicate_events_skipped_total
from washbook.services.notification.models import InboxEvent, NotificationLog


def booking_message(event: EventEnvelope, tz: ZoneInfo) -> str:
    payload = event.payload
    service = "Cleaning" if payload.get("service_type") == "CLEANING" else "Laundry pickup"
    slot_start = payload.get("slot_start")
    if not slot_start:
        return f"{service} booked. Order {event.aggregate_id[:8]}."
    local = datetime.fromisoformat(slot_start).astimezone(tz)
    return f"{service} booked for {local:%a %b %d, %I:%M %p}. Order {event.aggregate_id[:8]}."


class NotificationService:
    def __init__(self, session_factory, service_name: str = "notification") -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.tz = ZoneInfo(settings.service_timezone)

    def _inbox_seen(self, db, event_id: str) -> bool:
        return (
            db.execute(
                select(InboxEvent).where(
                    InboxEvent.event_id == event_id,
                    InboxEvent.consumed_by_service == self.service_name,
                )
            ).scalar_one_or_none()
            is not None
        )

    async def handle_booked(self, event: EventEnvelope) -> None:
        """Record one booking notification; redelivered events are skipped."""

        with self.session_factory() as db:
            if self._inbox_seen(db, event.event_id):
                logger.info("duplicate event skipped topic=%s event_id=%s", event.event_type, event.event_id)
                duplicate_events_skipped_total.labels(service=self.service_name, topic=event.event_type).inc()
                return
            phone = event.payload.get("phone")
            channel = "sms" if phone else "log"
            message = booking_message(event, self.tz)
            db.add(NotificationLog(order_id=event.aggregate_id, channel=channel, recipient=phone, message=message))
            db.add(InboxEvent(event_id=event.event_id, consumed_by_service=self.service_name))
            db.commit()
        logger.info("booking_notification channel=%s order_id=%s", channel, event.aggregate_id)

    async def start_consumers(self) -> None:
        await consume_forever(ORDERS_BOOKED_TOPIC, "notification-orders-booked", self.handle_booked)
