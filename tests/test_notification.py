"""Booking notification consumer and event dispatch."""

import asyncio
import json

from sqlalchemy import select

from washbook.common.events import ORDERS_BOOKED_TOPIC, EventEnvelope, dispatch
from washbook.common.logging import order_id_ctx, trace_id_ctx
from washbook.services.notification.models import NotificationLog
from washbook.services.notification.service import NotificationService


def _event(**payload) -> EventEnvelope:
    return EventEnvelope(
        event_type=ORDERS_BOOKED_TOPIC,
        aggregate_id="order-12345678",
        trace_id="trace-1",
        payload={"service_type": "LAUNDRY", "slot_start": "2030-01-07T15:00:00+00:00", **payload},
    )


def test_sms_when_phone_on_file(session_factory):
    service = NotificationService(session_factory)
    asyncio.run(service.handle_booked(_event(phone="+15551112222")))

    with session_factory() as db:
        row = db.execute(select(NotificationLog)).scalar_one()
    assert row.channel == "sms"
    assert row.recipient == "+15551112222"
    assert row.message == "Laundry pickup booked for Mon Jan 07, 10:00 AM. Order order-12."


def test_log_channel_without_phone(session_factory):
    service = NotificationService(session_factory)
    asyncio.run(service.handle_booked(_event(service_type="CLEANING", phone=None)))

    with session_factory() as db:
        row = db.execute(select(NotificationLog)).scalar_one()
    assert row.channel == "log"
    assert row.message.startswith("Cleaning booked for")


def test_redelivered_event_is_skipped(session_factory):
    service = NotificationService(session_factory)
    event = _event(phone="+15551112222")

    async def deliver_twice():
        await service.handle_booked(event)
        await service.handle_booked(event)

    asyncio.run(deliver_twice())

    with session_factory() as db:
        assert len(db.execute(select(NotificationLog)).scalars().all()) == 1


def test_dispatch_binds_correlation_ids():
    seen = {}

    async def handler(event: EventEnvelope) -> None:
        seen["trace"] = trace_id_ctx.get()
        seen["order"] = order_id_ctx.get()
        seen["event"] = event

    raw = json.dumps(_event().model_dump()).encode("utf-8")
    asyncio.run(dispatch(ORDERS_BOOKED_TOPIC, "test-group", raw, handler))

    assert seen["trace"] == "trace-1"
    assert seen["order"] == "order-12345678"
    assert seen["event"].aggregate_id == "order-12345678"
    assert trace_id_ctx.get() == ""
