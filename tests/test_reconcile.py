"""Sweep for payment setup sagas stuck in pending."""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select

from conftest import PARTNER_ID
from washbook.common.db import utcnow
from washbook.services.booking.models import Order, PaymentSaga
from washbook.services.booking.reconcile import SagaReconciler
from washbook.services.capacity.models import CapacitySlot


def _stuck_saga(session_factory, params, order_status=None) -> str:
    saga_id = str(uuid4())
    with session_factory() as db:
        db.add(PaymentSaga(id=saga_id, status="pending", params=params, steps=[]))
        if order_status:
            db.add(
                Order(
                    saga_id=saga_id,
                    user_id=None,
                    guest_name="Guest Person",
                    guest_email="guest@example.com",
                    guest_phone="+15551112222",
                    service_type="LAUNDRY",
                    service_category="washFold",
                    partner_id=PARTNER_ID,
                    slot_start=utcnow(),
                    slot_end=utcnow() + timedelta(hours=2),
                    status=order_status,
                    subtotal_cents=5000,
                    total_cents=5000,
                    saved_payment_method_id="pm_card_visa" if order_status == "pending_pickup" else None,
                )
            )
        db.commit()
    return saga_id


def _saga_status(session_factory, saga_id) -> str:
    with session_factory() as db:
        return db.get(PaymentSaga, saga_id).status


def _later():
    return utcnow() + timedelta(hours=1)


def test_discards_sagas_that_never_committed(session_factory, capacity, config, guest_params, first_window):
    asyncio.run(capacity.reserve(PARTNER_ID, "LAUNDRY", first_window[0]))
    saga_id = _stuck_saga(session_factory, guest_params.model_dump(mode="json"), order_status="pending")

    report = asyncio.run(SagaReconciler(session_factory, capacity, config).sweep(now=_later()))

    assert report.examined == 1
    assert report.abandoned == [saga_id]
    assert _saga_status(session_factory, saga_id) == "failed"
    with session_factory() as db:
        assert db.execute(select(Order)).first() is None
        reserved = db.execute(
            select(CapacitySlot.reserved_units).order_by(CapacitySlot.slot_start).limit(1)
        ).scalar_one()
    assert reserved == 0


def test_completes_sagas_whose_order_is_ready(session_factory, capacity, config, guest_params):
    saga_id = _stuck_saga(session_factory, guest_params.model_dump(mode="json"), order_status="pending_pickup")

    report = asyncio.run(SagaReconciler(session_factory, capacity, config).sweep(now=_later()))

    assert report.completed == [saga_id]
    assert _saga_status(session_factory, saga_id) == "completed"
    with session_factory() as db:
        assert db.execute(select(Order.status)).scalar_one() == "pending_pickup"


def test_recent_sagas_are_left_alone(session_factory, config, guest_params):
    saga_id = _stuck_saga(session_factory, guest_params.model_dump(mode="json"))

    report = asyncio.run(SagaReconciler(session_factory, config=config).sweep())

    assert report.examined == 0
    assert _saga_status(session_factory, saga_id) == "pending"


@pytest.mark.parametrize("order_status", ["canceled", "at_facility"])
def test_orders_past_draft_keep_their_capacity(
    session_factory, capacity, config, guest_params, first_window, order_status
):
    # Another booking holds one unit of the same window.
    asyncio.run(capacity.reserve(PARTNER_ID, "LAUNDRY", first_window[0]))
    saga_id = _stuck_saga(session_factory, guest_params.model_dump(mode="json"), order_status=order_status)

    report = asyncio.run(SagaReconciler(session_factory, capacity, config).sweep(now=_later()))

    assert report.completed == [saga_id]
    assert report.abandoned == []
    assert _saga_status(session_factory, saga_id) == "completed"
    with session_factory() as db:
        assert db.execute(select(Order.status)).scalar_one() == order_status
        reserved = db.execute(
            select(CapacitySlot.reserved_units).order_by(CapacitySlot.slot_start).limit(1)
        ).scalar_one()
    assert reserved == 1
