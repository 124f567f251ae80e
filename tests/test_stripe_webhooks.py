"""Stripe setup intent webhooks: signature checks and challenge outcomes."""

import hashlib
import hmac
import json
import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from conftest import CARD, GUEST, booking_payload
from washbook.services.booking.main import app, build_container
from washbook.services.booking.models import Order, OrderEvent, StripeWebhookEvent
from washbook.services.capacity.models import CapacitySlot

WEBHOOK_SECRET = "whsec_test_secret"


def _signed(event: dict, secret: str = WEBHOOK_SECRET) -> tuple[bytes, dict]:
    body = json.dumps(event).encode()
    timestamp = int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()
    return body, {"stripe-signature": f"t={timestamp},v1={digest}", "content-type": "application/json"}


def _event(event_type: str, setup_intent_id: str, event_id: str = "evt_1", **intent) -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": {"id": setup_intent_id, "object": "setup_intent", **intent}},
    }


def _reserved_units(session_factory) -> int:
    with session_factory() as db:
        return db.execute(
            select(CapacitySlot.reserved_units).order_by(CapacitySlot.slot_start).limit(1)
        ).scalar_one()


@pytest.fixture
def client(session_factory, gateway, capacity, config):
    config = config.model_copy(update={"stripe_webhook_secret": WEBHOOK_SECRET})
    app.state.container = build_container(session_factory=session_factory, gateway=gateway, config=config)
    return TestClient(app)


@pytest.fixture
def challenged_order(client, gateway, first_window) -> dict:
    """A guest booking left waiting on the customer's card challenge."""

    gateway.requires_action_for.add(CARD)
    resp = client.post("/payments/setup", json={**booking_payload(*first_window), **GUEST})
    assert resp.status_code == 201
    body = resp.json()
    assert body["requires_action"] is True
    return body


def _post(client, event: dict, secret: str = WEBHOOK_SECRET):
    body, headers = _signed(event, secret)
    return client.post("/webhooks/stripe", content=body, headers=headers)


def test_setup_succeeded_marks_card_saved(client, session_factory, challenged_order):
    resp = _post(
        client,
        _event("setup_intent.succeeded", challenged_order["setup_intent_id"], payment_method=CARD, status="succeeded"),
    )

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "outcome": "setup_succeeded"}
    with session_factory() as db:
        order = db.get(Order, challenged_order["order_id"])
    assert order.status == "pending_pickup"
    assert order.setup_status == "succeeded"
    assert order.setup_client_secret is None
    assert order.payment_method_saved_at is not None
    assert order.saved_payment_method_id == CARD


def test_setup_failed_cancels_order_and_releases_slot(client, session_factory, challenged_order):
    assert _reserved_units(session_factory) == 1
    failure = {
        "type": "card_error",
        "code": "card_declined",
        "decline_code": "insufficient_funds",
        "message": "Your card has insufficient funds.",
    }

    resp = _post(
        client,
        _event("setup_intent.setup_failed", challenged_order["setup_intent_id"], last_setup_error=failure),
    )

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "order_canceled"
    with session_factory() as db:
        order = db.get(Order, challenged_order["order_id"])
        reasons = db.execute(select(OrderEvent.reason).where(OrderEvent.order_id == order.id)).scalars().all()
    assert order.status == "canceled"
    assert order.setup_status == "failed"
    assert order.setup_error_code == "insufficient_funds"
    assert order.setup_error_message == "Your card was declined due to insufficient funds."
    assert order.setup_client_secret is None
    assert "card_setup_failed:insufficient_funds" in reasons
    assert _reserved_units(session_factory) == 0

    detail = client.get(f"/orders/{order.id}").json()
    assert detail["setup_error_code"] == "insufficient_funds"


def test_redelivered_event_is_applied_once(client, session_factory, challenged_order):
    event = _event("setup_intent.setup_failed", challenged_order["setup_intent_id"], event_id="evt_dup")

    first = _post(client, event)
    second = _post(client, event)

    assert first.json()["outcome"] == "order_canceled"
    assert second.json()["outcome"] == "duplicate"
    with session_factory() as db:
        assert db.execute(select(func.count()).select_from(StripeWebhookEvent)).scalar_one() == 1
        order = db.get(Order, challenged_order["order_id"])
    assert order.setup_error_code == "gateway_error"
    assert _reserved_units(session_factory) == 0


def test_unknown_setup_intent_is_acknowledged(client):
    resp = _post(client, _event("setup_intent.succeeded", "seti_unknown"))

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "order_not_found"


def test_other_event_types_are_ignored(client):
    resp = _post(client, _event("charge.refunded", "seti_any", event_id="evt_other"))

    assert resp.json()["outcome"] == "ignored"


def test_bad_signature_is_rejected(client, session_factory, challenged_order):
    resp = _post(client, _event("setup_intent.setup_failed", challenged_order["setup_intent_id"]), secret="whsec_wrong")

    assert resp.status_code == 400
    with session_factory() as db:
        assert db.get(Order, challenged_order["order_id"]).status == "pending_pickup"


def test_missing_signature_is_rejected(client):
    resp = client.post("/webhooks/stripe", content=b"{}", headers={"content-type": "application/json"})

    assert resp.status_code == 400


def test_unconfigured_secret_refuses_deliveries(session_factory, gateway, config):
    app.state.container = build_container(session_factory=session_factory, gateway=gateway, config=config)
    resp = _post(TestClient(app), _event("setup_intent.succeeded", "seti_any"))

    assert resp.status_code == 503
