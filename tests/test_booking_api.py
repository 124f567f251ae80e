"""HTTP layer: status codes, error bodies, idempotent replay, admin routes."""

import asyncio

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from conftest import BOOKING_DAY, GUEST, PARTNER_ID, USER_ID, booking_payload
from washbook.common.payment_errors import GatewayError, GatewayErrorKind
from washbook.services.booking.main import app, build_container
from washbook.services.booking.models import PaymentSaga

API_KEY = {"x-api-key": "test-key"}


class MemoryCache:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}

    def get(self, key):
        return self.values.get(key)

    def setex(self, key, ttl, value):
        self.values[key] = value


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache()


@pytest.fixture
def client(session_factory, gateway, capacity, config, cache):
    app.state.container = build_container(session_factory=session_factory, gateway=gateway, config=config, cache=cache)
    # No context manager: the Kafka outbox publisher stays off.
    return TestClient(app)


@pytest.fixture
def guest_body(first_window) -> dict:
    return {**booking_payload(*first_window), **GUEST}


def test_guest_booking_created(client, guest_body):
    resp = client.post("/payments/setup", json=guest_body)

    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    assert body["payment_method_saved"] is True
    assert body["card_validated"] is False
    assert body["requires_action"] is False
    assert body["client_secret"] is None
    assert body["setup_intent_id"].startswith("seti_")


def test_authenticated_booking_validates_card(client, first_window):
    resp = client.post("/payments/setup", json=booking_payload(*first_window), headers={"x-user-id": USER_ID})

    assert resp.status_code == 201
    assert resp.json()["card_validated"] is True


def test_guest_details_required(client, first_window):
    resp = client.post("/payments/setup", json=booking_payload(*first_window))

    assert resp.status_code == 400
    assert resp.json()["code"] == "GUEST_INFO_REQUIRED"


def test_user_and_guest_fields_conflict(client, guest_body):
    resp = client.post("/payments/setup", json=guest_body, headers={"x-user-id": USER_ID})

    assert resp.status_code == 400
    assert resp.json()["code"] == "IDENTITY_CONFLICT"


def test_users_outside_rollout_are_refused(client, session_factory, gateway, config, first_window):
    disabled = config.model_copy(update={"payment_auth_enabled": False})
    app.state.container = build_container(session_factory=session_factory, gateway=gateway, config=disabled)

    resp = client.post("/payments/setup", json=booking_payload(*first_window), headers={"x-user-id": USER_ID})

    assert resp.status_code == 403
    assert resp.json() == {
        "success": False,
        "error": "Payment setup not available for your account",
        "code": "FEATURE_NOT_ENABLED",
    }


def test_invalid_body_is_a_validation_error(client, guest_body):
    resp = client.post("/payments/setup", json={**guest_body, "estimated_amount_cents": 0})

    assert resp.status_code == 400
    assert resp.json()["code"] == "VALIDATION_ERROR"


def test_declined_card_returns_classified_error(client, gateway, guest_body):
    gateway.fail_next(
        "confirm_setup_intent",
        GatewayError(
            GatewayErrorKind.CARD,
            "Your card has insufficient funds.",
            code="card_declined",
            decline_code="insufficient_funds",
        ),
    )

    resp = client.post("/payments/setup", json=guest_body)

    assert resp.status_code == 402
    body = resp.json()
    assert body["success"] is False
    assert body["type"] == "insufficient_funds"
    assert body["action_code"] == "UPDATE_PAYMENT_METHOD"


def test_open_payment_circuit_answers_503(client, gateway, guest_body):
    for _ in range(3):
        gateway.fail_next("create_setup_intent", GatewayError(GatewayErrorKind.CONNECTION, "connection reset"))
        assert client.post("/payments/setup", json=guest_body).status_code == 402

    resp = client.post("/payments/setup", json=guest_body)

    assert resp.status_code == 503
    assert resp.json()["code"] == "circuit_open"
    stats = client.get("/internal/resilience", headers=API_KEY).json()
    assert stats["circuit_breakers"]["payment"]["state"] == "OPEN"

    reset = client.post("/internal/circuit-breakers/payment/reset", headers=API_KEY)
    assert reset.json()["state"] == "CLOSED"
    assert client.post("/payments/setup", json=guest_body).status_code == 201


def test_idempotency_key_replays_response(client, session_factory, guest_body):
    headers = {"idempotency-key": "booking-attempt-1"}
    first = client.post("/payments/setup", json=guest_body, headers=headers)
    second = client.post("/payments/setup", json=guest_body, headers=headers)

    assert first.json()["order_id"] == second.json()["order_id"]
    with session_factory() as db:
        assert db.execute(select(func.count()).select_from(PaymentSaga)).scalar_one() == 1


def test_order_lifecycle_endpoints(client, guest_body):
    order_id = client.post("/payments/setup", json=guest_body).json()["order_id"]

    order = client.get(f"/orders/{order_id}").json()
    assert order["status"] == "pending_pickup"
    assert order["section"] == "upcoming"
    assert "at_facility" in order["next_statuses"]

    moved = client.post(f"/orders/{order_id}/transition", json={"to_status": "at_facility", "reason": "picked_up"})
    assert moved.status_code == 200
    assert moved.json()["progress"] > order["progress"]

    illegal = client.post(f"/orders/{order_id}/transition", json={"to_status": "delivered"})
    assert illegal.status_code == 409
    assert illegal.json()["code"] == "NO_MATCHING_RULE"

    canceled = client.post(f"/orders/{order_id}/cancel", json={})
    assert canceled.json()["status"] == "canceled"


def test_unknown_order_is_404(client):
    resp = client.get("/orders/nope")

    assert resp.status_code == 404
    assert resp.json()["code"] == "ORDER_NOT_FOUND"


def test_slots_listing(client):
    resp = client.get("/slots", params={"service_type": "LAUNDRY", "date": BOOKING_DAY.isoformat()})

    assert resp.status_code == 200
    slots = resp.json()
    assert len(slots) == 6
    assert slots[0]["available_units"] == 2


def test_full_slot_answers_409(client, capacity, guest_body, first_window):
    for _ in range(2):
        asyncio.run(capacity.reserve(PARTNER_ID, "LAUNDRY", first_window[0]))

    resp = client.post("/payments/setup", json=guest_body)

    assert resp.status_code == 409
    assert resp.json()["code"] == "SLOT_UNAVAILABLE"


def test_admin_routes_require_api_key(client):
    assert client.get("/internal/resilience").status_code == 401
    assert client.post("/internal/sagas/sweep").status_code == 401
    assert client.post("/internal/circuit-breakers/unknown/reset", headers=API_KEY).status_code == 404

    sweep = client.post("/internal/sagas/sweep", headers=API_KEY)
    assert sweep.status_code == 200
    assert sweep.json() == {"examined": 0, "completed": [], "abandoned": []}


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"ok": True}
    assert "saga_executions_total" in client.get("/metrics").text
