"""Payment setup saga: forward path, compensation and gateway repair."""

import asyncio

import pytest
from sqlalchemy import func, select, update

from conftest import CARD, USER_ID, booking_payload
from washbook.common.errors import SagaError
from washbook.common.payment_errors import GatewayError, GatewayErrorKind, PaymentMethodNotFoundError
from washbook.services.booking.gateway import FakeGateway
from washbook.services.booking.models import Order, OrderEvent, PaymentSaga, Profile
from washbook.services.booking.saga import PaymentSetupSaga
from washbook.services.booking.schemas import BookingParams


def _saga_record(session_factory) -> PaymentSaga:
    with session_factory() as db:
        return db.execute(select(PaymentSaga)).scalar_one()


def _count(session_factory, model) -> int:
    with session_factory() as db:
        return db.execute(select(func.count()).select_from(model)).scalar_one()


def _step_types(record: PaymentSaga) -> list[str]:
    return [step["type"] for step in record.steps]


def test_authenticated_booking_saves_and_validates_card(session_factory, gateway, config, user_params):
    saga = PaymentSetupSaga(session_factory, gateway, config)
    order = asyncio.run(saga.execute(user_params))

    assert order.status == "pending_pickup"
    assert order.user_id == USER_ID
    assert order.card_validated is True
    assert order.saved_payment_method_id == CARD
    assert order.stripe_customer_id
    assert order.version == 1
    assert len(gateway.charges) == 1 and len(gateway.refunds) == 1
    with session_factory() as db:
        assert db.get(Profile, USER_ID).stripe_customer_id == order.stripe_customer_id

    record = _saga_record(session_factory)
    assert record.status == "completed"
    assert record.completed_at is not None
    assert _step_types(record) == [
        "initialize",
        "create_order",
        "save_payment_method",
        "validate_card",
        "finalize_order",
    ]


def test_guest_booking_skips_validation(session_factory, gateway, config, guest_params):
    order = asyncio.run(PaymentSetupSaga(session_factory, gateway, config).execute(guest_params))

    assert order.status == "pending_pickup"
    assert order.user_id is None
    assert order.guest_email == "guest@example.com"
    assert order.card_validated is False
    assert gateway.customers[order.stripe_customer_id].metadata["is_guest"] == "true"
    assert "create_charge" not in gateway.calls
    assert "validate_card" not in _step_types(_saga_record(session_factory))


def test_existing_customer_is_reused(session_factory, gateway, config, user_params):
    with session_factory() as db:
        db.get(Profile, USER_ID).stripe_customer_id = "cus_existing"
        db.commit()

    order = asyncio.run(PaymentSetupSaga(session_factory, gateway, config).execute(user_params))

    assert order.stripe_customer_id == "cus_existing"
    assert "create_customer" not in gateway.calls


def test_missing_payment_method_rolls_back_order(session_factory, config, first_window):
    params = BookingParams.model_validate(
        {**booking_payload(*first_window, payment_method_id="pm_live_only"), "user_id": USER_ID}
    )
    gateway = FakeGateway()

    with pytest.raises(PaymentMethodNotFoundError) as excinfo:
        asyncio.run(PaymentSetupSaga(session_factory, gateway, config).execute(params))

    assert "live keys" in str(excinfo.value)
    assert _count(session_factory, Order) == 0
    assert _count(session_factory, OrderEvent) == 0
    record = _saga_record(session_factory)
    assert record.status == "failed"
    assert _step_types(record) == ["initialize", "create_order"]


def test_confirm_failure_compensates(session_factory, gateway, config, guest_params):
    gateway.fail_next(
        "confirm_setup_intent",
        GatewayError(GatewayErrorKind.CARD, "Your card was declined.", code="card_declined", decline_code="generic_decline"),
    )

    with pytest.raises(GatewayError):
        asyncio.run(PaymentSetupSaga(session_factory, gateway, config).execute(guest_params))

    assert _count(session_factory, Order) == 0
    record = _saga_record(session_factory)
    assert record.status == "failed"
    assert record.error_message == "Your card was declined."
    assert len(record.steps) == 2


def test_declined_validation_charge_fails_booking(session_factory, config, user_params):
    gateway = FakeGateway(charge_status="requires_payment_method")
    gateway.register_payment_method(CARD)

    with pytest.raises(GatewayError) as excinfo:
        asyncio.run(PaymentSetupSaga(session_factory, gateway, config).execute(user_params))

    assert excinfo.value.code == "card_declined"
    assert gateway.refunds == {}
    assert _count(session_factory, Order) == 0
    assert _step_types(_saga_record(session_factory)) == ["initialize", "create_order", "save_payment_method"]


def test_card_attached_elsewhere_is_moved(session_factory, config, user_params):
    gateway = FakeGateway()
    gateway.register_payment_method(CARD, customer="cus_previous")
    with session_factory() as db:
        db.get(Profile, USER_ID).stripe_customer_id = "cus_current"
        db.commit()

    order = asyncio.run(PaymentSetupSaga(session_factory, gateway, config).execute(user_params))

    assert gateway.payment_methods[CARD].customer == "cus_current"
    assert gateway.calls.index("detach_payment_method") < gateway.calls.index("attach_payment_method")
    assert order.stripe_customer_id == "cus_current"


def test_lookup_outage_does_not_block_setup(session_factory, gateway, config, guest_params):
    gateway.fail_next("retrieve_payment_method", GatewayError(GatewayErrorKind.CONNECTION, "timeout"))

    order = asyncio.run(PaymentSetupSaga(session_factory, gateway, config).execute(guest_params))

    assert order.status == "pending_pickup"


def test_card_needing_authentication_skips_validation(session_factory, gateway, config, user_params):
    gateway.requires_action_for.add(CARD)

    order = asyncio.run(PaymentSetupSaga(session_factory, gateway, config).execute(user_params))

    assert order.setup_status == "requires_action"
    assert order.setup_client_secret.endswith("_secret")
    assert order.card_validated is False
    assert "create_charge" not in gateway.calls


def test_missing_profile_fails_saga(session_factory, gateway, config, user_params):
    params = user_params.model_copy(update={"user_id": "user-unknown"})

    with pytest.raises(SagaError) as excinfo:
        asyncio.run(PaymentSetupSaga(session_factory, gateway, config).execute(params))

    assert excinfo.value.code == "PROFILE_NOT_FOUND"
    assert _count(session_factory, Order) == 0


def test_concurrent_customer_creation_keeps_first_writer(session_factory, config, user_params):
    class RacingGateway(FakeGateway):
        async def create_customer(self, email, name, metadata, idempotency_key=None):
            customer = await super().create_customer(email, name, metadata, idempotency_key)
            with session_factory() as db:
                db.execute(update(Profile).where(Profile.id == USER_ID).values(stripe_customer_id="cus_winner"))
                db.commit()
            return customer

    gateway = RacingGateway()
    gateway.register_payment_method(CARD)

    order = asyncio.run(PaymentSetupSaga(session_factory, gateway, config).execute(user_params))

    assert order.stripe_customer_id == "cus_winner"
    assert gateway.payment_methods[CARD].customer == "cus_winner"


def test_compensation_can_run_twice(session_factory, config, user_params):
    gateway = FakeGateway(charge_status="failed")
    gateway.register_payment_method(CARD)
    saga = PaymentSetupSaga(session_factory, gateway, config)

    with pytest.raises(GatewayError):
        asyncio.run(saga.execute(user_params))
    asyncio.run(saga.compensate(RuntimeError("re-entry")))

    assert _count(session_factory, Order) == 0
    record = _saga_record(session_factory)
    assert record.status == "failed"
    assert record.error_message == "re-entry"
