"""Shared fixtures: in-memory SQLite, fake gateway, seeded slots and profiles."""

import os

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", "test-key")
os.environ.setdefault("TRACING_ENABLED", "false")

import asyncio
from datetime import date, datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from washbook.common.config import CommonSettings
from washbook.common.db import Base
from washbook.services.booking import models as booking_models  # noqa: F401
from washbook.services.booking.gateway import FakeGateway
from washbook.services.booking.models import Profile
from washbook.services.booking.schemas import BookingParams
from washbook.services.capacity.models import Partner
from washbook.services.capacity.service import CapacityService
from washbook.services.notification import models as notification_models  # noqa: F401

# A Monday, far enough out that the lead-time filter never hides its slots.
BOOKING_DAY = date(2030, 1, 7)
PARTNER_ID = "partner-1"
USER_ID = "user-1"
CARD = "pm_card_visa"


@pytest.fixture
def config() -> CommonSettings:
    return CommonSettings(
        postgres_dsn="sqlite://",
        api_key="test-key",
        service_name="booking-test",
        tracing_enabled=False,
        card_validation_enabled=True,
        card_validation_amount_cents=1,
        payment_auth_enabled=True,
        payment_auth_percentage=100,
        service_timezone="America/New_York",
        slot_default_max_units=2,
    )


@pytest.fixture
def session_factory():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    with factory() as db:
        db.add(Partner(id=PARTNER_ID, name="Clean Co", service_type="LAUNDRY", active=True))
        db.add(Profile(id=USER_ID, email="user@example.com", name="Test User", phone="+15551230000"))
        db.commit()
    yield factory
    engine.dispose()


@pytest.fixture
def gateway() -> FakeGateway:
    fake = FakeGateway()
    fake.register_payment_method(CARD)
    return fake


@pytest.fixture
def capacity(session_factory, config) -> CapacityService:
    service = CapacityService(session_factory, config)
    asyncio.run(service.ensure_slots_exist("LAUNDRY", BOOKING_DAY))
    return service


@pytest.fixture
def first_window(capacity) -> tuple[datetime, datetime]:
    return capacity.windows_for(BOOKING_DAY)[0]


def booking_payload(slot_start: datetime, slot_end: datetime, **overrides) -> dict:
    payload = {
        "service_type": "LAUNDRY",
        "service_category": "washFold",
        "estimated_amount_cents": 5000,
        "payment_method_id": CARD,
        "slot": {"partner_id": PARTNER_ID, "slot_start": slot_start.isoformat(), "slot_end": slot_end.isoformat()},
        "address": {"line1": "1 Main St", "city": "New York", "zip": "10001"},
    }
    payload.update(overrides)
    return payload


GUEST = {"guest_name": "Guest Person", "guest_email": "guest@example.com", "guest_phone": "+15551112222"}


@pytest.fixture
def user_params(first_window) -> BookingParams:
    return BookingParams.model_validate({**booking_payload(*first_window), "user_id": USER_ID})


@pytest.fixture
def guest_params(first_window) -> BookingParams:
    return BookingParams.model_validate({**booking_payload(*first_window), **GUEST})
