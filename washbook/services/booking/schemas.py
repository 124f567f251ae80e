"""API request/response schemas for booking endpoints."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from washbook.common.db import as_utc
from washbook.common.state_machine import OrderStatus, ServiceType

ServiceCategory = Literal["washFold", "dryClean", "mixed", "standard", "deep", "moveOut"]

_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class TimeWindow(BaseModel):
    slot_start: datetime
    slot_end: datetime

    @field_validator("slot_start", "slot_end")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def _ordered(self) -> "TimeWindow":
        if self.slot_end <= self.slot_start:
            raise ValueError("slot_end must be after slot_start")
        return self


class PickupSlot(TimeWindow):
    partner_id: str = Field(min_length=1)


class Address(BaseModel):
    line1: str = Field(min_length=1)
    line2: str | None = None
    city: str = Field(min_length=1)
    zip: str = Field(min_length=3, max_length=10)
    notes: str | None = None


class GuestInfo(BaseModel):
    guest_name: str | None = Field(default=None, min_length=1)
    guest_email: str | None = Field(default=None, pattern=_EMAIL_PATTERN)
    guest_phone: str | None = Field(default=None, pattern=r"^\+[1-9]\d{1,14}$")

    def has_guest_identity(self) -> bool:
        return bool(self.guest_name and self.guest_email and self.guest_phone)

    def has_any_guest_field(self) -> bool:
        return any((self.guest_name, self.guest_email, self.guest_phone))


class PaymentSetupRequest(GuestInfo):
    """Body of `POST /payments/setup`; the user id arrives in a header."""

    service_type: ServiceType
    service_category: ServiceCategory
    estimated_amount_cents: int = Field(gt=0)
    payment_method_id: str = Field(min_length=1)
    slot: PickupSlot
    delivery_slot: TimeWindow | None = None
    address: Address
    phone: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class BookingParams(PaymentSetupRequest):
    """Saga input: either a user reference or a full guest triple, never both."""

    user_id: str | None = None

    @model_validator(mode="after")
    def _identity_exclusive(self) -> "BookingParams":
        if self.user_id and self.has_any_guest_field():
            raise ValueError("user_id and guest fields are mutually exclusive")
        if not self.user_id and not self.has_guest_identity():
            raise ValueError("guest_name, guest_email and guest_phone are required without user_id")
        return self

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    def contact_phone(self) -> str | None:
        return self.phone or self.guest_phone


class PaymentSetupResponse(BaseModel):
    success: bool = True
    order_id: str
    requires_action: bool
    client_secret: str | None = None
    setup_intent_id: str | None = None
    payment_method_saved: bool
    card_validated: bool


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    saga_id: str | None
    user_id: str | None
    guest_name: str | None
    guest_email: str | None
    service_type: str
    service_category: str
    partner_id: str
    slot_start: datetime
    slot_end: datetime
    status: str
    subtotal_cents: int
    total_cents: int
    setup_intent_id: str | None
    saved_payment_method_id: str | None
    stripe_customer_id: str | None
    card_validated: bool
    setup_status: str | None = None
    setup_error_code: str | None = None
    version: int
    progress: int = 0
    section: str = ""
    next_statuses: list[str] = Field(default_factory=list)


class TransitionRequest(BaseModel):
    to_status: OrderStatus
    reason: str = Field(default="manual", min_length=1)


class CancelRequest(BaseModel):
    reason: str = Field(default="customer_request", min_length=1)


class SlotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    slot_start: datetime
    slot_end: datetime
    partner_id: str
    available_units: int
    max_units: int


class SweepResponse(BaseModel):
    examined: int
    completed: list[str]
    abandoned: list[str]
