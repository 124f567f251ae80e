"""Order status transitions per service type.

LAUNDRY is quote-first: pickup, weigh at the facility, then pay the quote.
CLEANING is pay-to-book, or card-on-file through the payment setup saga.
Both share a cancellation sub-graph from every pre-terminal, pre-payment
status. Everything here is pure; no clock, no I/O.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from washbook.common.errors import InvalidTransitionError


class ServiceType(StrEnum):
    LAUNDRY = "LAUNDRY"
    CLEANING = "CLEANING"


class OrderStatus(StrEnum):
    PENDING = "pending"
    PENDING_PICKUP = "pending_pickup"
    AT_FACILITY = "at_facility"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID_PROCESSING = "paid_processing"
    IN_PROGRESS = "in_progress"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELED = "canceled"


# Placeholder written by the saga's first step, and its commit point.
DRAFT_STATUS = OrderStatus.PENDING
READY_STATUS = OrderStatus.PENDING_PICKUP

TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.DELIVERED, OrderStatus.COMPLETED, OrderStatus.CANCELED}
)

CANCELLABLE_STATUSES: frozenset[OrderStatus] = frozenset(
    {
        OrderStatus.PENDING,
        OrderStatus.PENDING_PICKUP,
        OrderStatus.AT_FACILITY,
        OrderStatus.AWAITING_PAYMENT,
    }
)


def _field(order: Any, name: str) -> Any:
    if isinstance(order, Mapping):
        return order.get(name)
    return getattr(order, name, None)


def _has_paid_at(order: Any) -> bool:
    return bool(_field(order, "paid_at"))


def _has_saved_payment_method(order: Any) -> bool:
    return bool(_field(order, "saved_payment_method_id"))


@dataclass(frozen=True)
class TransitionRule:
    from_status: OrderStatus
    to_status: OrderStatus
    service_type: ServiceType | None = None
    guard: Callable[[Any], bool] | None = None

    def matches(self, from_status: str, to_status: str, service_type: str) -> bool:
        return (
            self.from_status == from_status
            and self.to_status == to_status
            and (self.service_type is None or self.service_type == service_type)
        )


TRANSITIONS: tuple[TransitionRule, ...] = (
    # Laundry
    TransitionRule(OrderStatus.PENDING, OrderStatus.PENDING_PICKUP, ServiceType.LAUNDRY),
    TransitionRule(OrderStatus.PENDING_PICKUP, OrderStatus.AT_FACILITY, ServiceType.LAUNDRY),
    TransitionRule(OrderStatus.AT_FACILITY, OrderStatus.AWAITING_PAYMENT, ServiceType.LAUNDRY),
    TransitionRule(
        OrderStatus.AWAITING_PAYMENT,
        OrderStatus.PAID_PROCESSING,
        ServiceType.LAUNDRY,
        guard=_has_paid_at,
    ),
    TransitionRule(OrderStatus.PAID_PROCESSING, OrderStatus.IN_PROGRESS, ServiceType.LAUNDRY),
    TransitionRule(OrderStatus.IN_PROGRESS, OrderStatus.OUT_FOR_DELIVERY, ServiceType.LAUNDRY),
    TransitionRule(OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED, ServiceType.LAUNDRY),
    # Cleaning
    TransitionRule(OrderStatus.PENDING, OrderStatus.PAID_PROCESSING, ServiceType.CLEANING),
    TransitionRule(
        OrderStatus.PENDING,
        OrderStatus.PENDING_PICKUP,
        ServiceType.CLEANING,
        guard=_has_saved_payment_method,
    ),
    TransitionRule(OrderStatus.PAID_PROCESSING, OrderStatus.PENDING_PICKUP, ServiceType.CLEANING),
    TransitionRule(OrderStatus.PENDING_PICKUP, OrderStatus.IN_PROGRESS, ServiceType.CLEANING),
    TransitionRule(OrderStatus.IN_PROGRESS, OrderStatus.COMPLETED, ServiceType.CLEANING),
    # Cancellation, any service
    TransitionRule(OrderStatus.PENDING, OrderStatus.CANCELED),
    TransitionRule(OrderStatus.PENDING_PICKUP, OrderStatus.CANCELED),
    TransitionRule(OrderStatus.AT_FACILITY, OrderStatus.CANCELED),
    TransitionRule(OrderStatus.AWAITING_PAYMENT, OrderStatus.CANCELED),
)

LAUNDRY_FLOW: tuple[OrderStatus, ...] = (
    OrderStatus.PENDING,
    OrderStatus.PENDING_PICKUP,
    OrderStatus.AT_FACILITY,
    OrderStatus.AWAITING_PAYMENT,
    OrderStatus.PAID_PROCESSING,
    OrderStatus.IN_PROGRESS,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
)
CLEANING_FLOW: tuple[OrderStatus, ...] = (
    OrderStatus.PENDING,
    OrderStatus.PENDING_PICKUP,
    OrderStatus.IN_PROGRESS,
    OrderStatus.COMPLETED,
)

_LEGACY_STATUSES: dict[str, OrderStatus] = {
    "PENDING": OrderStatus.PENDING,
    "PAID": OrderStatus.PAID_PROCESSING,
    "RECEIVED": OrderStatus.AT_FACILITY,
    "IN_PROGRESS": OrderStatus.IN_PROGRESS,
    "READY": OrderStatus.OUT_FOR_DELIVERY,
    "OUT_FOR_DELIVERY": OrderStatus.OUT_FOR_DELIVERY,
    "DELIVERED": OrderStatus.DELIVERED,
    "CANCELED": OrderStatus.CANCELED,
    "REFUNDED": OrderStatus.CANCELED,
}


@dataclass(frozen=True)
class TransitionResult:
    valid: bool
    error: str | None = None
    reason: str | None = None


def can_transition(from_status: str, to_status: str, service_type: str, order: Any = None) -> bool:
    """True when a rule matches and its guard (if any) accepts `order`.

    Guards are only evaluated when an order is supplied.
    """

    for rule in TRANSITIONS:
        if not rule.matches(from_status, to_status, service_type):
            continue
        if rule.guard is not None and order is not None:
            return rule.guard(order)
        return True
    return False


def get_next_statuses(current: str, service_type: str) -> list[OrderStatus]:
    """Statuses one rule away from `current`, ignoring guards (UI hinting only)."""

    return [
        rule.to_status
        for rule in TRANSITIONS
        if rule.from_status == current and (rule.service_type is None or rule.service_type == service_type)
    ]


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def is_cancellable(status: str) -> bool:
    return status in CANCELLABLE_STATUSES


def validate_transition(from_status: str, to_status: str, service_type: str, order: Any = None) -> TransitionResult:
    """Explain whether `from_status -> to_status` is allowed."""

    if from_status == to_status:
        return TransitionResult(valid=True)
    if is_terminal(from_status):
        return TransitionResult(
            valid=False,
            error=f"Cannot transition from terminal status: {from_status}",
            reason="terminal_status",
        )
    if not can_transition(from_status, to_status, service_type, order):
        return TransitionResult(
            valid=False,
            error=f"Invalid transition from {from_status} to {to_status} for {service_type} service",
            reason="no_matching_rule",
        )
    return TransitionResult(valid=True)


def ensure_transition(from_status: str, to_status: str, service_type: str, order: Any = None) -> None:
    """Raise `InvalidTransitionError` when a transition is not allowed."""

    result = validate_transition(from_status, to_status, service_type, order)
    if not result.valid:
        raise InvalidTransitionError(result.error or "invalid transition", code=result.reason.upper())


def get_progress(status: str, service_type: str) -> int:
    """Percent complete along the service's linear flow (0 when off-flow)."""

    flow = LAUNDRY_FLOW if service_type == ServiceType.LAUNDRY else CLEANING_FLOW
    if status == OrderStatus.CANCELED or status not in flow:
        return 0
    return round(flow.index(status) / (len(flow) - 1) * 100)


def get_status_section(status: str) -> str:
    """Bucket used by order lists: upcoming, in_progress, completed, canceled."""

    if status in (OrderStatus.PENDING, OrderStatus.PENDING_PICKUP):
        return "upcoming"
    if status == OrderStatus.CANCELED:
        return "canceled"
    if status in (OrderStatus.DELIVERED, OrderStatus.COMPLETED):
        return "completed"
    return "in_progress"


def map_legacy_status(legacy_status: str) -> OrderStatus:
    """Map old UPPERCASE statuses onto the current lowercase set."""

    mapped = _LEGACY_STATUSES.get(legacy_status)
    if mapped is not None:
        return mapped
    return OrderStatus(legacy_status.lower())
