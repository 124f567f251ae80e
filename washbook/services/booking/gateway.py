"""Payment gateway port, resilience wrapper and in-memory fake.

The saga only sees `PaymentGateway`. In production that is a `GuardedGateway`
around `StripeGateway`: every call waits for quota, then runs under a circuit
breaker. An open breaker rejects before the quota wait, so failing fast never
spends quota. Setup-intent creation/confirmation and the validation charge
use the more sensitive "payment" breaker; everything else uses "general".
"""

import itertools
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from washbook.common.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from washbook.common.config import CommonSettings
from washbook.common.payment_errors import GatewayError, GatewayErrorKind
from washbook.common.quota import QuotaManager

T = TypeVar("T")

GENERAL_BREAKER = "general"
PAYMENT_BREAKER = "payment"


@dataclass
class GatewayCustomer:
    id: str
    email: str | None = None
    name: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class GatewayPaymentMethod:
    id: str
    customer: str | None = None


@dataclass
class SetupIntent:
    id: str
    status: str
    customer: str | None = None
    payment_method: str | None = None
    client_secret: str | None = None

    @property
    def requires_action(self) -> bool:
        return self.status == "requires_action"


@dataclass
class Charge:
    id: str
    status: str
    amount_cents: int


@dataclass
class Refund:
    id: str
    status: str
    charge_id: str


class PaymentGateway(ABC):
    """Operations the booking core needs from a card processor."""

    mode: str = "test"

    @abstractmethod
    async def create_customer(
        self,
        email: str | None,
        name: str | None,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> GatewayCustomer: ...

    @abstractmethod
    async def retrieve_payment_method(self, payment_method_id: str) -> GatewayPaymentMethod: ...

    @abstractmethod
    async def attach_payment_method(self, payment_method_id: str, customer_id: str) -> GatewayPaymentMethod: ...

    @abstractmethod
    async def detach_payment_method(self, payment_method_id: str) -> GatewayPaymentMethod: ...

    @abstractmethod
    async def create_setup_intent(self, customer_id: str, metadata: dict[str, str]) -> SetupIntent: ...

    @abstractmethod
    async def confirm_setup_intent(
        self, setup_intent_id: str, payment_method_id: str, return_url: str
    ) -> SetupIntent: ...

    @abstractmethod
    async def retrieve_setup_intent(self, setup_intent_id: str) -> SetupIntent: ...

    @abstractmethod
    async def create_charge(
        self,
        amount_cents: int,
        currency: str,
        customer_id: str,
        payment_method_id: str,
        metadata: dict[str, str],
    ) -> Charge: ...

    @abstractmethod
    async def create_refund(self, charge_id: str) -> Refund: ...


class ResilienceRegistry:
    """Application-scoped owner of the gateway breakers and quota manager."""

    def __init__(self, breakers: dict[str, CircuitBreaker], quota: QuotaManager) -> None:
        self.breakers = breakers
        self.quota = quota

    @classmethod
    def from_settings(
        cls,
        config: CommonSettings,
        clock: Callable[[], float] = time.monotonic,
    ) -> "ResilienceRegistry":
        general = CircuitBreakerConfig(
            failure_threshold=config.breaker_failure_threshold,
            success_threshold=config.breaker_success_threshold,
            timeout_seconds=config.breaker_timeout_seconds,
            monitoring_window_seconds=config.breaker_monitoring_window_seconds,
        )
        payment = CircuitBreakerConfig(
            failure_threshold=config.payment_breaker_failure_threshold,
            success_threshold=config.payment_breaker_success_threshold,
            timeout_seconds=config.payment_breaker_timeout_seconds,
            monitoring_window_seconds=config.payment_breaker_monitoring_window_seconds,
        )
        return cls(
            breakers={
                GENERAL_BREAKER: CircuitBreaker(GENERAL_BREAKER, general, clock=clock),
                PAYMENT_BREAKER: CircuitBreaker(PAYMENT_BREAKER, payment, clock=clock),
            },
            quota=QuotaManager("gateway", max_requests_per_window=config.quota_max_requests_per_second, clock=clock),
        )

    def breaker(self, name: str) -> CircuitBreaker:
        return self.breakers[name]

    def stats(self) -> dict[str, Any]:
        return {
            "circuit_breakers": {name: breaker.stats() for name, breaker in self.breakers.items()},
            "quota": self.quota.stats(),
        }


class GuardedGateway(PaymentGateway):
    """Routes every call of `inner` through quota, then a circuit breaker."""

    def __init__(self, inner: PaymentGateway, registry: ResilienceRegistry) -> None:
        self.inner = inner
        self.registry = registry
        self.mode = inner.mode

    async def _call(self, breaker: str, fn: Callable[[], Awaitable[T]]) -> T:
        circuit = self.registry.breaker(breaker)
        circuit.ensure_available()
        return await self.registry.quota.execute_with_quota(lambda: circuit.execute(fn))

    async def create_customer(self, email, name, metadata, idempotency_key=None):
        return await self._call(
            GENERAL_BREAKER, lambda: self.inner.create_customer(email, name, metadata, idempotency_key)
        )

    async def retrieve_payment_method(self, payment_method_id):
        return await self._call(GENERAL_BREAKER, lambda: self.inner.retrieve_payment_method(payment_method_id))

    async def attach_payment_method(self, payment_method_id, customer_id):
        return await self._call(
            GENERAL_BREAKER, lambda: self.inner.attach_payment_method(payment_method_id, customer_id)
        )

    async def detach_payment_method(self, payment_method_id):
        return await self._call(GENERAL_BREAKER, lambda: self.inner.detach_payment_method(payment_method_id))

    async def create_setup_intent(self, customer_id, metadata):
        return await self._call(PAYMENT_BREAKER, lambda: self.inner.create_setup_intent(customer_id, metadata))

    async def confirm_setup_intent(self, setup_intent_id, payment_method_id, return_url):
        return await self._call(
            PAYMENT_BREAKER,
            lambda: self.inner.confirm_setup_intent(setup_intent_id, payment_method_id, return_url),
        )

    async def retrieve_setup_intent(self, setup_intent_id):
        return await self._call(GENERAL_BREAKER, lambda: self.inner.retrieve_setup_intent(setup_intent_id))

    async def create_charge(self, amount_cents, currency, customer_id, payment_method_id, metadata):
        return await self._call(
            PAYMENT_BREAKER,
            lambda: self.inner.create_charge(amount_cents, currency, customer_id, payment_method_id, metadata),
        )

    async def create_refund(self, charge_id):
        return await self._call(GENERAL_BREAKER, lambda: self.inner.create_refund(charge_id))


class FakeGateway(PaymentGateway):
    """In-memory gateway for local runs and tests.

    Payment methods must be registered before use. `fail_next(op, exc)` makes
    the next call of `op` raise `exc`; `calls` records every operation name.
    """

    def __init__(self, charge_status: str = "succeeded") -> None:
        self.customers: dict[str, GatewayCustomer] = {}
        self.payment_methods: dict[str, GatewayPaymentMethod] = {}
        self.setup_intents: dict[str, SetupIntent] = {}
        self.charges: dict[str, Charge] = {}
        self.refunds: dict[str, Refund] = {}
        self.charge_status = charge_status
        self.requires_action_for: set[str] = set()
        self.calls: list[str] = []
        self._failures: dict[str, list[BaseException]] = {}
        self._idempotent_customers: dict[str, str] = {}
        self._ids = itertools.count(1)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_fake_{next(self._ids)}"

    def register_payment_method(self, payment_method_id: str, customer: str | None = None) -> None:
        self.payment_methods[payment_method_id] = GatewayPaymentMethod(id=payment_method_id, customer=customer)

    def fail_next(self, operation: str, error: BaseException) -> None:
        self._failures.setdefault(operation, []).append(error)

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _payment_method(self, payment_method_id: str) -> GatewayPaymentMethod:
        method = self.payment_methods.get(payment_method_id)
        if method is None:
            raise GatewayError(
                GatewayErrorKind.INVALID_REQUEST,
                f"No such PaymentMethod: '{payment_method_id}'",
                code="resource_missing",
                http_status=404,
            )
        return method

    async def create_customer(self, email, name, metadata, idempotency_key=None):
        self._enter("create_customer")
        if idempotency_key and idempotency_key in self._idempotent_customers:
            return self.customers[self._idempotent_customers[idempotency_key]]
        customer = GatewayCustomer(id=self._next_id("cus"), email=email, name=name, metadata=dict(metadata))
        self.customers[customer.id] = customer
        if idempotency_key:
            self._idempotent_customers[idempotency_key] = customer.id
        return customer

    async def retrieve_payment_method(self, payment_method_id):
        self._enter("retrieve_payment_method")
        return self._payment_method(payment_method_id)

    async def attach_payment_method(self, payment_method_id, customer_id):
        self._enter("attach_payment_method")
        method = self._payment_method(payment_method_id)
        method.customer = customer_id
        return method

    async def detach_payment_method(self, payment_method_id):
        self._enter("detach_payment_method")
        method = self._payment_method(payment_method_id)
        method.customer = None
        return method

    async def create_setup_intent(self, customer_id, metadata):
        self._enter("create_setup_intent")
        intent = SetupIntent(
            id=self._next_id("seti"),
            status="requires_payment_method",
            customer=customer_id,
            client_secret=None,
        )
        self.setup_intents[intent.id] = intent
        return intent

    async def confirm_setup_intent(self, setup_intent_id, payment_method_id, return_url):
        self._enter("confirm_setup_intent")
        intent = self.setup_intents[setup_intent_id]
        method = self._payment_method(payment_method_id)
        if method.customer is None:
            method.customer = intent.customer
        intent.payment_method = payment_method_id
        if payment_method_id in self.requires_action_for:
            intent.status = "requires_action"
            intent.client_secret = f"{intent.id}_secret"
        else:
            intent.status = "succeeded"
        return intent

    async def retrieve_setup_intent(self, setup_intent_id):
        self._enter("retrieve_setup_intent")
        return self.setup_intents[setup_intent_id]

    async def create_charge(self, amount_cents, currency, customer_id, payment_method_id, metadata):
        self._enter("create_charge")
        self._payment_method(payment_method_id)
        charge = Charge(id=self._next_id("pi"), status=self.charge_status, amount_cents=amount_cents)
        self.charges[charge.id] = charge
        return charge

    async def create_refund(self, charge_id):
        self._enter("create_refund")
        refund = Refund(id=self._next_id("re"), status="succeeded", charge_id=charge_id)
        self.refunds[refund.id] = refund
        return refund
