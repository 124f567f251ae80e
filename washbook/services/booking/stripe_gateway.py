"""Stripe adapter for the payment gateway port.

The stripe SDK is synchronous; each call runs in a worker thread so the event
loop keeps serving other sagas. SDK exceptions are translated into
`GatewayError` so nothing above this module imports stripe.
"""

import asyncio
import functools
from collections.abc import Callable
from typing import Any, TypeVar

import stripe

from washbook.common.payment_errors import GatewayError, GatewayErrorKind
from washbook.services.booking.gateway import (
    Charge,
    GatewayCustomer,
    GatewayPaymentMethod,
    PaymentGateway,
    Refund,
    SetupIntent,
)

T = TypeVar("T")

_KIND_BY_EXCEPTION: tuple[tuple[type[stripe.StripeError], GatewayErrorKind], ...] = (
    (stripe.CardError, GatewayErrorKind.CARD),
    (stripe.RateLimitError, GatewayErrorKind.RATE_LIMIT),
    (stripe.APIConnectionError, GatewayErrorKind.CONNECTION),
    (stripe.AuthenticationError, GatewayErrorKind.AUTHENTICATION),
    (stripe.InvalidRequestError, GatewayErrorKind.INVALID_REQUEST),
)


def translate_stripe_error(exc: stripe.StripeError) -> GatewayError:
    kind = GatewayErrorKind.API
    for exc_type, mapped in _KIND_BY_EXCEPTION:
        if isinstance(exc, exc_type):
            kind = mapped
            break
    decline_code = getattr(exc.error, "decline_code", None) if exc.error is not None else None
    return GatewayError(
        kind,
        exc.user_message or str(exc),
        code=exc.code,
        decline_code=decline_code,
        http_status=exc.http_status,
    )


def setup_error_to_gateway_error(error: dict[str, Any] | None) -> GatewayError:
    """Translate a setup intent `last_setup_error` payload from a webhook."""

    if not error:
        return GatewayError(GatewayErrorKind.API, "Setup intent failed without an error payload")
    try:
        kind = GatewayErrorKind(error.get("type"))
    except ValueError:
        kind = GatewayErrorKind.API
    return GatewayError(
        kind,
        error.get("message") or "Card setup failed",
        code=error.get("code"),
        decline_code=error.get("decline_code"),
    )


def _id_of(value: Any) -> str | None:
    """Stripe returns either an id string or an expanded object."""

    if value is None or isinstance(value, str):
        return value
    return value.id


def stripe_mode(secret_key: str) -> str:
    if secret_key.startswith("sk_test_"):
        return "test"
    if secret_key.startswith("sk_live_"):
        return "live"
    return "unknown"


class StripeGateway(PaymentGateway):
    def __init__(self, secret_key: str, api_version: str) -> None:
        self._options = {"api_key": secret_key, "stripe_version": api_version}
        self.mode = stripe_mode(secret_key)

    async def _call(self, fn: Callable[..., T], **params: Any) -> T:
        try:
            return await asyncio.to_thread(functools.partial(fn, **self._options, **params))
        except stripe.StripeError as exc:
            raise translate_stripe_error(exc) from exc

    async def create_customer(self, email, name, metadata, idempotency_key=None):
        params: dict[str, Any] = {"metadata": metadata}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        customer = await self._call(stripe.Customer.create, **params)
        return GatewayCustomer(id=customer.id, email=customer.email, name=customer.name, metadata=dict(metadata))

    async def retrieve_payment_method(self, payment_method_id):
        method = await self._call(stripe.PaymentMethod.retrieve, id=payment_method_id)
        return GatewayPaymentMethod(id=method.id, customer=_id_of(method.customer))

    async def attach_payment_method(self, payment_method_id, customer_id):
        method = await self._call(stripe.PaymentMethod.attach, payment_method=payment_method_id, customer=customer_id)
        return GatewayPaymentMethod(id=method.id, customer=_id_of(method.customer))

    async def detach_payment_method(self, payment_method_id):
        method = await self._call(stripe.PaymentMethod.detach, payment_method=payment_method_id)
        return GatewayPaymentMethod(id=method.id, customer=None)

    async def create_setup_intent(self, customer_id, metadata):
        intent = await self._call(
            stripe.SetupIntent.create,
            customer=customer_id,
            payment_method_types=["card"],
            metadata=metadata,
        )
        return self._setup_intent(intent)

    async def confirm_setup_intent(self, setup_intent_id, payment_method_id, return_url):
        intent = await self._call(
            stripe.SetupIntent.confirm,
            intent=setup_intent_id,
            payment_method=payment_method_id,
            return_url=return_url,
        )
        return self._setup_intent(intent)

    async def retrieve_setup_intent(self, setup_intent_id):
        intent = await self._call(stripe.SetupIntent.retrieve, id=setup_intent_id)
        return self._setup_intent(intent)

    async def create_charge(self, amount_cents, currency, customer_id, payment_method_id, metadata):
        intent = await self._call(
            stripe.PaymentIntent.create,
            amount=amount_cents,
            currency=currency,
            customer=customer_id,
            payment_method=payment_method_id,
            confirm=True,
            automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
            metadata=metadata,
        )
        return Charge(id=intent.id, status=intent.status, amount_cents=intent.amount)

    async def create_refund(self, charge_id):
        refund = await self._call(stripe.Refund.create, payment_intent=charge_id)
        return Refund(id=refund.id, status=refund.status, charge_id=charge_id)

    @staticmethod
    def _setup_intent(intent: Any) -> SetupIntent:
        return SetupIntent(
            id=intent.id,
            status=intent.status,
            customer=_id_of(intent.customer),
            payment_method=_id_of(intent.payment_method),
            client_secret=intent.client_secret,
        )
