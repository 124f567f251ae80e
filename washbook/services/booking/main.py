"""Booking HTTP service: card-on-file booking, order lifecycle, slots, admin.

Collaborators live in a `BookingContainer` on `app.state` so tests can swap
in an in-memory database and a fake gateway.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date
from time import perf_counter
from typing import Any
from uuid import uuid4

import redis
import stripe
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from washbook.common.circuit_breaker import CircuitOpenError
from washbook.common.config import CommonSettings, settings
from washbook.common.db import SessionLocal
from washbook.common.errors import BookingError, BookingValidationError, FeatureNotEnabledError
from washbook.common.events import KafkaBus
from washbook.common.logging import configure_logging, logger, trace_id_ctx
from washbook.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from washbook.common.outbox import OutboxPublisher
from washbook.common.payment_errors import GatewayError, create_error_response, log_payment_error
from washbook.common.rollout import RolloutPolicy
from washbook.common.startup import log_startup_config
from washbook.common.state_machine import get_next_statuses, get_progress, get_status_section
from washbook.common.tracing import extract_trace_context, instrument_app, setup_tracing
from washbook.services.booking.gateway import GuardedGateway, PaymentGateway, ResilienceRegistry
from washbook.services.booking.models import Order, OutboxEvent
from washbook.services.booking.reconcile import SagaReconciler
from washbook.services.booking.schemas import (
    BookingParams,
    CancelRequest,
    OrderResponse,
    PaymentSetupRequest,
    PaymentSetupResponse,
    SlotResponse,
    SweepResponse,
    TransitionRequest,
)
from washbook.services.booking.service import BookingService
from washbook.services.booking.stripe_gateway import StripeGateway, stripe_mode
from washbook.services.booking.webhooks import SetupIntentWebhooks
from washbook.services.capacity.service import CapacityService


@dataclass
class BookingContainer:
    registry: ResilienceRegistry
    gateway: PaymentGateway
    capacity: CapacityService
    bookings: BookingService
    reconciler: SagaReconciler
    rollout: RolloutPolicy
    webhooks: SetupIntentWebhooks
    cache: redis.Redis | None = None
    webhook_secret: str = ""
    webhook_tolerance_seconds: int = 300


def build_container(
    session_factory=SessionLocal,
    gateway: PaymentGateway | None = None,
    config: CommonSettings = settings,
    cache: redis.Redis | None = None,
    registry: ResilienceRegistry | None = None,
) -> BookingContainer:
    """Wire the booking collaborators; `gateway` defaults to Stripe."""

    registry = registry or ResilienceRegistry.from_settings(config)
    inner = gateway or StripeGateway(config.stripe_secret_key, config.stripe_api_version)
    guarded = GuardedGateway(inner, registry)
    capacity = CapacityService(session_factory, config)
    bookings = BookingService(session_factory, guarded, capacity, config)
    return BookingContainer(
        registry=registry,
        gateway=guarded,
        capacity=capacity,
        bookings=bookings,
        reconciler=SagaReconciler(session_factory, capacity, config),
        rollout=RolloutPolicy.from_settings(config),
        webhooks=SetupIntentWebhooks(session_factory, bookings, config),
        cache=cache,
        webhook_secret=config.stripe_webhook_secret,
        webhook_tolerance_seconds=config.stripe_webhook_tolerance_seconds,
    )


configure_logging()
if settings.tracing_enabled:
    setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "postgres_dsn",
        "kafka_bootstrap_servers",
        "redis_url",
        "stripe_secret_key",
        "stripe_webhook_secret",
        "payment_auth_enabled",
        "payment_auth_percentage",
        "quota_max_requests_per_second",
    ],
    stripe_mode=stripe_mode(settings.stripe_secret_key),
    card_validation_amount_cents=settings.card_validation_amount(),
)
kafka = KafkaBus()
publisher = OutboxPublisher(SessionLocal, OutboxEvent, kafka, settings.service_name)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher with the app lifecycle."""

    publisher_task = asyncio.create_task(publisher.run_forever())
    yield
    publisher_task.cancel()
    await kafka.close()


app = FastAPI(title="Washbook Booking Service", lifespan=lifespan)
instrument_app(app)
app.state.container = build_container(cache=redis.Redis.from_url(settings.redis_url, decode_responses=True))


def get_container(request: Request) -> BookingContainer:
    return request.app.state.container


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(service=settings.service_name, route=route, method=method).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name, route=route, method=method, status_code=str(status_code)
        ).inc()


@app.exception_handler(BookingError)
async def booking_error_handler(_: Request, exc: BookingError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message, "code": exc.code})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    details = [{"loc": list(error["loc"]), "msg": error["msg"]} for error in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Invalid request parameters", "code": "VALIDATION_ERROR", "details": details},
    )


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def _idempotency_cache_key(identity: str, idempotency_key: str) -> str:
    # Scoped by identity so two customers cannot collide on a client-chosen key.
    return f"idempotency:payment-setup:{identity}:{idempotency_key}"


def _cache_get(cache: redis.Redis | None, key: str) -> dict[str, Any] | None:
    if cache is None:
        return None
    try:
        cached = cache.get(key)
    except Exception as exc:
        logger.warning("idempotency_cache_read_failed: %s", exc)
        return None
    return json.loads(cached) if cached else None


def _cache_put(cache: redis.Redis | None, key: str, payload: dict[str, Any]) -> None:
    if cache is None:
        return
    try:
        cache.setex(key, settings.idempotency_ttl_seconds, json.dumps(payload))
    except Exception as exc:
        logger.warning("idempotency_cache_write_failed: %s", exc)


def _booking_params(req: PaymentSetupRequest, user_id: str | None, rollout: RolloutPolicy) -> BookingParams:
    if user_id:
        if req.has_any_guest_field():
            raise BookingValidationError("Signed-in bookings must not carry guest fields", code="IDENTITY_CONFLICT")
        if not rollout.is_enabled_for(user_id):
            raise FeatureNotEnabledError("Payment setup not available for your account")
    elif not req.has_guest_identity():
        raise BookingValidationError(
            "Guest bookings require guest_name, guest_email, and guest_phone", code="GUEST_INFO_REQUIRED"
        )
    try:
        return BookingParams.model_validate({**req.model_dump(), "user_id": user_id})
    except ValidationError as exc:
        raise BookingValidationError(str(exc)) from exc


@app.post("/payments/setup", status_code=201, response_model=PaymentSetupResponse)
async def setup_payment(
    req: PaymentSetupRequest,
    container: BookingContainer = Depends(get_container),
    x_user_id: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
    x_span_id: str | None = Header(default=None),
    idempotency_key: str | None = Header(default=None),
):
    """Save a card on file and book the pickup slot.

    Replays the stored response when the same identity repeats an
    idempotency key.
    """

    incoming = extract_trace_context({"x-trace-id": x_trace_id or "", "x-span-id": x_span_id or ""})
    trace_id_ctx.set(incoming.trace_id if incoming else uuid4().hex)
    params = _booking_params(req, x_user_id, container.rollout)

    cache_key = None
    if idempotency_key:
        cache_key = _idempotency_cache_key(x_user_id or params.guest_email, idempotency_key)
        cached = _cache_get(container.cache, cache_key)
        if cached:
            return cached

    logger.info(
        "payment_setup_request user_id=%s is_guest=%s service_category=%s estimated_amount=%s",
        x_user_id or "guest",
        params.is_guest,
        params.service_category,
        params.estimated_amount_cents,
    )
    try:
        result = await container.bookings.book(params)
    except (GatewayError, CircuitOpenError) as exc:
        classified = log_payment_error(exc, None, "setup", user_id=x_user_id or "guest")
        status = 503 if isinstance(exc, CircuitOpenError) else 402
        return JSONResponse(status_code=status, content={"success": False, **create_error_response(classified)})

    order = result.order
    payload = PaymentSetupResponse(
        order_id=order.id,
        requires_action=result.requires_action,
        client_secret=result.client_secret if result.requires_action else None,
        setup_intent_id=order.setup_intent_id,
        payment_method_saved=True,
        card_validated=order.card_validated,
    ).model_dump()
    logger.info(
        "payment_setup_success order_id=%s requires_action=%s card_validated=%s",
        order.id,
        payload["requires_action"],
        payload["card_validated"],
    )
    if cache_key:
        _cache_put(container.cache, cache_key, payload)
    return payload


def _order_response(order: Order) -> OrderResponse:
    response = OrderResponse.model_validate(order)
    response.progress = get_progress(order.status, order.service_type)
    response.section = get_status_section(order.status)
    response.next_statuses = [status.value for status in get_next_statuses(order.status, order.service_type)]
    return response


@app.get("/orders/{order_id}", response_model=OrderResponse)
def get_order(order_id: str, container: BookingContainer = Depends(get_container)):
    return _order_response(container.bookings.get_order(order_id))


@app.post("/orders/{order_id}/transition", response_model=OrderResponse)
def transition_order(order_id: str, req: TransitionRequest, container: BookingContainer = Depends(get_container)):
    """Move an order along its service flow; illegal moves answer 409."""

    return _order_response(container.bookings.transition(order_id, req.to_status.value, req.reason))


@app.post("/orders/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(order_id: str, req: CancelRequest, container: BookingContainer = Depends(get_container)):
    return _order_response(await container.bookings.cancel(order_id, req.reason))


@app.get("/slots", response_model=list[SlotResponse])
async def list_slots(
    service_type: str = Query(pattern="^(LAUNDRY|CLEANING)$"),
    day: date = Query(alias="date"),
    container: BookingContainer = Depends(get_container),
):
    """Available windows for one day, generating the day's slots on first use."""

    await container.capacity.ensure_slots_exist(service_type, day)
    return await container.capacity.get_available_slots(service_type, day)


@app.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    container: BookingContainer = Depends(get_container),
    stripe_signature: str | None = Header(default=None),
):
    """Setup intent outcomes from Stripe; the signature is checked before anything is read."""

    if not container.webhook_secret:
        logger.error("stripe_webhook_secret_missing")
        raise HTTPException(status_code=503, detail="webhook secret not configured")
    if not stripe_signature:
        raise HTTPException(status_code=400, detail="missing signature")
    body = await request.body()
    try:
        stripe.Webhook.construct_event(
            body, stripe_signature, container.webhook_secret, tolerance=container.webhook_tolerance_seconds
        )
    except (ValueError, stripe.SignatureVerificationError) as exc:
        logger.warning("stripe_webhook_signature_invalid: %s", exc)
        raise HTTPException(status_code=400, detail="invalid signature") from exc
    # Handlers read the plain JSON rather than SDK objects.
    outcome = await container.webhooks.handle(json.loads(body))
    return {"received": True, "outcome": outcome}


@app.get("/internal/resilience")
def resilience_stats(
    container: BookingContainer = Depends(get_container), x_api_key: str | None = Header(default=None)
):
    enforce_api_key(x_api_key)
    return container.registry.stats()


@app.post("/internal/circuit-breakers/{name}/reset")
def reset_circuit_breaker(
    name: str, container: BookingContainer = Depends(get_container), x_api_key: str | None = Header(default=None)
):
    enforce_api_key(x_api_key)
    breaker = container.registry.breakers.get(name)
    if breaker is None:
        raise HTTPException(status_code=404, detail="circuit breaker not found")
    breaker.reset()
    return breaker.stats()


@app.post("/internal/sagas/sweep", response_model=SweepResponse)
async def sweep_stuck_sagas(
    container: BookingContainer = Depends(get_container), x_api_key: str | None = Header(default=None)
):
    """Resolve payment setup sagas stuck in `pending`."""

    enforce_api_key(x_api_key)
    report = await container.reconciler.sweep()
    return SweepResponse(examined=report.examined, completed=report.completed, abandoned=report.abandoned)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
