"""Payment setup saga.

Saves a card on file for a booking and finalizes the order as one logical
unit:

1. initialize       saga record in `pending` with the raw params
2. create_order     draft order (`pending`)
3. save_payment_method
                    resolve the gateway customer, repair the card's
                    attachment, create + confirm a setup intent
4. validate_card    authenticated users only, when a validation amount is
                    configured: tiny charge, refunded at once
5. finalize_order   draft -> ready, gateway ids attached

Each forward step pushes its undo closure right after it succeeds and the step
list is persisted before the next step starts. On any failure the closures run
in reverse, the record is marked `failed`, and the original error is re-raised.
"""

import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from typing import Any
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError

from washbook.common.circuit_breaker import CircuitOpenError
from washbook.common.config import CommonSettings, settings
from washbook.common.db import utcnow
from washbook.common.errors import OrderConflictError, SagaError
from washbook.common.logging import log_context, logger
from washbook.common.metrics import saga_compensations_total, saga_duration_seconds, saga_executions_total
from washbook.common.payment_errors import GatewayError, GatewayErrorKind, PaymentMethodNotFoundError
from washbook.common.state_machine import DRAFT_STATUS, READY_STATUS, ensure_transition
from washbook.common.tracing import trace_operation
from washbook.services.booking.gateway import PaymentGateway
from washbook.services.booking.models import Order, OrderEvent, PaymentSaga, Profile
from washbook.services.booking.schemas import BookingParams

SAGA_TYPE = "payment_authorization"

Compensation = Callable[[], Awaitable[None]]


@dataclass
class SagaStep:
    type: str
    data: dict[str, Any]
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))


@dataclass
class SetupResult:
    setup_intent_id: str
    payment_method_id: str
    customer_id: str
    status: str
    requires_action: bool
    client_secret: str | None = None


class PaymentSetupSaga:
    """One execution per instance; callers retry by building a new saga."""

    def __init__(
        self,
        session_factory,
        gateway: PaymentGateway,
        config: CommonSettings = settings,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.config = config
        self.saga_id: str | None = None
        self.steps: list[SagaStep] = []
        self._compensations: list[tuple[str, Compensation]] = []

    async def execute(self, params: BookingParams) -> Order:
        """Run every step and return the finalized order, or compensate and re-raise."""

        started = time.perf_counter()
        outcome = "failed"
        try:
            order = await trace_operation(
                "payment_setup_saga",
                lambda: self._run(params),
                attributes={
                    "user_id": params.user_id or "guest",
                    "service_category": params.service_category,
                    "estimated_amount_cents": params.estimated_amount_cents,
                },
            )
            outcome = "completed"
            return order
        finally:
            saga_executions_total.labels(service=self.config.service_name, outcome=outcome).inc()
            saga_duration_seconds.labels(service=self.config.service_name, outcome=outcome).observe(
                time.perf_counter() - started
            )

    async def _run(self, params: BookingParams) -> Order:
        await self._traced("initialize", lambda: self._initialize(params))
        with log_context(saga_id=self.saga_id):
            try:
                order_id = await self._traced("create_order", lambda: self._create_draft_order(params))
                self._push("create_order", {"order_id": order_id}, lambda: self._delete_order(order_id))
                with log_context(order_id=order_id):
                    order = await self._run_payment_steps(params, order_id)
                await self._traced("complete", self._complete)
            except Exception as exc:
                await self.compensate(exc)
                raise
            logger.info(
                "payment_saga_success saga_id=%s order_id=%s steps_completed=%s",
                self.saga_id,
                order.id,
                len(self.steps),
            )
            return order

    async def _run_payment_steps(self, params: BookingParams, order_id: str) -> Order:
        setup = await self._traced("save_payment_method", lambda: self._save_payment_method(params, order_id))
        self._push(
            "save_payment_method",
            {
                "setup_intent_id": setup.setup_intent_id,
                "payment_method_id": setup.payment_method_id,
                "customer_id": setup.customer_id,
            },
            lambda: self._keep_payment_method(setup.payment_method_id),
        )

        card_validated = False
        if self._should_validate(params, setup):
            charge_id = await self._traced("validate_card", lambda: self._validate_card(setup))
            self._push(
                "validate_card",
                {"payment_method_id": setup.payment_method_id, "validated": True, "validation_charge_id": charge_id},
                self._validation_already_refunded,
            )
            card_validated = True

        order = await self._traced("finalize_order", lambda: self._finalize_order(order_id, setup, card_validated))
        self._push("finalize_order", {"order_id": order.id}, lambda: self._delete_order(order.id))
        return order

    def _should_validate(self, params: BookingParams, setup: SetupResult) -> bool:
        # A card waiting on a customer challenge cannot be charged yet.
        return not params.is_guest and self.config.card_validation_amount() > 0 and not setup.requires_action

    async def _traced(self, step_type: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        async def run() -> Any:
            try:
                return await fn()
            except SQLAlchemyError as exc:
                raise SagaError(f"{step_type} failed: {exc}") from exc

        return await trace_operation(f"payment_saga.{step_type}", run, attributes={"saga_id": self.saga_id})

    def _push(self, step_type: str, data: dict[str, Any], undo: Compensation) -> None:
        """Record a finished forward step with its undo action, then persist the step list."""

        self._compensations.append((step_type, undo))
        self.steps.append(SagaStep(step_type, data))
        try:
            self._write_saga(steps=self._step_records())
        except SQLAlchemyError as exc:
            raise SagaError(f"failed to record step {step_type}: {exc}") from exc

    def _step_records(self) -> list[dict[str, Any]]:
        return [asdict(step) for step in self.steps]

    def _write_saga(self, **values: Any) -> None:
        with self.session_factory() as db:
            db.execute(update(PaymentSaga).where(PaymentSaga.id == self.saga_id).values(updated_at=utcnow(), **values))
            db.commit()

    # Forward steps

    async def _initialize(self, params: BookingParams) -> None:
        self.saga_id = str(uuid4())
        self.steps.append(SagaStep("initialize", {"saga_id": self.saga_id}))
        with self.session_factory() as db:
            db.add(
                PaymentSaga(
                    id=self.saga_id,
                    type=SAGA_TYPE,
                    status="pending",
                    params=params.model_dump(mode="json"),
                    steps=self._step_records(),
                )
            )
            db.commit()
        logger.info("payment_saga_initialized saga_id=%s", self.saga_id)

    async def _create_draft_order(self, params: BookingParams) -> str:
        order_id = str(uuid4())
        guest = {}
        if params.is_guest:
            guest = {
                "guest_name": params.guest_name,
                "guest_email": params.guest_email,
                "guest_phone": params.guest_phone,
            }
        with self.session_factory() as db:
            db.add(
                Order(
                    id=order_id,
                    saga_id=self.saga_id,
                    user_id=params.user_id,
                    service_type=params.service_type.value,
                    service_category=params.service_category,
                    partner_id=params.slot.partner_id,
                    slot_start=params.slot.slot_start,
                    slot_end=params.slot.slot_end,
                    delivery_slot_start=params.delivery_slot.slot_start if params.delivery_slot else None,
                    delivery_slot_end=params.delivery_slot.slot_end if params.delivery_slot else None,
                    status=DRAFT_STATUS.value,
                    subtotal_cents=params.estimated_amount_cents,
                    tax_cents=0,
                    delivery_cents=0,
                    total_cents=params.estimated_amount_cents,
                    order_details=params.details,
                    address_snapshot={**params.address.model_dump(), "phone": params.contact_phone()},
                    version=0,
                    **guest,
                )
            )
            db.add(OrderEvent(order_id=order_id, from_status=None, to_status=DRAFT_STATUS.value, reason="saga_draft"))
            db.commit()
        logger.info("saga_order_created saga_id=%s order_id=%s status=%s", self.saga_id, order_id, DRAFT_STATUS)
        return order_id

    async def _save_payment_method(self, params: BookingParams, order_id: str) -> SetupResult:
        customer_id = await self._resolve_customer(params)
        await self._repair_attachment(params.payment_method_id, customer_id)

        intent = await self.gateway.create_setup_intent(
            customer_id,
            metadata={
                "order_id": order_id,
                "user_id": params.user_id or "guest",
                "guest_email": params.guest_email or "",
                "saga_id": self.saga_id,
            },
        )
        confirmed = await self.gateway.confirm_setup_intent(
            intent.id,
            params.payment_method_id,
            return_url=f"{self.config.public_base_url}/orders/{order_id}/setup-complete",
        )
        logger.info(
            "saga_payment_method_saved setup_intent_id=%s payment_method_id=%s status=%s",
            confirmed.id,
            confirmed.payment_method,
            confirmed.status,
        )
        return SetupResult(
            setup_intent_id=confirmed.id,
            payment_method_id=confirmed.payment_method or params.payment_method_id,
            customer_id=customer_id,
            status=confirmed.status,
            requires_action=confirmed.requires_action,
            client_secret=confirmed.client_secret if confirmed.requires_action else None,
        )

    async def _repair_attachment(self, payment_method_id: str, customer_id: str) -> None:
        """Move a card attached to another customer over to `customer_id`."""

        try:
            method = await self.gateway.retrieve_payment_method(payment_method_id)
        except GatewayError as exc:
            if exc.code == "resource_missing":
                logger.error(
                    "payment_method_not_found payment_method_id=%s gateway_mode=%s",
                    payment_method_id,
                    self.gateway.mode,
                )
                raise PaymentMethodNotFoundError(payment_method_id, self.gateway.mode) from exc
            # The confirm call surfaces real card problems.
            logger.warning("payment_method_check_skipped payment_method_id=%s error=%s", payment_method_id, exc)
            return
        except CircuitOpenError as exc:
            logger.warning("payment_method_check_skipped payment_method_id=%s error=%s", payment_method_id, exc)
            return

        if method.customer and method.customer != customer_id:
            logger.info(
                "payment_method_reattachment_needed payment_method_id=%s old_customer=%s new_customer=%s",
                payment_method_id,
                method.customer,
                customer_id,
            )
            await self.gateway.detach_payment_method(payment_method_id)
            await self.gateway.attach_payment_method(payment_method_id, customer_id)
            logger.info("payment_method_reattached payment_method_id=%s customer_id=%s", payment_method_id, customer_id)

    async def _resolve_customer(self, params: BookingParams) -> str:
        if params.is_guest:
            customer = await self.gateway.create_customer(
                params.guest_email,
                params.guest_name,
                metadata={"is_guest": "true", "guest_email": params.guest_email or ""},
            )
            logger.info("gateway_customer_created_guest customer_id=%s", customer.id)
            return customer.id

        with self.session_factory() as db:
            profile = db.get(Profile, params.user_id)
        if profile is None:
            raise SagaError(f"Profile {params.user_id} not found", code="PROFILE_NOT_FOUND")
        if profile.stripe_customer_id:
            return profile.stripe_customer_id

        customer = await self.gateway.create_customer(
            profile.email,
            profile.name,
            metadata={"user_id": params.user_id},
            idempotency_key=f"customer-{params.user_id}",
        )
        with self.session_factory() as db:
            # First writer wins; a concurrent saga may have stored its customer already.
            result = db.execute(
                update(Profile)
                .where(Profile.id == params.user_id, Profile.stripe_customer_id.is_(None))
                .values(stripe_customer_id=customer.id)
            )
            db.commit()
            if result.rowcount == 1:
                logger.info("gateway_customer_created user_id=%s customer_id=%s", params.user_id, customer.id)
                return customer.id
            stored = db.execute(select(Profile.stripe_customer_id).where(Profile.id == params.user_id)).scalar_one()
        logger.info(
            "gateway_customer_race_lost user_id=%s kept=%s discarded=%s", params.user_id, stored, customer.id
        )
        return stored

    async def _validate_card(self, setup: SetupResult) -> str:
        charge = await self.gateway.create_charge(
            self.config.card_validation_amount(),
            self.config.currency,
            setup.customer_id,
            setup.payment_method_id,
            metadata={"type": "card_validation", "saga_id": self.saga_id},
        )
        if charge.status != "succeeded":
            raise GatewayError(
                GatewayErrorKind.CARD,
                f"Card validation charge ended in status {charge.status}",
                code="card_declined",
            )
        await self.gateway.create_refund(charge.id)
        logger.info(
            "saga_card_validated payment_method_id=%s validation_charge_id=%s", setup.payment_method_id, charge.id
        )
        return charge.id

    async def _finalize_order(self, order_id: str, setup: SetupResult, card_validated: bool) -> Order:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise SagaError("Order not found during finalization")
            user_id = order.user_id
            if user_id:
                customer_id = db.execute(select(Profile.stripe_customer_id).where(Profile.id == user_id)).scalar()
            else:
                customer_id = None

        if not user_id:
            intent = await self.gateway.retrieve_setup_intent(setup.setup_intent_id)
            customer_id = intent.customer
        if not customer_id:
            raise SagaError("Gateway customer id not found for order identity")

        with self.session_factory() as db:
            order = db.get(Order, order_id)
            ensure_transition(
                order.status,
                READY_STATUS,
                order.service_type,
                {"saved_payment_method_id": setup.payment_method_id, "paid_at": order.paid_at},
            )
            from_status, version = order.status, order.version
            result = db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == from_status, Order.version == version)
                .values(
                    status=READY_STATUS.value,
                    setup_intent_id=setup.setup_intent_id,
                    saved_payment_method_id=setup.payment_method_id,
                    stripe_customer_id=customer_id,
                    payment_method_saved_at=utcnow(),
                    card_validated=card_validated,
                    setup_status=setup.status,
                    setup_client_secret=setup.client_secret,
                    version=version + 1,
                    updated_at=utcnow(),
                )
            )
            if result.rowcount != 1:
                raise OrderConflictError(f"order {order_id} changed during finalization (expected version {version})")
            db.add(
                OrderEvent(order_id=order_id, from_status=from_status, to_status=READY_STATUS.value, reason="payment_method_saved")
            )
            db.commit()
            db.refresh(order)
        logger.info(
            "saga_order_finalized order_id=%s status=%s is_guest=%s", order_id, READY_STATUS, user_id is None
        )
        return order

    async def _complete(self) -> None:
        self._write_saga(status="completed", steps=self._step_records(), completed_at=utcnow())

    # Compensation

    async def _delete_order(self, order_id: str) -> None:
        with self.session_factory() as db:
            db.execute(delete(OrderEvent).where(OrderEvent.order_id == order_id))
            deleted = db.execute(delete(Order).where(Order.id == order_id)).rowcount
            db.commit()
        logger.info("saga_compensation_order_deleted order_id=%s rows=%s", order_id, deleted)

    async def _keep_payment_method(self, payment_method_id: str) -> None:
        # Left attached: an unused saved card costs nothing, a failed detach would.
        logger.info("saga_compensation_payment_method_kept payment_method_id=%s", payment_method_id)

    async def _validation_already_refunded(self) -> None:
        logger.info("saga_compensation_validation_skipped saga_id=%s", self.saga_id)

    async def compensate(self, error: BaseException) -> None:
        """Undo recorded steps newest first, then mark the record failed.

        Safe to call again on the same saga: every undo action is idempotent
        and compensation failures are logged, never raised.
        """

        logger.error(
            "payment_saga_compensation_start error=%s steps_to_compensate=%s",
            error,
            len(self._compensations),
        )
        for step_type, undo in reversed(self._compensations):
            try:
                await undo()
            except Exception:
                saga_compensations_total.labels(service=self.config.service_name, step=step_type, result="failed").inc()
                logger.exception("saga_compensation_error step_type=%s", step_type)
            else:
                saga_compensations_total.labels(service=self.config.service_name, step=step_type, result="ok").inc()

        if self.saga_id is None:
            return
        try:
            self._write_saga(
                status="failed",
                error_message=str(error) or type(error).__name__,
                steps=self._step_records(),
                completed_at=utcnow(),
            )
        except Exception:
            logger.exception("payment_saga_mark_failed_error saga_id=%s", self.saga_id)
        logger.error("payment_saga_failed error=%s steps_completed=%s", error, len(self.steps))
