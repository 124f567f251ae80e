"""Sweep for payment setup sagas left `pending` by a crash between steps.

A saga whose order left the draft status had committed; only the final
bookkeeping write was lost, so the record is marked completed. The order may
have moved on since (canceled, picked up), and its slot is then either still
held by it or already handed back by the cancel, so capacity is left alone.
Anything else is discarded: draft orders carrying the saga id are deleted,
the record is marked failed and the slot reservation is released. The sweep never calls the payment gateway; a card
saved before the crash stays attached, same as during normal compensation.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update

from washbook.common.config import CommonSettings, settings
from washbook.common.db import as_utc, utcnow
from washbook.common.logging import logger
from washbook.common.metrics import stuck_sagas_swept_total
from washbook.common.state_machine import DRAFT_STATUS
from washbook.services.booking.models import Order, OrderEvent, PaymentSaga
from washbook.services.capacity.service import CapacityService


@dataclass
class SweepReport:
    examined: int = 0
    completed: list[str] = field(default_factory=list)
    abandoned: list[str] = field(default_factory=list)


class SagaReconciler:
    def __init__(self, session_factory, capacity: CapacityService | None = None, config: CommonSettings = settings) -> None:
        self.session_factory = session_factory
        self.capacity = capacity
        self.config = config

    def find_stuck(self, now: datetime | None = None) -> list[str]:
        cutoff = (as_utc(now) if now else utcnow()) - timedelta(seconds=self.config.saga_stale_after_seconds)
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(PaymentSaga.id)
                    .where(PaymentSaga.status == "pending", PaymentSaga.created_at < cutoff)
                    .order_by(PaymentSaga.created_at)
                ).scalars()
            )

    async def sweep(self, now: datetime | None = None) -> SweepReport:
        report = SweepReport()
        for saga_id in self.find_stuck(now):
            report.examined += 1
            action, params = self._resolve(saga_id)
            if action == "completed":
                report.completed.append(saga_id)
            elif action == "abandoned":
                await self._release_capacity(saga_id, params)
                report.abandoned.append(saga_id)
        logger.info(
            "saga_sweep_finished examined=%s completed=%s abandoned=%s",
            report.examined,
            len(report.completed),
            len(report.abandoned),
        )
        return report

    async def _release_capacity(self, saga_id: str, params: dict) -> None:
        """Every saga record was preceded by a slot reservation; hand it back."""

        slot = params.get("slot") or {}
        if self.capacity is None or not slot:
            return
        try:
            await self.capacity.release(
                slot["partner_id"], params["service_type"], datetime.fromisoformat(slot["slot_start"])
            )
        except Exception:
            logger.exception("saga_sweep_release_failed saga_id=%s", saga_id)

    def _resolve(self, saga_id: str) -> tuple[str | None, dict]:
        with self.session_factory() as db:
            params = db.execute(select(PaymentSaga.params).where(PaymentSaga.id == saga_id)).scalar_one()
            orders = db.execute(select(Order).where(Order.saga_id == saga_id)).scalars().all()
            committed = [order for order in orders if order.status != DRAFT_STATUS]
            if committed:
                values = {"status": "completed", "completed_at": utcnow(), "updated_at": utcnow()}
                action = "completed"
            else:
                draft_ids = [order.id for order in orders if order.status == DRAFT_STATUS]
                if draft_ids:
                    db.execute(delete(OrderEvent).where(OrderEvent.order_id.in_(draft_ids)))
                    db.execute(delete(Order).where(Order.id.in_(draft_ids)))
                values = {
                    "status": "failed",
                    "error_message": "abandoned: saga did not finish before the stale deadline",
                    "completed_at": utcnow(),
                    "updated_at": utcnow(),
                }
                action = "abandoned"
            # Only resolve records still pending; a late-finishing saga wins.
            result = db.execute(
                update(PaymentSaga).where(PaymentSaga.id == saga_id, PaymentSaga.status == "pending").values(**values)
            )
            if result.rowcount != 1:
                db.rollback()
                return None, params
            db.commit()
        stuck_sagas_swept_total.labels(service=self.config.service_name, action=action).inc()
        logger.warning("stuck_saga_resolved saga_id=%s action=%s", saga_id, action)
        return action, params
