"""Transactional outbox: enqueue inside the business transaction, publish later.

Helpers take the service's own outbox model so any service with an
`outbox_events` table (id, topic, payload, status, created_at, sent_at) can
share the claim/mark/requeue cycle.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update

from washbook.common.events import EventEnvelope, KafkaBus
from washbook.common.logging import logger
from washbook.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total

PENDING = "PENDING"
PROCESSING = "PROCESSING"
SENT = "SENT"


def enqueue_event(db, outbox_model, topic: str, event: EventEnvelope, aggregate_type: str = "order"):
    """Add one outbox row to `db`; the caller commits."""

    row = outbox_model(
        aggregate_type=aggregate_type,
        aggregate_id=event.aggregate_id,
        event_type=event.event_type,
        topic=topic,
        payload=event.model_dump(),
        status=PENDING,
    )
    db.add(row)
    return row


def claim_outbox_batch(db, outbox_model, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Flip a batch of pending rows (or stale claims) to PROCESSING and return them."""

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claimable = (
        select(table.c.id)
        .where(
            or_(
                table.c.status == PENDING,
                (table.c.status == PROCESSING) & table.c.sent_at.is_not(None) & (table.c.sent_at < stale_before),
            )
        )
        .order_by(table.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .cte("claimable")
    )
    rows = db.execute(
        update(table)
        .where(table.c.id.in_(select(claimable.c.id)))
        .values(status=PROCESSING, sent_at=now)
        .returning(table.c.id, table.c.topic, table.c.payload)
    ).all()
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]


def mark_outbox_sent(db, outbox_model, row_id: str) -> None:
    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == row_id, table.c.status == PROCESSING)
        .values(status=SENT, sent_at=datetime.now(timezone.utc))
    )


def requeue_outbox_event(db, outbox_model, row_id: str) -> None:
    table = outbox_model.__table__
    db.execute(
        update(table).where(table.c.id == row_id, table.c.status == PROCESSING).values(status=PENDING, sent_at=None)
    )


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    """Refresh the pending-depth and oldest-age gauges."""

    table = outbox_model.__table__
    unsent = table.c.status.in_((PENDING, PROCESSING))
    pending_count = db.execute(select(func.count()).select_from(table).where(unsent)).scalar_one()
    oldest = db.execute(select(func.min(table.c.created_at)).where(unsent)).scalar_one()
    age_seconds = 0.0
    if oldest is not None:
        if oldest.tzinfo is None:
            oldest = oldest.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (datetime.now(timezone.utc) - oldest).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)


class OutboxPublisher:
    """Polls the outbox and publishes claimed rows to Kafka."""

    def __init__(self, session_factory, outbox_model, bus: KafkaBus, service_name: str, interval: float = 0.5) -> None:
        self.session_factory = session_factory
        self.outbox_model = outbox_model
        self.bus = bus
        self.service_name = service_name
        self.interval = interval

    async def publish_once(self) -> int:
        """Publish one claimed batch; returns the number of rows sent."""

        with self.session_factory() as db:
            rows = claim_outbox_batch(db, self.outbox_model)
            update_outbox_backlog_metrics(db, self.outbox_model, self.service_name)
            db.commit()
        sent = 0
        for row in rows:
            try:
                await self.bus.publish(row["topic"], EventEnvelope(**row["payload"]))
            except Exception:
                logger.exception("outbox_publish_failed id=%s topic=%s", row["id"], row["topic"])
                with self.session_factory() as db:
                    requeue_outbox_event(db, self.outbox_model, row["id"])
                    db.commit()
                continue
            with self.session_factory() as db:
                mark_outbox_sent(db, self.outbox_model, row["id"])
                db.commit()
            sent += 1
        return sent

    async def run_forever(self) -> None:
        while True:
            try:
                await self.publish_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("outbox_poll_failed service=%s", self.service_name)
            await asyncio.sleep(self.interval)
