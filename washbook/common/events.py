"""Kafka envelope plus producer/consumer helpers for booking events."""

import asyncio
import json
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import BaseModel, Field

from washbook.common.config import settings
from washbook.common.logging import log_context, logger
from washbook.common.metrics import event_queue_delay_seconds

ORDERS_BOOKED_TOPIC = "orders.booked"


class EventEnvelope(BaseModel):
    """Event shape on every topic; `aggregate_id` is the order id."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str
    payload: dict[str, Any]


class KafkaBus:
    """Lazily started producer shared by a service's outbox publisher."""

    def __init__(self) -> None:
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=settings.kafka_bootstrap_servers)
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self.producer()
        await producer.send_and_wait(
            topic,
            json.dumps(event.model_dump()).encode("utf-8"),
            key=event.aggregate_id.encode("utf-8"),
        )

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()
            self._producer = None


def _queue_delay_seconds(event: EventEnvelope) -> float:
    occurred_at = datetime.fromisoformat(event.occurred_at.replace("Z", "+00:00"))
    return max(0.0, (datetime.now(timezone.utc) - occurred_at.astimezone(timezone.utc)).total_seconds())


async def dispatch(topic: str, group_id: str, raw: bytes, handler: Callable[[EventEnvelope], Awaitable[None]]) -> None:
    """Decode one message and run `handler` with correlation ids bound."""

    event = EventEnvelope(**json.loads(raw.decode("utf-8")))
    event_queue_delay_seconds.labels(service=settings.service_name, topic=topic).observe(
        _queue_delay_seconds(event)
    )
    with log_context(trace_id=event.trace_id, event_id=event.event_id, order_id=event.aggregate_id):
        logger.info(
            "event_received topic=%s group=%s event_type=%s order_id=%s",
            topic,
            group_id,
            event.event_type,
            event.aggregate_id,
        )
        await handler(event)


async def consume_forever(
    topic: str,
    group_id: str,
    handler: Callable[[EventEnvelope], Awaitable[None]],
) -> None:
    """Consume `topic` until cancelled.

    A bad message is logged and skipped; a broken consumer is rebuilt after a
    short pause. Offsets are committed once per fetched batch.
    """

    while True:
        consumer = None
        try:
            consumer = AIOKafkaConsumer(
                topic,
                bootstrap_servers=settings.kafka_bootstrap_servers,
                group_id=group_id,
                auto_offset_reset="earliest",
                enable_auto_commit=False,
            )
            await consumer.start()
            while True:
                batches = await consumer.getmany(timeout_ms=500, max_records=50)
                for messages in batches.values():
                    for msg in messages:
                        try:
                            await dispatch(topic, group_id, msg.value, handler)
                        except Exception as exc:
                            logger.error(
                                "handler_error topic=%s group=%s offset=%s error=%s",
                                topic,
                                group_id,
                                msg.offset,
                                exc,
                            )
                if batches:
                    await consumer.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("consumer_loop_error topic=%s group=%s error=%s", topic, group_id, exc)
            await asyncio.sleep(2)
        finally:
            if consumer is not None:
                await consumer.stop()
