"""Notification service lifecycle and lightweight read endpoints."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy import select

from washbook.common.config import settings
from washbook.common.db import SessionLocal
from washbook.common.logging import configure_logging
from washbook.common.metrics import metrics_response
from washbook.common.startup import log_startup_config
from washbook.common.tracing import instrument_app, setup_tracing
from washbook.services.notification.models import NotificationLog
from washbook.services.notification.service import NotificationService

configure_logging()
if settings.tracing_enabled:
    setup_tracing(settings.service_name)
log_startup_config(settings, ["postgres_dsn", "kafka_bootstrap_servers", "service_timezone"])
service = NotificationService(SessionLocal)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the consumer loop with the application lifecycle."""

    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    consumer_task.cancel()


app = FastAPI(title="Washbook Notification Service", lifespan=lifespan)
instrument_app(app)


@app.get("/notifications/{order_id}")
def list_notifications(order_id: str):
    with SessionLocal() as db:
        rows = db.execute(
            select(NotificationLog).where(NotificationLog.order_id == order_id).order_by(NotificationLog.created_at)
        ).scalars()
        return [
            {"channel": row.channel, "message": row.message, "created_at": row.created_at.isoformat()} for row in rows
        ]


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
