"""JSON logs stamped with the correlation ids of the current booking.

Ids live in contextvars, so they follow asyncio tasks: a saga step, a gateway
call admitted by the quota manager and a consumed Kafka event all log under
the ids bound where the work started.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from washbook.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
span_id_ctx: ContextVar[str] = ContextVar("span_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")
saga_id_ctx: ContextVar[str] = ContextVar("saga_id", default="")
order_id_ctx: ContextVar[str] = ContextVar("order_id", default="")

CORRELATION_FIELDS: dict[str, ContextVar[str]] = {
    "trace_id": trace_id_ctx,
    "span_id": span_id_ctx,
    "saga_id": saga_id_ctx,
    "order_id": order_id_ctx,
    "event_id": event_id_ctx,
}


@contextmanager
def log_context(**ids: str | None) -> Iterator[None]:
    """Bind correlation ids for the block; `None` values leave a field as is."""

    tokens = [
        (CORRELATION_FIELDS[name], CORRELATION_FIELDS[name].set(value))
        for name, value in ids.items()
        if value is not None
    ]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for name, var in CORRELATION_FIELDS.items():
            setattr(record, name, var.get())
        return True


def configure_logging() -> None:
    """Send JSON lines to stdout from the root logger; call once per process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    fields = " ".join(f"%({name})s" for name in ("service_name", *CORRELATION_FIELDS))
    handler.setFormatter(JsonFormatter(f"%(asctime)s %(levelname)s {fields} %(message)s"))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)


logger = logging.getLogger("washbook")
