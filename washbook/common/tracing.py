"""Tracing helpers.

Two unrelated pieces live here:

* OpenTelemetry setup for the FastAPI app (request spans, OTLP export).
* `trace_operation`, a structured-logging shim around payment operations:
  start/success/error log events carrying a trace id, a span id and the
  parent span id. It exports nothing and does no sampling; the ids travel in
  contextvars so nested operations become child spans automatically.
"""

import time
import traceback
from collections.abc import Awaitable, Callable, Mapping, MutableMapping
from dataclasses import dataclass
from typing import Any, TypeVar
from uuid import uuid4

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from washbook.common.config import settings
from washbook.common.logging import log_context, logger, span_id_ctx, trace_id_ctx

T = TypeVar("T")


def setup_tracing(service_name: str) -> None:
    """Create and register a tracer provider with OTLP HTTP exporter."""

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    """Attach FastAPI auto-instrumentation for request spans."""

    FastAPIInstrumentor.instrument_app(app)


@dataclass(frozen=True)
class TraceContext:
    trace_id: str
    span_id: str
    operation: str
    parent_span_id: str | None = None


def new_trace_id() -> str:
    return uuid4().hex


def new_span_id() -> str:
    return uuid4().hex[:16]


def current_trace_context() -> TraceContext | None:
    trace_id = trace_id_ctx.get()
    if not trace_id:
        return None
    return TraceContext(trace_id=trace_id, span_id=span_id_ctx.get(), operation="")


async def trace_operation(
    operation: str,
    fn: Callable[[], Awaitable[T]],
    attributes: Mapping[str, Any] | None = None,
    trace_id: str | None = None,
    parent_span_id: str | None = None,
) -> T:
    """Run `fn` inside a logged span and re-raise whatever it raises.

    Without explicit ids the span joins the current trace as a child of the
    current span, or starts a new trace.
    """

    trace_id = trace_id or trace_id_ctx.get() or new_trace_id()
    if parent_span_id is None:
        parent_span_id = span_id_ctx.get() or None
    span_id = new_span_id()
    fields = {
        "operation": operation,
        "parent_span_id": parent_span_id,
        **(attributes or {}),
    }

    started = time.perf_counter()
    with log_context(trace_id=trace_id, span_id=span_id):
        logger.info("trace_start operation=%s", operation, extra={"event": "trace_start", **fields})
        try:
            result = await fn()
        except Exception as exc:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.error(
                "trace_error operation=%s duration_ms=%s error=%s",
                operation,
                duration_ms,
                exc,
                extra={
                    "event": "trace_error",
                    **fields,
                    "status": "error",
                    "duration_ms": duration_ms,
                    "error_message": str(exc),
                    "error_stack": "".join(traceback.format_exception(exc)),
                },
            )
            raise
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "trace_success operation=%s duration_ms=%s",
            operation,
            duration_ms,
            extra={"event": "trace_success", **fields, "status": "success", "duration_ms": duration_ms},
        )
        return result


async def trace_child_operation(
    parent_trace_id: str,
    parent_span_id: str,
    operation: str,
    fn: Callable[[], Awaitable[T]],
    attributes: Mapping[str, Any] | None = None,
) -> T:
    """Explicitly attach a span to a known parent (e.g. across a queue hop)."""

    return await trace_operation(
        operation, fn, attributes=attributes, trace_id=parent_trace_id, parent_span_id=parent_span_id
    )


def extract_trace_context(headers: Mapping[str, str]) -> TraceContext | None:
    """Read `x-trace-id` / `x-span-id` from incoming request headers."""

    trace_id = headers.get("x-trace-id")
    if not trace_id:
        return None
    return TraceContext(
        trace_id=trace_id,
        span_id=new_span_id(),
        operation="",
        parent_span_id=headers.get("x-span-id") or None,
    )


def inject_trace_context(headers: MutableMapping[str, str], context: TraceContext) -> None:
    headers["x-trace-id"] = context.trace_id
    headers["x-span-id"] = context.span_id
    if context.parent_span_id:
        headers["x-parent-span-id"] = context.parent_span_id
