"""Operation tracer: span ids, parent links and log events."""

import asyncio
import logging

import pytest

from washbook.common.logging import ContextFilter, log_context, saga_id_ctx, span_id_ctx, trace_id_ctx
from washbook.common.tracing import (
    TraceContext,
    current_trace_context,
    extract_trace_context,
    inject_trace_context,
    trace_child_operation,
    trace_operation,
)


def _records(caplog, event):
    return [r for r in caplog.records if getattr(r, "event", None) == event]


def test_nested_operations_share_trace_and_link_parents(caplog):
    caplog.set_level(logging.INFO, logger="washbook")
    seen = {}

    async def inner():
        seen["inner"] = (trace_id_ctx.get(), span_id_ctx.get())
        return "done"

    async def outer():
        seen["outer"] = (trace_id_ctx.get(), span_id_ctx.get())
        return await trace_operation("inner_step", inner)

    assert asyncio.run(trace_operation("outer_step", outer, trace_id="t-1")) == "done"

    assert seen["outer"][0] == seen["inner"][0] == "t-1"
    assert seen["outer"][1] != seen["inner"][1]
    starts = {r.operation: r for r in _records(caplog, "trace_start")}
    assert starts["outer_step"].parent_span_id is None
    assert starts["inner_step"].parent_span_id == seen["outer"][1]
    assert len(_records(caplog, "trace_success")) == 2
    assert trace_id_ctx.get() == ""


def test_errors_are_logged_and_reraised(caplog):
    caplog.set_level(logging.INFO, logger="washbook")

    async def failing():
        raise ValueError("bad step")

    with pytest.raises(ValueError):
        asyncio.run(trace_operation("step", failing, attributes={"order_id": "o-1"}))

    (error,) = _records(caplog, "trace_error")
    assert error.error_message == "bad step"
    assert "ValueError" in error.error_stack
    assert error.duration_ms >= 0


def test_child_operation_attaches_to_given_parent(caplog):
    caplog.set_level(logging.INFO, logger="washbook")

    async def noop_in_trace():
        return trace_id_ctx.get()

    assert asyncio.run(trace_child_operation("trace-9", "span-parent", "consume", noop_in_trace)) == "trace-9"
    (start,) = _records(caplog, "trace_start")
    assert start.parent_span_id == "span-parent"


def test_header_round_trip():
    incoming = extract_trace_context({"x-trace-id": "abc", "x-span-id": "caller"})
    assert incoming.trace_id == "abc"
    assert incoming.parent_span_id == "caller"
    assert len(incoming.span_id) == 16
    assert extract_trace_context({}) is None

    headers: dict[str, str] = {}
    inject_trace_context(headers, TraceContext(trace_id="abc", span_id="s1", operation="x", parent_span_id="p0"))
    assert headers == {"x-trace-id": "abc", "x-span-id": "s1", "x-parent-span-id": "p0"}


def test_current_context_outside_any_trace():
    assert current_trace_context() is None


def test_log_context_stamps_records_and_restores():
    record = logging.LogRecord("washbook", logging.INFO, __file__, 1, "saga step", None, None)
    with log_context(saga_id="saga-1", order_id=None):
        ContextFilter().filter(record)
    assert record.saga_id == "saga-1"
    assert record.order_id == ""
    assert saga_id_ctx.get() == ""
