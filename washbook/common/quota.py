"""Gateway request quota manager.

Keeps outbound gateway calls under a per-second cap with a sliding window of
admission timestamps. Callers are admitted strictly FIFO by a single draining
task; once admitted, each call runs as its own task, so completion order is
not guaranteed. Limits are per process: N server instances admit up to N
times the cap.
"""

import asyncio
import contextvars
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from washbook.common.logging import logger
from washbook.common.metrics import quota_queue_depth, quota_throttled_total

T = TypeVar("T")


class QuotaManager:
    def __init__(
        self,
        name: str,
        max_requests_per_window: int = 95,
        window_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.name = name
        self.max_requests_per_window = max_requests_per_window
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._admitted: deque[float] = deque()
        self._queue: deque[tuple[Callable[[], Awaitable[Any]], asyncio.Future, contextvars.Context]] = deque()
        self._drainer: asyncio.Task | None = None
        self._running: set[asyncio.Task] = set()

    async def execute_with_quota(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Queue `fn`, wait for admission, and return its result."""

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._queue.append((fn, future, contextvars.copy_context()))
        quota_queue_depth.labels(quota=self.name).set(len(self._queue))
        if self._drainer is None or self._drainer.done():
            self._drainer = loop.create_task(self._drain())
        return await future

    async def _drain(self) -> None:
        loop = asyncio.get_running_loop()
        while self._queue:
            await self._wait_for_quota()
            fn, future, context = self._queue.popleft()
            quota_queue_depth.labels(quota=self.name).set(len(self._queue))
            if future.cancelled():
                continue
            self._admitted.append(self._clock())
            # Run in the caller's context so trace/saga ids follow the call.
            task = loop.create_task(self._run(fn, future), context=context)
            self._running.add(task)
            task.add_done_callback(self._running.discard)

    @staticmethod
    async def _run(fn: Callable[[], Awaitable[Any]], future: asyncio.Future) -> None:
        try:
            result = await fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            if not future.done():
                future.set_exception(exc)
        else:
            if not future.done():
                future.set_result(result)

    def _expire(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._admitted and self._admitted[0] <= cutoff:
            self._admitted.popleft()

    async def _wait_for_quota(self) -> None:
        while True:
            now = self._clock()
            self._expire(now)
            if len(self._admitted) < self.max_requests_per_window:
                return
            wait = self._admitted[0] + self.window_seconds - now
            quota_throttled_total.labels(quota=self.name).inc()
            logger.warning(
                "gateway_quota_throttle quota=%s admitted=%s queue_length=%s wait_ms=%.0f",
                self.name,
                len(self._admitted),
                len(self._queue),
                wait * 1000,
            )
            await self._sleep(wait)

    def has_quota_available(self) -> bool:
        self._expire(self._clock())
        return len(self._admitted) < self.max_requests_per_window

    def stats(self) -> dict[str, Any]:
        self._expire(self._clock())
        return {
            "admitted_in_window": len(self._admitted),
            "max_requests": self.max_requests_per_window,
            "remaining_quota": max(0, self.max_requests_per_window - len(self._admitted)),
            "queue_length": len(self._queue),
            "in_flight": len(self._running),
        }
