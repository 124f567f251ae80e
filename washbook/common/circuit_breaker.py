"""Circuit breaker for calls to external dependencies.

CLOSED: calls pass, failures inside the monitoring window are counted.
OPEN: calls are rejected until the cooldown elapses.
HALF_OPEN: one probe at a time; enough consecutive successes close the
circuit, any failure reopens it.
"""

import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, TypeVar

from washbook.common.logging import logger
from washbook.common.metrics import circuit_breaker_rejections_total, circuit_breaker_state

T = TypeVar("T")


class CircuitState(StrEnum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


_STATE_GAUGE = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    success_threshold: int
    timeout_seconds: float
    monitoring_window_seconds: float


GENERAL_BREAKER_CONFIG = CircuitBreakerConfig(
    failure_threshold=5, success_threshold=3, timeout_seconds=60.0, monitoring_window_seconds=120.0
)
PAYMENT_BREAKER_CONFIG = CircuitBreakerConfig(
    failure_threshold=3, success_threshold=2, timeout_seconds=30.0, monitoring_window_seconds=60.0
)


class CircuitOpenError(Exception):
    """Raised without calling the dependency while the circuit is open."""

    def __init__(self, name: str, retry_in_seconds: float) -> None:
        super().__init__(f"Circuit breaker is OPEN for {name}. Service temporarily unavailable.")
        self.name = name
        self.retry_in_seconds = retry_in_seconds


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures: deque[tuple[float, str]] = deque()
        self._successes = 0
        self._next_attempt_at = 0.0
        self._probe_in_flight = False
        circuit_breaker_state.labels(breaker=name).set(0)

    @property
    def state(self) -> CircuitState:
        return self._state

    def ensure_available(self) -> None:
        """Reject now if `execute` would reject; never changes state."""

        if self._state == CircuitState.OPEN:
            now = self._clock()
            if now < self._next_attempt_at:
                self._reject(self._next_attempt_at - now)
        elif self._state == CircuitState.HALF_OPEN and self._probe_in_flight:
            self._reject(0.0)

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run `fn` under breaker protection."""

        probe = False
        if self._state == CircuitState.OPEN:
            now = self._clock()
            if now < self._next_attempt_at:
                self._reject(self._next_attempt_at - now)
            self._set_state(CircuitState.HALF_OPEN)
            self._successes = 0
            logger.info("circuit_breaker_half_open circuit=%s", self.name)
        if self._state == CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                self._reject(0.0)
            self._probe_in_flight = True
            probe = True

        try:
            result = await fn()
        except Exception as exc:
            self._on_failure(exc)
            raise
        else:
            self._on_success()
            return result
        finally:
            if probe:
                self._probe_in_flight = False

    def _reject(self, retry_in_seconds: float) -> None:
        circuit_breaker_rejections_total.labels(breaker=self.name).inc()
        logger.warning(
            "circuit_breaker_rejected circuit=%s state=%s retry_in_s=%.1f",
            self.name,
            self._state,
            retry_in_seconds,
        )
        raise CircuitOpenError(self.name, retry_in_seconds)

    def _prune(self, now: float) -> None:
        cutoff = now - self.config.monitoring_window_seconds
        while self._failures and self._failures[0][0] <= cutoff:
            self._failures.popleft()

    def _on_success(self) -> None:
        self._successes += 1
        if self._state == CircuitState.HALF_OPEN:
            if self._successes >= self.config.success_threshold:
                self._set_state(CircuitState.CLOSED)
                self._failures.clear()
                self._successes = 0
                logger.info("circuit_breaker_closed circuit=%s", self.name)
        elif self._state == CircuitState.CLOSED:
            self._prune(self._clock())

    def _on_failure(self, exc: Exception) -> None:
        now = self._clock()
        self._failures.append((now, str(exc) or type(exc).__name__))
        self._prune(now)
        if self._state == CircuitState.HALF_OPEN:
            self._open(now)
        elif self._state == CircuitState.CLOSED and len(self._failures) >= self.config.failure_threshold:
            self._open(now)

    def _open(self, now: float) -> None:
        self._set_state(CircuitState.OPEN)
        self._next_attempt_at = now + self.config.timeout_seconds
        self._successes = 0
        logger.error(
            "circuit_breaker_opened circuit=%s failure_count=%s recent_errors=%s",
            self.name,
            len(self._failures),
            [error for _, error in list(self._failures)[-5:]],
        )

    def _set_state(self, state: CircuitState) -> None:
        self._state = state
        circuit_breaker_state.labels(breaker=self.name).set(_STATE_GAUGE[state])

    def stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "failure_count": len(self._failures),
            "success_count": self._successes,
            "retry_in_seconds": (
                max(0.0, self._next_attempt_at - self._clock()) if self._state == CircuitState.OPEN else None
            ),
            "recent_failures": [error for _, error in list(self._failures)[-10:]],
        }

    def reset(self) -> None:
        """Force the circuit closed (admin use)."""

        self._set_state(CircuitState.CLOSED)
        self._failures.clear()
        self._successes = 0
        self._next_attempt_at = 0.0
        self._probe_in_flight = False
        logger.info("circuit_breaker_reset circuit=%s", self.name)
