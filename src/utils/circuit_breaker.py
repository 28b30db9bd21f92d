"""
Circuit breaker protecting external platform APIs from cascading failures.

States: CLOSED (normal) -> OPEN (blocking) -> HALF_OPEN (probing).
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, List, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerOpen(Exception):
    """Raised instead of calling through while the circuit is open."""

    def __init__(self, name: str, message: str = None):
        super().__init__(message or f"Circuit '{name}' is OPEN")
        self.name = name


class CircuitBreaker:
    """
    Count failures inside a sliding monitor window and stop calling a
    dependency once `failure_threshold` is reached.

    Algorithm:
        1. OPEN: reject calls until reset_timeout has passed, then go HALF_OPEN
        2. HALF_OPEN: let exactly one probe through; success closes, failure re-opens
        3. CLOSED: call through; record failures, open when threshold reached

    Args:
        name: Identifier used in logs and errors
        failure_threshold: Failures within monitor_window that open the circuit
        reset_timeout: Seconds to stay OPEN before probing
        monitor_window: Seconds of failure history that count
        clock: Time source (seconds); injectable for tests
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        monitor_window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.monitor_window = monitor_window
        self._clock = clock

        self.state = CircuitState.CLOSED
        self._failures: List[float] = []
        self._last_failure_time = 0.0
        self._half_open_in_flight = False

    async def execute(self, func: Callable[[], Awaitable[T]]) -> T:
        """Run `func` through the breaker."""
        if self.state == CircuitState.OPEN:
            if self._clock() - self._last_failure_time >= self.reset_timeout:
                self.state = CircuitState.HALF_OPEN
                self._half_open_in_flight = False
                logger.info(f"Circuit breaker {self.name} -> HALF_OPEN")
            else:
                raise CircuitBreakerOpen(self.name)

        if self.state == CircuitState.HALF_OPEN:
            if self._half_open_in_flight:
                raise CircuitBreakerOpen(
                    self.name, f"Circuit '{self.name}' is HALF_OPEN, probe in flight"
                )
            self._half_open_in_flight = True

        try:
            result = await func()
        except (Exception, asyncio.CancelledError):
            # A cancelled call (caller timeout) counts as a failure
            self._on_failure()
            raise

        self._on_success()
        return result

    def _on_success(self):
        if self.state != CircuitState.CLOSED:
            logger.info(f"Circuit breaker {self.name} -> CLOSED (was {self.state.value})")
        self._failures = []
        self.state = CircuitState.CLOSED
        self._half_open_in_flight = False

    def _on_failure(self):
        now = self._clock()
        self._last_failure_time = now
        self._half_open_in_flight = False

        window_start = now - self.monitor_window
        self._failures = [t for t in self._failures if t >= window_start]
        self._failures.append(now)

        if self.state == CircuitState.HALF_OPEN or len(self._failures) >= self.failure_threshold:
            self.state = CircuitState.OPEN
            logger.error(
                f"Circuit breaker {self.name} -> OPEN "
                f"({len(self._failures)} failures, threshold {self.failure_threshold})"
            )
