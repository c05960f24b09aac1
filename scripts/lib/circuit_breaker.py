"""
Circuit breaker for external source calls.
Stops hammering a source that keeps failing; each adapter owns one breaker.

Usage:
    from scripts.lib.circuit_breaker import CircuitBreaker

    breaker = CircuitBreaker("xero", failure_threshold=5, reset_timeout=60)
    data = await breaker.call(lambda: client.get_report(...))
"""
from __future__ import annotations

import time
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from scripts.lib.errors import CircuitOpenError, FetchError
from scripts.lib.logger import setup_logger

logger = setup_logger(__name__)

T = TypeVar("T")


class CircuitBreaker:
    """
    Circuit breaker with three states: CLOSED, OPEN, HALF_OPEN.

    CLOSED: Calls pass through normally. Failures are counted.
    OPEN: Calls are rejected with CircuitOpenError. After reset_timeout,
          moves to HALF_OPEN.
    HALF_OPEN: One trial call allowed. Success closes, failure re-opens.

    Only exceptions listed in `trip_on` count as failures; configuration
    and auth errors pass through untouched.
    """

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

    def __init__(
        self,
        service: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60,
        trip_on: Tuple[Type[BaseException], ...] = (FetchError,),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service = service
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.trip_on = trip_on
        self._clock = clock
        self.state = self.CLOSED
        self.failure_count = 0
        self.last_failure_time = 0.0

    def can_execute(self) -> bool:
        """Check if a call is allowed through the breaker."""
        if self.state == self.OPEN:
            if self._clock() - self.last_failure_time >= self.reset_timeout:
                self.state = self.HALF_OPEN
                logger.info(
                    "Circuit half-open for '%s' — allowing trial call",
                    self.service,
                )
                return True
            return False
        return True

    def record_success(self):
        if self.state == self.HALF_OPEN:
            logger.info(
                "Circuit closed for '%s' — service recovered", self.service,
            )
        self.state = self.CLOSED
        self.failure_count = 0

    def record_failure(self):
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self.state == self.HALF_OPEN:
            self.state = self.OPEN
            logger.warning(
                "Circuit re-opened for '%s' — trial call failed", self.service,
            )
        elif self.failure_count >= self.failure_threshold and self.state != self.OPEN:
            self.state = self.OPEN
            logger.warning(
                "Circuit opened for '%s' — %d consecutive failures "
                "(threshold: %d, reset in %ds)",
                self.service, self.failure_count,
                self.failure_threshold, self.reset_timeout,
            )

    @property
    def time_until_reset(self) -> float:
        """Seconds until the breaker allows a trial call (0 if not open)."""
        if self.state != self.OPEN:
            return 0.0
        elapsed = self._clock() - self.last_failure_time
        return max(0.0, self.reset_timeout - elapsed)

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run an async operation under the breaker.

        Raises:
            CircuitOpenError: if the circuit is open.
        """
        if not self.can_execute():
            raise CircuitOpenError(
                self.service, self.failure_count, self.time_until_reset,
            )
        try:
            result = await operation()
        except self.trip_on:
            self.record_failure()
            raise
        self.record_success()
        return result

    def status(self) -> dict:
        return {
            "service": self.service,
            "state": self.state,
            "failures": self.failure_count,
            "threshold": self.failure_threshold,
            "time_until_reset": round(self.time_until_reset, 1),
        }
