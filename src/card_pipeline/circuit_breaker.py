"""
Circuit breaker for the AI parsing service.

After repeated failures the breaker opens and AI calls are skipped (the
orchestrator goes straight to local extraction) until the recovery timeout
expires and a trial call is allowed through.
"""

import time
from collections.abc import Awaitable, Callable
from enum import Enum
from threading import Lock
from typing import TypeVar

from .errors import AIUnavailable

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if recovered


class CircuitBreakerOpen(AIUnavailable):
    """Raised when a call is attempted while the breaker is open."""

    pass


class CircuitBreaker:
    """Stops calling a failing service until it has had time to recover."""

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._lock = Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_time: float | None = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def allow_request(self) -> bool:
        """Whether a call may go through now. Moves OPEN to HALF_OPEN once the timeout expires."""
        with self._lock:
            if self._state != CircuitState.OPEN:
                return True
            if self._clock() - self._last_failure_time >= self.timeout_seconds:
                self._state = CircuitState.HALF_OPEN
                self._failures = 0
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
            self._failures = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._last_failure_time = self._clock()
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
                self._state = CircuitState.OPEN

    async def call(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """Await ``func`` with circuit breaker protection."""
        if not self.allow_request():
            remaining = self.timeout_seconds - (self._clock() - self._last_failure_time)
            raise CircuitBreakerOpen(f"Circuit breaker open. Too many failures. Try again in {remaining:.0f}s")

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def get_status(self) -> dict:
        """Get circuit breaker status."""
        with self._lock:
            return {
                "state": self._state.value,
                "failures": self._failures,
                "threshold": self.failure_threshold,
                "last_failure": (
                    self._clock() - self._last_failure_time
                    if self._last_failure_time is not None else None
                ),
            }
