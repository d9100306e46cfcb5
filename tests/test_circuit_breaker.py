"""
Tests for the AI circuit breaker.

Test Coverage:
- Opening after the failure threshold
- Rejecting calls while open
- Half-open trial after the recovery timeout
- Closing on a successful trial, reopening on a failed one
- Status reporting
"""

import pytest

from card_pipeline.circuit_breaker import CircuitBreaker, CircuitBreakerOpen, CircuitState
from card_pipeline.errors import AIUnavailable


class ManualClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def breaker(manual_clock) -> CircuitBreaker:
    return CircuitBreaker(failure_threshold=3, timeout_seconds=60, clock=manual_clock)


async def failing():
    raise AIUnavailable("down")


async def succeeding():
    return "ok"


@pytest.mark.unit
class TestCircuitBreaker:
    """Test state transitions."""

    def test_starts_closed(self, breaker):
        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow_request() is True

    async def test_opens_after_threshold(self, breaker):
        for _ in range(3):
            with pytest.raises(AIUnavailable):
                await breaker.call(failing)

        assert breaker.state == CircuitState.OPEN
        assert breaker.allow_request() is False

    async def test_open_breaker_rejects_without_calling(self, breaker):
        for _ in range(3):
            breaker.record_failure()

        calls = []

        async def tracked():
            calls.append(1)

        with pytest.raises(CircuitBreakerOpen):
            await breaker.call(tracked)
        assert calls == []

    async def test_open_error_is_ai_unavailable(self, breaker):
        """Callers handling AIUnavailable also handle an open breaker."""
        for _ in range(3):
            breaker.record_failure()
        with pytest.raises(AIUnavailable):
            await breaker.call(succeeding)

    async def test_success_resets_failure_count(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        assert await breaker.call(succeeding) == "ok"
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

    async def test_half_open_after_timeout(self, breaker, manual_clock):
        for _ in range(3):
            breaker.record_failure()

        manual_clock.now += 61
        assert breaker.allow_request() is True
        assert breaker.state == CircuitState.HALF_OPEN

    async def test_successful_trial_closes(self, breaker, manual_clock):
        for _ in range(3):
            breaker.record_failure()
        manual_clock.now += 61

        assert await breaker.call(succeeding) == "ok"
        assert breaker.state == CircuitState.CLOSED

    async def test_failed_trial_reopens(self, breaker, manual_clock):
        for _ in range(3):
            breaker.record_failure()
        manual_clock.now += 61

        with pytest.raises(AIUnavailable):
            await breaker.call(failing)
        assert breaker.state == CircuitState.OPEN

    def test_status(self, breaker, manual_clock):
        breaker.record_failure()
        manual_clock.now += 5

        status = breaker.get_status()
        assert status["state"] == "closed"
        assert status["failures"] == 1
        assert status["threshold"] == 3
        assert status["last_failure"] == pytest.approx(5)
