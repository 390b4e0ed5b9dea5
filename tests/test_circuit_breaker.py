"""Tests for CircuitBreaker state transitions."""

import pytest

from aither_core.comms.circuit_breaker import CircuitBreaker, CircuitState
from aither_core.errors import CircuitOpenError


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def breaker(clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker(failure_threshold=5, cooldown_seconds=60, clock=clock)


def _fail(breaker: CircuitBreaker, op: str, times: int) -> None:
    for _ in range(times):
        breaker.before_call(op)
        breaker.record_failure(op, RuntimeError("down"))


class TestTransitions:
    """CLOSED -> OPEN -> HALF_OPEN transitions per operation."""

    def test_opens_after_threshold_and_rejects(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        _fail(breaker, "Lab.Start", 4)
        assert breaker.state_of("Lab.Start") is CircuitState.CLOSED
        _fail(breaker, "Lab.Start", 1)
        assert breaker.state_of("Lab.Start") is CircuitState.OPEN

        clock.now = 59
        with pytest.raises(CircuitOpenError) as exc:
            breaker.before_call("Lab.Start")
        assert exc.value.retry_in == pytest.approx(1)

    def test_half_open_trial_success_closes(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        _fail(breaker, "op", 5)
        clock.now = 60
        breaker.before_call("op")
        assert breaker.state_of("op") is CircuitState.HALF_OPEN
        # only one trial at a time
        with pytest.raises(CircuitOpenError):
            breaker.before_call("op")
        breaker.record_success("op")
        assert breaker.state_of("op") is CircuitState.CLOSED
        assert breaker.get_status("op")["failure_count"] == 0

    def test_half_open_trial_failure_reopens(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        _fail(breaker, "op", 5)
        clock.now = 61
        breaker.before_call("op")
        breaker.record_failure("op", "still down")
        assert breaker.state_of("op") is CircuitState.OPEN
        clock.now = 100
        with pytest.raises(CircuitOpenError):
            breaker.before_call("op")

    def test_success_resets_failure_count(self, breaker: CircuitBreaker) -> None:
        _fail(breaker, "op", 4)
        breaker.before_call("op")
        breaker.record_success("op")
        _fail(breaker, "op", 4)
        assert breaker.state_of("op") is CircuitState.CLOSED

    def test_operations_are_independent(self, breaker: CircuitBreaker) -> None:
        _fail(breaker, "a", 5)
        breaker.before_call("b")
        assert breaker.state_of("b") is CircuitState.CLOSED

    def test_release_returns_half_open_to_retryable_open(
        self, breaker: CircuitBreaker, clock: FakeClock
    ) -> None:
        _fail(breaker, "op", 5)
        clock.now = 60
        breaker.before_call("op")
        breaker.release("op")
        # next caller gets a fresh trial immediately
        breaker.before_call("op")
        assert breaker.state_of("op") is CircuitState.HALF_OPEN

    def test_reset(self, breaker: CircuitBreaker) -> None:
        _fail(breaker, "op", 5)
        breaker.reset("op")
        assert breaker.state_of("op") is CircuitState.CLOSED
        breaker.before_call("op")


class TestStatus:
    """Per-operation and aggregate status."""

    def test_aggregate_status(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        _fail(breaker, "a", 5)
        breaker.before_call("b")
        breaker.record_success("b")
        clock.now = 10
        status = breaker.get_status()
        assert status["total"] == 2
        assert status["open"] == 1
        assert status["closed"] == 1
        a = status["operations"]["a"]
        assert a["state"] == "Open"
        assert a["success_rate"] == 0.0
        assert a["time_since_last_failure"] == 10
        assert status["operations"]["b"]["success_rate"] == 100.0

    def test_rejected_calls_count_toward_totals(
        self, breaker: CircuitBreaker, clock: FakeClock
    ) -> None:
        _fail(breaker, "op", 5)
        clock.now = 30
        with pytest.raises(CircuitOpenError):
            breaker.before_call("op")
        status = breaker.get_status("op")
        assert status["total_calls"] == 6
        assert status["successful_calls"] == 0
        assert status["failure_count"] == 5

        clock.now = 60
        breaker.before_call("op")
        with pytest.raises(CircuitOpenError):
            breaker.before_call("op")
        breaker.record_success("op")
        status = breaker.get_status("op")
        assert status["total_calls"] == 8
        assert status["success_rate"] == 12.5

    @pytest.mark.asyncio
    async def test_call_wraps_coroutine(self, breaker: CircuitBreaker) -> None:
        async def ok() -> int:
            return 42

        async def bad() -> int:
            raise ConnectionError("refused")

        assert await breaker.call("op", ok) == 42
        with pytest.raises(ConnectionError):
            await breaker.call("op", bad)
        assert breaker.get_status("op")["total_calls"] == 2
        assert breaker.get_status("op")["last_error"] == "refused"
