"""Per-operation circuit breaker: CLOSED -> OPEN -> HALF_OPEN -> CLOSED | OPEN."""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from aither_core.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "Closed"
    OPEN = "Open"
    HALF_OPEN = "HalfOpen"


@dataclass
class CircuitBreakerState:
    operation_name: str
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    total_calls: int = 0
    successful_calls: int = 0
    last_failure: float | None = None
    last_success: float | None = None
    last_error: str = ""
    opened_at: float | None = None
    trial_in_flight: bool = False

    @property
    def success_rate(self) -> float:
        if not self.total_calls:
            return 100.0
        return round(self.successful_calls / self.total_calls * 100, 2)


class CircuitBreaker:
    """Failure isolation for API operations, keyed by operation name.

    ``failure_threshold`` consecutive failures open the circuit. While open,
    calls fail fast with CircuitOpenError. After ``cooldown_seconds`` the next
    call is admitted as a single HALF_OPEN trial.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._states: dict[str, CircuitBreakerState] = {}
        self._lock = threading.Lock()

    def _state(self, op: str) -> CircuitBreakerState:
        st = self._states.get(op)
        if st is None:
            st = CircuitBreakerState(operation_name=op)
            self._states[op] = st
        return st

    def before_call(self, op: str) -> None:
        """Admit or reject a call. Rejected calls still count toward total_calls."""
        with self._lock:
            st = self._state(op)
            if st.state is CircuitState.CLOSED:
                return
            now = self._clock()
            if st.state is CircuitState.OPEN:
                elapsed = now - (now if st.opened_at is None else st.opened_at)
                if elapsed < self.cooldown_seconds:
                    st.total_calls += 1
                    raise CircuitOpenError(op, self.cooldown_seconds - elapsed)
                st.state = CircuitState.HALF_OPEN
                st.trial_in_flight = True
                logger.info("Circuit for %s is half-open, admitting trial call", op)
                return
            # HALF_OPEN: only the single trial call may pass
            if st.trial_in_flight:
                st.total_calls += 1
                raise CircuitOpenError(op)
            st.trial_in_flight = True

    def record_success(self, op: str) -> None:
        with self._lock:
            st = self._state(op)
            st.total_calls += 1
            st.successful_calls += 1
            st.failure_count = 0
            st.last_success = self._clock()
            st.trial_in_flight = False
            if st.state is not CircuitState.CLOSED:
                logger.info("Circuit for %s closed", op)
            st.state = CircuitState.CLOSED
            st.opened_at = None

    def record_failure(self, op: str, error: BaseException | str = "") -> None:
        with self._lock:
            st = self._state(op)
            now = self._clock()
            st.total_calls += 1
            st.failure_count += 1
            st.last_failure = now
            st.last_error = str(error)
            was_trial = st.state is CircuitState.HALF_OPEN
            st.trial_in_flight = False
            if was_trial or st.failure_count >= self.failure_threshold:
                if st.state is not CircuitState.OPEN:
                    logger.warning(
                        "Circuit for %s opened after %d failures: %s",
                        op,
                        st.failure_count,
                        st.last_error,
                    )
                st.state = CircuitState.OPEN
                st.opened_at = now

    def release(self, op: str) -> None:
        """End an admitted call without counting it (caller-side errors such as auth)."""
        with self._lock:
            st = self._states.get(op)
            if st is not None:
                st.trial_in_flight = False
                if st.state is CircuitState.HALF_OPEN:
                    # no verdict from the trial; next call may try again
                    st.state = CircuitState.OPEN
                    st.opened_at = self._clock() - self.cooldown_seconds

    async def call(self, op: str, func: Callable[[], Awaitable[T]]) -> T:
        """Run func behind the breaker."""
        self.before_call(op)
        try:
            result = await func()
        except Exception as e:
            self.record_failure(op, e)
            raise
        self.record_success(op)
        return result

    def state_of(self, op: str) -> CircuitState:
        with self._lock:
            st = self._states.get(op)
            return st.state if st else CircuitState.CLOSED

    def get_status(self, op: str | None = None) -> dict[str, Any]:
        """Per-operation status, or an aggregate over all operations."""
        now = self._clock()
        with self._lock:
            if op is not None:
                return self._describe(self._state(op), now)
            ops = {name: self._describe(st, now) for name, st in self._states.items()}
        states = [s["state"] for s in ops.values()]
        return {
            "operations": ops,
            "total": len(ops),
            "open": states.count(CircuitState.OPEN.value),
            "half_open": states.count(CircuitState.HALF_OPEN.value),
            "closed": states.count(CircuitState.CLOSED.value),
        }

    @staticmethod
    def _describe(st: CircuitBreakerState, now: float) -> dict[str, Any]:
        return {
            "operation": st.operation_name,
            "state": st.state.value,
            "failure_count": st.failure_count,
            "total_calls": st.total_calls,
            "successful_calls": st.successful_calls,
            "success_rate": st.success_rate,
            "time_since_last_failure": (
                None if st.last_failure is None else round(now - st.last_failure, 3)
            ),
            "last_error": st.last_error,
        }

    def reset(self, op: str) -> None:
        """Force CLOSED and zero counters (manual recovery)."""
        with self._lock:
            self._states[op] = CircuitBreakerState(operation_name=op)
        logger.info("Circuit for %s reset", op)
