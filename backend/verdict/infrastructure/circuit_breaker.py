"""
Circuit breaker for market-data provider calls.

Stops calling a provider that is known to be failing. Transitions through
three states:

  CLOSED    -> calls pass through normally
  OPEN      -> calls fail immediately with CircuitOpenError, no I/O happens
  HALF_OPEN -> exactly one trial call passes through to test recovery

Breakers are plain objects owned by whoever builds the price resolver; there
is no process-wide registry, so two engines never share breaker state.

Usage:
    breaker = CircuitBreaker("coingecko", failure_threshold=3, recovery_timeout=30)
    quote = await breaker.call(source.fetch_close_at_date, "BTC", day, "USD")
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar

import structlog

from verdict.infrastructure.exceptions import CircuitOpenError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitStats:
    total_calls: int = 0
    total_failures: int = 0
    total_successes: int = 0
    total_rejections: int = 0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None
    consecutive_failures: int = 0
    state_changes: int = 0


class CircuitBreaker:
    """
    Async circuit breaker with a consecutive-failure threshold.

    Args:
        name: Identifier for this circuit (used in logging and errors).
        failure_threshold: Number of consecutive failures before opening.
        recovery_timeout: Seconds to wait before transitioning OPEN -> HALF_OPEN.
        non_failure_exceptions: Exceptions that prove the dependency answered
            (e.g. "unknown asset"); they propagate but count as a success.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        recovery_timeout: float = 30.0,
        non_failure_exceptions: Tuple[Type[BaseException], ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.non_failure_exceptions = non_failure_exceptions
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._opened_at: Optional[float] = None
        self._last_transition_at: float = clock()
        self._trial_in_flight = False
        self._lock = asyncio.Lock()
        self.stats = CircuitStats()

    @property
    def state(self) -> CircuitState:
        """Current state, auto-transitioning OPEN -> HALF_OPEN after timeout."""
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and (self._clock() - self._opened_at) >= self.recovery_timeout
        ):
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self.stats.consecutive_failures

    def _transition(self, new_state: CircuitState):
        old = self._state
        self._state = new_state
        self._last_transition_at = self._clock()
        self.stats.state_changes += 1

        if new_state == CircuitState.OPEN:
            self._opened_at = self._last_transition_at
        elif new_state == CircuitState.HALF_OPEN:
            self._trial_in_flight = False
        elif new_state == CircuitState.CLOSED:
            self._opened_at = None
            self._trial_in_flight = False

        logger.info(
            "circuit_breaker_transition",
            name=self.name,
            from_state=old.value,
            to_state=new_state.value,
            consecutive_failures=self.stats.consecutive_failures,
        )

    async def call(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """
        Execute fn through the circuit breaker.

        Raises CircuitOpenError without invoking fn while OPEN, and while
        HALF_OPEN if the single trial call is already in flight.
        """
        async with self._lock:
            current_state = self.state  # may auto-transition OPEN->HALF_OPEN

            if current_state == CircuitState.OPEN:
                self.stats.total_rejections += 1
                raise CircuitOpenError(self.name, current_state.value)

            if current_state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    self.stats.total_rejections += 1
                    raise CircuitOpenError(self.name, current_state.value)
                self._trial_in_flight = True

            self.stats.total_calls += 1

        # Execute outside the lock so we don't block other callers
        try:
            result = await fn(*args, **kwargs)
        except self.non_failure_exceptions:
            await self._on_success()
            raise
        except Exception:
            await self._on_failure()
            raise
        except BaseException:
            # Cancelled mid-call: neither outcome is known, so free the half-open slot.
            self._trial_in_flight = False
            raise

        await self._on_success()
        return result

    async def _on_success(self):
        async with self._lock:
            self.stats.total_successes += 1
            self.stats.last_success_time = self._clock()
            self.stats.consecutive_failures = 0

            if self._state == CircuitState.HALF_OPEN:
                # Trial succeeded: close the circuit
                self._transition(CircuitState.CLOSED)

    async def _on_failure(self):
        async with self._lock:
            self.stats.total_failures += 1
            self.stats.last_failure_time = self._clock()
            self.stats.consecutive_failures += 1

            if self._state == CircuitState.HALF_OPEN:
                # Trial failed: reopen and restart the cooldown
                self._transition(CircuitState.OPEN)
            elif (
                self._state == CircuitState.CLOSED
                and self.stats.consecutive_failures >= self.failure_threshold
            ):
                self._transition(CircuitState.OPEN)

    async def reset(self):
        """Manually reset the circuit breaker to CLOSED."""
        async with self._lock:
            self.stats.consecutive_failures = 0
            self._transition(CircuitState.CLOSED)

    def status(self) -> Dict[str, Any]:
        """Return a JSON-serialisable status dict."""
        state = self.state
        retry_in = None
        if state == CircuitState.OPEN and self._opened_at is not None:
            retry_in = round(
                max(0.0, self.recovery_timeout - (self._clock() - self._opened_at)), 3
            )
        return {
            "name": self.name,
            "state": state.value,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
            "seconds_since_transition": round(self._clock() - self._last_transition_at, 3),
            "retry_in_seconds": retry_in,
            "stats": {
                "total_calls": self.stats.total_calls,
                "total_failures": self.stats.total_failures,
                "total_successes": self.stats.total_successes,
                "total_rejections": self.stats.total_rejections,
                "consecutive_failures": self.stats.consecutive_failures,
                "state_changes": self.stats.state_changes,
            },
        }
