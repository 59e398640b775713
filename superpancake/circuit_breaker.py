"""
Circuit breaker for failure isolation.

Wraps an async operation and stops calling it after repeated failures:

    closed    -- calls pass through; failures are counted
    open      -- calls fail immediately with CircuitOpenError
    half_open -- after the recovery timeout one probe call is let through;
                 success closes the circuit, failure reopens it

Usage:
    breaker = CircuitBreaker("session-operations")
    result = await breaker.execute(lambda: session.send("DOM.getDocument"))
"""

import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

from .config import CircuitBreakerConfig
from .errors import CircuitOpenError
from .logger import PancakeLogger

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Failure counter with a closed/open/half-open state machine.

    Args:
        name: Name reported in errors and stats
        config: Thresholds (default CircuitBreakerConfig())
        clock: Monotonic clock in seconds, replaceable in tests
        is_failure: Predicate deciding whether an exception counts as a
            failure. Exceptions it rejects are re-raised but leave the
            breaker as if the call had succeeded.
        logger: Optional logger
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        is_failure: Callable[[BaseException], bool] | None = None,
        logger: PancakeLogger | None = None,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._is_failure = is_failure or (lambda exc: True)
        self.logger = logger

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_transition = clock()
        self.probe_in_flight = False

        self.total_calls = 0
        self.total_failures = 0
        self.total_rejections = 0

    @property
    def failure_threshold(self) -> int:
        return self.config.failure_threshold

    @property
    def recovery_timeout_ms(self) -> int:
        return self.config.recovery_timeout_ms

    @property
    def is_healthy(self) -> bool:
        return self.state == CircuitState.CLOSED

    def _transition(self, state: CircuitState) -> None:
        if state == self.state:
            return
        previous = self.state
        self.state = state
        self.last_transition = self._clock()
        if self.logger:
            message = f"⚡ Circuit '{self.name}' {previous.value} -> {state.value}"
            if state == CircuitState.OPEN:
                self.logger.warning(message)
            else:
                self.logger.info(message)

    def _remaining_ms(self) -> int:
        elapsed_ms = (self._clock() - self.last_transition) * 1000
        return max(0, int(self.recovery_timeout_ms - elapsed_ms))

    def _reject(self) -> CircuitOpenError:
        self.total_rejections += 1
        return CircuitOpenError(self.name, self.failure_count, self._remaining_ms())

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``fn`` under the breaker.

        Raises:
            CircuitOpenError: When the circuit is open, or half-open with a
                probe already in flight. ``fn`` is not invoked.
        """
        is_probe = False
        if self.state == CircuitState.OPEN:
            if self._remaining_ms() > 0:
                raise self._reject()
            self._transition(CircuitState.HALF_OPEN)

        if self.state == CircuitState.HALF_OPEN:
            if self.probe_in_flight:
                raise self._reject()
            self.probe_in_flight = True
            is_probe = True

        self.total_calls += 1
        try:
            result = await fn()
        except Exception as e:
            if self._is_failure(e):
                self._on_failure(is_probe)
            else:
                self._on_success(is_probe)
            raise
        else:
            self._on_success(is_probe)
            return result
        finally:
            if is_probe:
                self.probe_in_flight = False

    def _on_success(self, is_probe: bool) -> None:
        if is_probe:
            self.failure_count = 0
            self._transition(CircuitState.CLOSED)
        elif self.state == CircuitState.CLOSED:
            self.failure_count = 0

    def _on_failure(self, is_probe: bool) -> None:
        self.total_failures += 1
        if is_probe:
            self.failure_count += 1
            self._transition(CircuitState.OPEN)
            return
        if self.state != CircuitState.CLOSED:
            return
        self.failure_count += 1
        if self.failure_count >= self.failure_threshold:
            self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        """Force the breaker back to closed with a clean counter."""
        self.failure_count = 0
        self.probe_in_flight = False
        self._transition(CircuitState.CLOSED)

    def get_stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout_ms": self.recovery_timeout_ms,
            "retry_after_ms": self._remaining_ms() if self.state == CircuitState.OPEN else 0,
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "total_rejections": self.total_rejections,
        }


class CircuitBreakerRegistry:
    """Named breakers, created on first use."""

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        is_failure: Callable[[BaseException], bool] | None = None,
        logger: PancakeLogger | None = None,
    ) -> None:
        self.default_config = default_config or CircuitBreakerConfig()
        self._clock = clock
        self._is_failure = is_failure
        self.logger = logger
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str, config: CircuitBreakerConfig | None = None) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                config or self.default_config,
                clock=self._clock,
                is_failure=self._is_failure,
                logger=self.logger,
            )
            self._breakers[name] = breaker
        return breaker

    async def execute(
        self,
        name: str,
        fn: Callable[[], Awaitable[T]],
        config: CircuitBreakerConfig | None = None,
    ) -> T:
        return await self.get(name, config).execute(fn)

    def __contains__(self, name: str) -> bool:
        return name in self._breakers

    def __iter__(self):
        return iter(self._breakers.values())

    def all_stats(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.get_stats() for name, breaker in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
