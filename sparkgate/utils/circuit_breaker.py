"""
SparkGate -- Async circuit breaker.

Protects the persona backend from being hammered while it is unhealthy.
Three states:

    CLOSED    -> normal operation; consecutive failures are counted.
    OPEN      -> all calls are rejected immediately (fail-fast).
    HALF_OPEN -> trial calls are let through; enough successes close it.

State transitions
-----------------
    CLOSED    --[failures >= failure_threshold]--> OPEN
    OPEN      --[reset_timeout elapsed, lazily]--> HALF_OPEN
    HALF_OPEN --[successes >= success_threshold]-> CLOSED
    HALF_OPEN --[any failure]--------------------> OPEN

The OPEN -> HALF_OPEN move happens on access (``state`` / ``is_allowed()``);
there is no timer.

Usage with a fallback::

    registry = CircuitBreakerRegistry(failure_threshold=5, reset_timeout=30.0)
    sparks = await registry.execute(
        "internal-api",
        lambda: client.get_json("/api/v1/sparks"),
        fallback=lambda: [],
    )

Or as a context-managed guard::

    breaker = registry.get_or_create("internal-api")
    async with breaker:
        result = await client.get_json(...)
"""

from __future__ import annotations

import enum
import inspect
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

from sparkgate.utils.errors import CircuitBreakerOpen

if TYPE_CHECKING:
    from sparkgate.observability.metrics import MetricsCollector

logger = logging.getLogger(__name__)

T = TypeVar("T")

Fallback = Callable[[], Any]


# --------------------------------------------------------------------------- #
# State enum
# --------------------------------------------------------------------------- #


class CircuitState(str, enum.Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


async def _call_fallback(fallback: Fallback) -> Any:
    result = fallback()
    if inspect.isawaitable(result):
        result = await result
    return result


# --------------------------------------------------------------------------- #
# Core implementation
# --------------------------------------------------------------------------- #


class CircuitBreaker:
    """Per-dependency circuit breaker with log/metric emission on transitions.

    All state changes happen in synchronous code, so no lock is needed on a
    single event loop.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        success_threshold: int = 2,
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsCollector | None = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {failure_threshold}")
        if success_threshold < 1:
            raise ValueError(f"success_threshold must be >= 1, got {success_threshold}")

        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.success_threshold = success_threshold
        self._clock = clock
        self._metrics = metrics

        self._state: CircuitState = CircuitState.CLOSED
        self._failure_count: int = 0
        self._success_count: int = 0
        self._last_failure_time: float | None = None

        # Counters for observability
        self.total_calls: int = 0
        self.total_failures: int = 0
        self.total_rejections: int = 0
        self.total_state_transitions: int = 0

    # -- properties --------------------------------------------------------- #

    @property
    def state(self) -> CircuitState:
        """Current state; an expired OPEN circuit moves to HALF_OPEN here."""
        if self._state is CircuitState.OPEN and self._reset_elapsed():
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def success_count(self) -> int:
        return self._success_count

    # -- helpers ------------------------------------------------------------ #

    def _reset_elapsed(self) -> bool:
        if self._last_failure_time is None:
            return True
        return self._clock() - self._last_failure_time >= self.reset_timeout

    def remaining_open_seconds(self) -> float:
        if self._state is not CircuitState.OPEN or self._last_failure_time is None:
            return 0.0
        return max(self.reset_timeout - (self._clock() - self._last_failure_time), 0.0)

    def _transition(self, new_state: CircuitState) -> None:
        old = self._state
        if old is new_state:
            return
        self._state = new_state
        if new_state is CircuitState.CLOSED:
            self._failure_count = 0
            self._success_count = 0
        elif new_state is CircuitState.HALF_OPEN:
            self._success_count = 0
        elif new_state is CircuitState.OPEN:
            self._success_count = 0
        self.total_state_transitions += 1
        logger.warning(
            "circuit_breaker.state_change",
            extra={
                "breaker": self.name,
                "from_state": old.value,
                "to_state": new_state.value,
                "failure_count": self._failure_count,
            },
        )
        if self._metrics is not None:
            self._metrics.record_circuit_state(self.name, new_state.value)

    # -- public API --------------------------------------------------------- #

    def is_allowed(self) -> bool:
        return self.state is not CircuitState.OPEN

    def record_success(self) -> None:
        """Record a successful call."""
        if self._state is CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                logger.info(
                    "circuit_breaker.recovered",
                    extra={"breaker": self.name},
                )
                self._transition(CircuitState.CLOSED)
        elif self._state is CircuitState.CLOSED:
            self._failure_count = 0

    def record_failure(self, exc: BaseException | None = None) -> None:
        """Record a failed call."""
        self._failure_count += 1
        self.total_failures += 1
        self._last_failure_time = self._clock()
        logger.warning(
            "circuit_breaker.failure",
            extra={
                "breaker": self.name,
                "failure_count": self._failure_count,
                "threshold": self.failure_threshold,
                "error": str(exc) if exc else None,
            },
        )
        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif (
            self._state is CircuitState.CLOSED
            and self._failure_count >= self.failure_threshold
        ):
            self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        self._transition(CircuitState.CLOSED)
        self._failure_count = 0
        self._success_count = 0

    def before_call(self) -> None:
        """Gate check; raises :class:`CircuitBreakerOpen` when rejected."""
        if not self.is_allowed():
            self.total_rejections += 1
            logger.warning("circuit_breaker.rejected", extra={"breaker": self.name})
            raise CircuitBreakerOpen(self.name, self.remaining_open_seconds())

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: Fallback | None = None,
    ) -> T:
        """Run *operation* under the breaker.

        When the circuit is open the operation is never invoked: the
        fallback's result is returned, or :class:`CircuitBreakerOpen` is
        raised.  When the operation fails and that failure opened the
        circuit, a fallback (if given) replaces the error.
        """
        if not self.is_allowed():
            self.total_rejections += 1
            logger.warning("circuit_breaker.rejected", extra={"breaker": self.name})
            if fallback is not None:
                return await _call_fallback(fallback)
            raise CircuitBreakerOpen(self.name, self.remaining_open_seconds())

        self.total_calls += 1
        try:
            result = await operation()
        except Exception as exc:
            self.record_failure(exc)
            if fallback is not None and self._state is CircuitState.OPEN:
                logger.warning(
                    "circuit_breaker.fallback",
                    extra={"breaker": self.name},
                )
                return await _call_fallback(fallback)
            raise
        self.record_success()
        return result

    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failures": self._failure_count,
            "successes": self._success_count,
            "last_failure_time": self._last_failure_time,
        }

    # -- context manager ---------------------------------------------------- #

    async def __aenter__(self) -> CircuitBreaker:
        self.before_call()
        self.total_calls += 1
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> bool:
        if exc_type is None:
            self.record_success()
        elif issubclass(exc_type, Exception):
            self.record_failure(exc_val)
        # Never swallow the exception
        return False

    # -- repr --------------------------------------------------------------- #

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker(name={self.name!r}, state={self.state.value}, "
            f"failures={self._failure_count}/{self.failure_threshold})"
        )


# --------------------------------------------------------------------------- #
# Registry
# --------------------------------------------------------------------------- #


class CircuitBreakerRegistry:
    """Owns one breaker per dependency name.

    Breakers are created on first use and never evicted; the set of
    dependencies is small and fixed.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        success_threshold: int = 2,
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.success_threshold = success_threshold
        self._clock = clock
        self._metrics = metrics
        self._breakers: dict[str, CircuitBreaker] = {}

    def get_or_create(self, name: str) -> CircuitBreaker:
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(
                name=name,
                failure_threshold=self.failure_threshold,
                reset_timeout=self.reset_timeout,
                success_threshold=self.success_threshold,
                clock=self._clock,
                metrics=self._metrics,
            )
        return self._breakers[name]

    def get(self, name: str) -> CircuitBreaker | None:
        return self._breakers.get(name)

    async def execute(
        self,
        dependency: str,
        operation: Callable[[], Awaitable[T]],
        fallback: Fallback | None = None,
    ) -> T:
        return await self.get_or_create(dependency).execute(operation, fallback)

    def all_breakers(self) -> dict[str, CircuitBreaker]:
        return dict(self._breakers)

    def all_stats(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.stats() for name, breaker in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    def clear(self) -> None:
        """Drop all breakers (useful in tests)."""
        self._breakers.clear()
