"""Circuit breaker for unreliable upstream generation providers.

A breaker counts consecutive failures of one named upstream service. After
``failure_threshold`` failures it OPENs and rejects calls without invoking
them until ``reset_timeout_ms`` has elapsed; the next call is then admitted
as a single HALF_OPEN trial whose outcome closes or reopens the circuit.

The breaker never swallows errors. It only decides whether a call is
attempted at all; the operation's own exception always reaches the caller.

Architecture Pattern:
    - One breaker per upstream service name
    - Breakers are created lazily by an explicitly constructed BreakerRegistry
      owned by the application session (no module-level cache)
    - Single event loop, no locks: state changes happen synchronously around
      each awaited operation

Usage:
    registry = BreakerRegistry()
    breaker = registry.get("ideogram-imagine")
    response = await breaker.execute(lambda: adapter.invoke("ideogram-imagine", payload))
"""

import enum
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from mediagen.config import DEFAULT_FAILURE_THRESHOLD, DEFAULT_RESET_TIMEOUT_MS
from mediagen.exceptions import CircuitOpenError
from mediagen.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, enum.Enum):
    """Breaker states."""

    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Recent failures, calls rejected
    HALF_OPEN = "HALF_OPEN"  # One trial call allowed


StateChangeObserver = Callable[[str, CircuitState, CircuitState], None]


class CircuitBreaker:
    """Failure-counting gate around calls to one upstream service.

    Attributes:
        service_name: Upstream service this breaker guards.
        failure_threshold: Consecutive failures that open the circuit.
        reset_timeout_ms: Cooldown while OPEN before a trial call.

    Example:
        >>> breaker = CircuitBreaker("kling", failure_threshold=3)
        >>> await breaker.execute(call_kling)
        >>> breaker.state
        <CircuitState.CLOSED: 'CLOSED'>
    """

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_timeout_ms: int = DEFAULT_RESET_TIMEOUT_MS,
        on_state_change: StateChangeObserver | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize a closed breaker.

        Args:
            service_name: Upstream service name (used in errors and logs).
            failure_threshold: Consecutive failures before opening (>= 1).
            reset_timeout_ms: Milliseconds to stay OPEN before a trial.
            on_state_change: Optional observer called as (service, from, to).
            clock: Monotonic time source in seconds (injectable for tests).

        Raises:
            ValueError: If failure_threshold < 1 or reset_timeout_ms < 0.
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if reset_timeout_ms < 0:
            raise ValueError("reset_timeout_ms must not be negative")

        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self._on_state_change = on_state_change
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._next_attempt = clock()
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def next_attempt(self) -> float:
        """Clock time after which an OPEN breaker admits a trial call."""
        return self._next_attempt

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` if the circuit allows it.

        Args:
            operation: Zero-argument callable returning an awaitable.

        Returns:
            Whatever the operation returns.

        Raises:
            CircuitOpenError: If the circuit is OPEN and the cooldown has not
                elapsed, or a HALF_OPEN trial is already running. The
                operation is not invoked.
            Exception: Any exception raised by the operation, unchanged.
        """
        now = self._clock()

        if self._state == CircuitState.OPEN:
            if now < self._next_attempt:
                raise CircuitOpenError(self.service_name, self._next_attempt - now)
            self._transition_to(CircuitState.HALF_OPEN)
        elif self._state == CircuitState.HALF_OPEN and self._trial_in_flight:
            # Exactly one trial; everyone else waits for its verdict
            raise CircuitOpenError(self.service_name, 0.0)

        is_trial = self._state == CircuitState.HALF_OPEN
        if is_trial:
            self._trial_in_flight = True

        try:
            result = await operation()
        except Exception:
            self._on_failure()
            raise
        finally:
            if is_trial:
                self._trial_in_flight = False

        self._on_success()
        return result

    def reset(self) -> None:
        """Force the breaker back to CLOSED with a zero failure count."""
        self._transition_to(CircuitState.CLOSED)
        self._failure_count = 0
        self._next_attempt = self._clock()
        self._trial_in_flight = False

    def snapshot(self) -> dict[str, Any]:
        """Serializable view of the breaker (for the /breakers endpoint)."""
        retry_after = max(0.0, self._next_attempt - self._clock())
        return {
            "service_name": self.service_name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "reset_timeout_ms": self.reset_timeout_ms,
            "retry_after_seconds": retry_after if self._state == CircuitState.OPEN else 0.0,
        }

    def _on_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            self._transition_to(CircuitState.CLOSED)
        self._failure_count = 0

    def _on_failure(self) -> None:
        self._failure_count += 1

        if self._state == CircuitState.HALF_OPEN or (
            self._state == CircuitState.CLOSED
            and self._failure_count >= self.failure_threshold
        ):
            self._transition_to(CircuitState.OPEN)
            self._next_attempt = self._clock() + self.reset_timeout_ms / 1000.0

    def _transition_to(self, state: CircuitState) -> None:
        if self._state == state:
            return
        previous = self._state
        self._state = state
        if self._on_state_change is not None:
            self._on_state_change(self.service_name, previous, state)


def log_state_change(service_name: str, from_state: CircuitState, to_state: CircuitState) -> None:
    """Default observer: one structured log line per transition."""
    transition_log = log.bind(
        service_name=service_name,
        from_state=from_state.value,
        to_state=to_state.value,
    )
    if to_state == CircuitState.OPEN:
        transition_log.warning("circuit_breaker_opened")
    else:
        transition_log.info("circuit_breaker_state_changed")


class BreakerRegistry:
    """Session-scoped cache of breakers keyed by service name.

    Every breaker created by the registry shares its defaults. Independent
    registries never share state, so tests can build one per case.

    Example:
        >>> registry = BreakerRegistry(failure_threshold=5)
        >>> registry.get("suno") is registry.get("suno")
        True
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_timeout_ms: int = DEFAULT_RESET_TIMEOUT_MS,
        on_state_change: StateChangeObserver | None = log_state_change,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self._on_state_change = on_state_change
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, service_name: str) -> CircuitBreaker:
        """Return the breaker for ``service_name``, creating it on first use."""
        breaker = self._breakers.get(service_name)
        if breaker is None:
            breaker = CircuitBreaker(
                service_name,
                failure_threshold=self.failure_threshold,
                reset_timeout_ms=self.reset_timeout_ms,
                on_state_change=self._on_state_change,
                clock=self._clock,
            )
            self._breakers[service_name] = breaker
        return breaker

    def __contains__(self, service_name: object) -> bool:
        return service_name in self._breakers

    def __len__(self) -> int:
        return len(self._breakers)

    def snapshots(self) -> list[dict[str, Any]]:
        """Snapshots of every breaker created so far, sorted by name."""
        return [self._breakers[name].snapshot() for name in sorted(self._breakers)]

    def reset_all(self) -> None:
        """Close every breaker."""
        for breaker in self._breakers.values():
            breaker.reset()
