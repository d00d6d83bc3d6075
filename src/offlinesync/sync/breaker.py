"""Circuit breakers for remote dependencies.

This module provides:
- CircuitState: CLOSED / OPEN / HALF_OPEN
- BreakerMetrics: Call counters per breaker
- CircuitBreaker: Sliding-window breaker for one dependency
- BreakerRegistry: Explicitly constructed set of breakers keyed by name
- protect: Wrap an operation so it runs through a named breaker

States:
    CLOSED -> OPEN       failures in the window reach the threshold
    OPEN -> HALF_OPEN    cooldown elapsed (checked lazily on the next call)
    HALF_OPEN -> CLOSED  enough trial calls succeeded
    HALF_OPEN -> OPEN    a trial call failed

The registry is created once by the service and handed to every
component that talks to remote dependencies, so all workers share one
breaker state per dependency.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from offlinesync.core.config import BreakerConfig
from offlinesync.core.errors import (
    CircuitOpenError,
    ErrorCategory,
    TransferCancelledError,
    classify_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failure categories that say something about the remote dependency's health.
# Resource errors (full or over-quota target disk) are local and never count.
COUNTED_CATEGORIES = frozenset({
    ErrorCategory.NETWORK,
    ErrorCategory.TIMEOUT,
    ErrorCategory.AUTHENTICATION,
})


class CircuitState(str, Enum):
    """State of a circuit breaker."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class BreakerMetrics:
    """Counters for one breaker."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    times_opened: int = 0
    last_failure_at: float | None = None
    last_opened_at: float | None = None
    last_closed_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_calls": self.total_calls,
            "successful_calls": self.successful_calls,
            "failed_calls": self.failed_calls,
            "rejected_calls": self.rejected_calls,
            "times_opened": self.times_opened,
            "last_failure_at": self.last_failure_at,
            "last_opened_at": self.last_opened_at,
            "last_closed_at": self.last_closed_at,
        }


def is_breaker_failure(exc: BaseException) -> bool:
    """Default predicate: does this exception count against the dependency?"""
    if is_breaker_neutral(exc):
        return False
    return classify_error(exc).category in COUNTED_CATEGORIES


def is_breaker_neutral(exc: BaseException) -> bool:
    """Outcomes that say nothing about the dependency (cancelled, rejected).

    They neither count as failures nor as successes, so a cancelled
    half-open trial cannot close the circuit.
    """
    return isinstance(exc, CircuitOpenError | TransferCancelledError)


StateListener = Callable[[str, CircuitState, CircuitState], None]


class CircuitBreaker:
    """Failure-isolation gate for one remote dependency.

    Thread-safe: all state lives behind one lock, so concurrent workers
    see and update a single failure window.

    Usage:
        breaker = CircuitBreaker("mirror-a", BreakerConfig(failure_threshold=5))
        items = breaker.call(lambda: adapter.list_items())
    """

    def __init__(
        self,
        name: str,
        config: BreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        is_failure: Callable[[BaseException], bool] = is_breaker_failure,
        on_state_change: StateListener | None = None,
    ) -> None:
        """Initialize the breaker.

        Args:
            name: Dependency name.
            config: Thresholds and timings.
            clock: Monotonic time source (injectable for tests).
            is_failure: Predicate deciding which exceptions count as failures.
                Other exceptions propagate and count as a response from the
                dependency, except neutral ones (cancellation), which only
                release a half-open trial slot.
            on_state_change: Called with (name, old_state, new_state).
        """
        self._name = name
        self._config = config or BreakerConfig()
        self._clock = clock
        self._is_failure = is_failure
        self._on_state_change = on_state_change

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._opened_at: float | None = None
        self._half_open_calls = 0
        self._trial_successes = 0
        self._metrics = BreakerMetrics()

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> BreakerConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        """Current state (an expired cooldown reports HALF_OPEN)."""
        with self._lock:
            change = self._refresh()
        self._notify(change)
        return self._state

    @property
    def retry_at(self) -> float | None:
        """Clock time at which an open circuit allows a trial call."""
        with self._lock:
            if self._state != CircuitState.OPEN or self._opened_at is None:
                return None
            return self._opened_at + self._config.cooldown

    @property
    def metrics(self) -> BreakerMetrics:
        return self._metrics

    def call(self, operation: Callable[[], T]) -> T:
        """Run an operation through the breaker.

        Raises:
            CircuitOpenError: If the circuit is open (the operation is not run).
            Exception: Whatever the operation raises.
        """
        self._before_call()
        try:
            result = operation()
        except Exception as e:
            if is_breaker_neutral(e):
                self._release_call()
            elif self._is_failure(e):
                self._record_failure()
            else:
                self._record_success()
            raise
        self._record_success()
        return result

    def reset(self) -> None:
        """Close the circuit and forget all failures."""
        with self._lock:
            change = self._transition(CircuitState.CLOSED)
            self._failures.clear()
        self._notify(change)

    def snapshot(self) -> dict[str, Any]:
        """JSON-serializable view for the health feed."""
        state = self.state
        with self._lock:
            self._prune()
            return {
                "name": self._name,
                "state": state.value,
                "failures_in_window": len(self._failures),
                "failure_threshold": self._config.failure_threshold,
                "retry_in": (
                    max(self._opened_at + self._config.cooldown - self._clock(), 0.0)
                    if state == CircuitState.OPEN and self._opened_at is not None
                    else None
                ),
                "metrics": self._metrics.to_dict(),
            }

    # === Internals (call with the lock held unless noted) ===

    def _before_call(self) -> None:
        with self._lock:
            change = self._refresh()
            if self._state == CircuitState.OPEN:
                self._metrics.rejected_calls += 1
                retry_at = (self._opened_at or 0.0) + self._config.cooldown
                rejected = CircuitOpenError(self._name, retry_at)
            elif (
                self._state == CircuitState.HALF_OPEN
                and self._half_open_calls >= self._config.half_open_max_calls
            ):
                self._metrics.rejected_calls += 1
                rejected = CircuitOpenError(self._name, None)
            else:
                rejected = None
                if self._state == CircuitState.HALF_OPEN:
                    self._half_open_calls += 1
                self._metrics.total_calls += 1
        self._notify(change)
        if rejected is not None:
            logger.debug(f"Circuit '{self._name}' rejected a call ({self._state.value})")
            raise rejected

    def _release_call(self) -> None:
        # Frees a half-open trial slot without changing the state
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_calls = max(self._half_open_calls - 1, 0)

    def _record_success(self) -> None:
        with self._lock:
            self._metrics.successful_calls += 1
            change = None
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_calls = max(self._half_open_calls - 1, 0)
                self._trial_successes += 1
                if self._trial_successes >= self._config.success_threshold:
                    change = self._transition(CircuitState.CLOSED)
                    self._failures.clear()
        self._notify(change)

    def _record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self._metrics.failed_calls += 1
            self._metrics.last_failure_at = now
            self._failures.append(now)
            self._prune()
            change = None
            if self._state == CircuitState.HALF_OPEN:
                change = self._transition(CircuitState.OPEN)
            elif (
                self._state == CircuitState.CLOSED
                and len(self._failures) >= self._config.failure_threshold
            ):
                change = self._transition(CircuitState.OPEN)
        self._notify(change)

    def _prune(self) -> None:
        cutoff = self._clock() - self._config.window
        while self._failures and self._failures[0] <= cutoff:
            self._failures.popleft()

    def _refresh(self) -> tuple[CircuitState, CircuitState] | None:
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() >= self._opened_at + self._config.cooldown
        ):
            return self._transition(CircuitState.HALF_OPEN)
        return None

    def _transition(self, new_state: CircuitState) -> tuple[CircuitState, CircuitState] | None:
        old_state = self._state
        if old_state == new_state:
            return None
        self._state = new_state
        now = self._clock()
        if new_state == CircuitState.OPEN:
            self._opened_at = now
            self._metrics.times_opened += 1
            self._metrics.last_opened_at = now
        elif new_state == CircuitState.HALF_OPEN:
            self._half_open_calls = 0
            self._trial_successes = 0
        else:
            self._opened_at = None
            self._metrics.last_closed_at = now
        return old_state, new_state

    def _notify(self, change: tuple[CircuitState, CircuitState] | None) -> None:
        # Runs without the lock so listeners may query the breaker
        if change is None:
            return
        old_state, new_state = change
        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(f"Circuit '{self._name}': {old_state.value} -> {new_state.value}")
        if self._on_state_change:
            try:
                self._on_state_change(self._name, old_state, new_state)
            except Exception:
                logger.exception(f"Circuit '{self._name}' state listener failed")


class BreakerRegistry:
    """Breakers keyed by dependency name.

    Construct one per service and pass it to the orchestrators and the
    transfer executor. Breakers are created on first use with the
    registry's default config.

    Usage:
        registry = BreakerRegistry(BreakerConfig(failure_threshold=5))
        items = registry.call("catalog:mirror-a", adapter.list_items)
        stream = registry.call("catalog:mirror-a", lambda: adapter.open(item, 0))
    """

    def __init__(
        self,
        config: BreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: StateListener | None = None,
    ) -> None:
        self._config = config or BreakerConfig()
        self._clock = clock
        self._on_state_change = on_state_change
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str, config: BreakerConfig | None = None) -> CircuitBreaker:
        """Get the breaker for a dependency, creating it if needed.

        Args:
            name: Dependency name.
            config: Config used if the breaker does not exist yet.
        """
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    config or self._config,
                    clock=self._clock,
                    on_state_change=self._on_state_change,
                )
                self._breakers[name] = breaker
            return breaker

    def call(self, name: str, operation: Callable[[], T]) -> T:
        """Run an operation through the named breaker."""
        return self.get(name).call(operation)

    def wrap(self, name: str, operation: Callable[[], T]) -> Callable[[], T]:
        """Return a callable that runs the operation through the named breaker."""
        return protect(self, name, operation)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._breakers)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Snapshot of every breaker, keyed by name."""
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: b.snapshot() for b in breakers}

    def open_breakers(self) -> list[str]:
        """Names of breakers currently open."""
        with self._lock:
            breakers = list(self._breakers.values())
        return [b.name for b in breakers if b.state == CircuitState.OPEN]

    def reset_all(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()


def protect(
    registry: BreakerRegistry,
    name: str,
    operation: Callable[[], T],
) -> Callable[[], T]:
    """Wrap an operation so every call goes through the named breaker.

    Args:
        registry: Registry holding the shared breaker state.
        name: Dependency name.
        operation: Zero-argument operation.

    Returns:
        A zero-argument callable returning the operation's result.
    """

    def guarded() -> T:
        return registry.call(name, operation)

    return guarded
