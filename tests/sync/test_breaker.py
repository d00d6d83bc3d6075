"""Tests for circuit breakers."""

import errno
from unittest.mock import MagicMock

import pytest

from offlinesync.core.config import BreakerConfig
from offlinesync.core.errors import (
    CircuitOpenError,
    NetworkError,
    TransferCancelledError,
    ValidationError,
)
from offlinesync.sync.breaker import BreakerRegistry, CircuitBreaker, CircuitState, protect


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _invalid() -> None:
    raise ValidationError("bad item")


def _failing() -> None:
    raise NetworkError("connection refused")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def breaker(clock: FakeClock) -> CircuitBreaker:
    config = BreakerConfig(failure_threshold=5, window=60.0, cooldown=30.0)
    return CircuitBreaker("catalog:test", config, clock=clock)


def _fail_times(breaker: CircuitBreaker, count: int) -> None:
    for _ in range(count):
        with pytest.raises(NetworkError):
            breaker.call(_failing)


class TestCircuitBreaker:
    """Tests for CircuitBreaker state transitions."""

    def test_opens_after_threshold(self, breaker: CircuitBreaker) -> None:
        _fail_times(breaker, 4)
        assert breaker.state == CircuitState.CLOSED
        _fail_times(breaker, 1)
        assert breaker.state == CircuitState.OPEN

    def test_open_rejects_without_calling(self, breaker: CircuitBreaker) -> None:
        """An open circuit short-circuits: the operation is never invoked."""
        _fail_times(breaker, 5)
        operation = MagicMock(return_value="data")
        with pytest.raises(CircuitOpenError):
            breaker.call(operation)
        operation.assert_not_called()
        assert breaker.metrics.rejected_calls == 1

    def test_failures_outside_window_forgotten(
        self, breaker: CircuitBreaker, clock: FakeClock
    ) -> None:
        _fail_times(breaker, 4)
        clock.advance(61)
        _fail_times(breaker, 1)
        assert breaker.state == CircuitState.CLOSED

    def test_single_trial_after_cooldown(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        """After the cooldown exactly one trial call is let through."""
        _fail_times(breaker, 5)
        clock.advance(30)
        assert breaker.state == CircuitState.HALF_OPEN

        calls = []

        def trial() -> str:
            calls.append(1)
            # A concurrent caller arriving while the trial runs is rejected
            with pytest.raises(CircuitOpenError):
                breaker.call(lambda: "second")
            return "ok"

        assert breaker.call(trial) == "ok"
        assert calls == [1]
        assert breaker.state == CircuitState.CLOSED

    def test_failed_trial_reopens(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        _fail_times(breaker, 5)
        clock.advance(30)
        _fail_times(breaker, 1)
        assert breaker.state == CircuitState.OPEN
        assert breaker.retry_at == clock.now + 30

    def test_non_counted_errors_pass_through(self, breaker: CircuitBreaker) -> None:
        """Validation errors propagate but do not count against the dependency."""
        for _ in range(10):
            with pytest.raises(ValidationError):
                breaker.call(_invalid)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.metrics.failed_calls == 0

    def test_cancelled_trial_keeps_circuit_half_open(self, clock: FakeClock) -> None:
        """A trial cut short by cancellation proves nothing: the slot is freed, state kept."""
        breaker = CircuitBreaker("catalog:x", BreakerConfig(failure_threshold=1), clock=clock)
        _fail_times(breaker, 1)
        clock.advance(breaker.config.cooldown)
        assert breaker.state == CircuitState.HALF_OPEN

        def cancelled() -> None:
            raise TransferCancelledError("Cancelled: a.mkv")

        with pytest.raises(TransferCancelledError):
            breaker.call(cancelled)
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.metrics.failed_calls == 1

        # The next trial is let through and decides
        assert breaker.call(lambda: "ok") == "ok"
        assert breaker.state == CircuitState.CLOSED

    def test_cancellation_while_closed_not_counted(self, breaker: CircuitBreaker) -> None:
        def cancelled() -> None:
            raise TransferCancelledError("stop")

        for _ in range(10):
            with pytest.raises(TransferCancelledError):
                breaker.call(cancelled)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.metrics.failed_calls == 0

    def test_full_disk_not_counted(self, breaker: CircuitBreaker) -> None:
        """Local resource errors say nothing about the remote dependency."""

        def disk_full() -> None:
            raise OSError(errno.ENOSPC, "No space left on device")

        for _ in range(10):
            with pytest.raises(OSError):
                breaker.call(disk_full)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.metrics.failed_calls == 0

    def test_state_listener(self, clock: FakeClock) -> None:
        listener = MagicMock()
        breaker = CircuitBreaker(
            "x", BreakerConfig(failure_threshold=1), clock=clock, on_state_change=listener
        )
        _fail_times(breaker, 1)
        listener.assert_called_once_with("x", CircuitState.CLOSED, CircuitState.OPEN)

    def test_reset(self, breaker: CircuitBreaker) -> None:
        _fail_times(breaker, 5)
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.call(lambda: 42) == 42

    def test_snapshot(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        _fail_times(breaker, 5)
        clock.advance(10)
        snap = breaker.snapshot()
        assert snap["state"] == "open"
        assert snap["failures_in_window"] == 5
        assert snap["retry_in"] == pytest.approx(20.0)
        assert snap["metrics"]["times_opened"] == 1


class TestBreakerRegistry:
    """Tests for BreakerRegistry."""

    def test_shared_state_per_name(self, clock: FakeClock) -> None:
        registry = BreakerRegistry(BreakerConfig(failure_threshold=2), clock=clock)
        assert registry.get("a") is registry.get("a")
        for _ in range(2):
            with pytest.raises(NetworkError):
                registry.call("a", _failing)
        assert registry.open_breakers() == ["a"]
        assert registry.call("b", lambda: "fine") == "fine"
        assert registry.names() == ["a", "b"]

    def test_wrap_and_protect(self, clock: FakeClock) -> None:
        registry = BreakerRegistry(BreakerConfig(failure_threshold=1), clock=clock)
        wrapped = registry.wrap("dep", _failing)
        with pytest.raises(NetworkError):
            wrapped()
        with pytest.raises(CircuitOpenError):
            protect(registry, "dep", lambda: None)()

    def test_snapshot_and_reset_all(self, clock: FakeClock) -> None:
        registry = BreakerRegistry(BreakerConfig(failure_threshold=1), clock=clock)
        with pytest.raises(NetworkError):
            registry.call("dep", _failing)
        assert registry.snapshot()["dep"]["state"] == "open"
        registry.reset_all()
        assert registry.open_breakers() == []
