"""Tests for retry logic."""

import threading
from unittest.mock import MagicMock

import pytest

from offlinesync.core.config import PerformanceConfig
from offlinesync.core.errors import (
    CircuitOpenError,
    DeviceError,
    NetworkError,
    TransferCancelledError,
    ValidationError,
)
from offlinesync.sync.retry import JitterMode, RetryPolicy, retry_call

FAST = RetryPolicy(max_attempts=3, initial_delay=0.0, conditional_attempts=2)


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_exponential_delay_capped(self) -> None:
        policy = RetryPolicy(initial_delay=1.0, multiplier=2.0, max_delay=5.0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter(self) -> None:
        full = RetryPolicy(initial_delay=4.0, jitter=JitterMode.FULL)
        equal = RetryPolicy(initial_delay=4.0, jitter=JitterMode.EQUAL)
        assert full.delay_for(1, rng=lambda: 0.5) == 2.0
        assert equal.delay_for(1, rng=lambda: 0.0) == 2.0

    def test_attempts_by_classification(self) -> None:
        policy = RetryPolicy(max_attempts=5, conditional_attempts=2)
        assert policy.attempts_for(NetworkError("x")) == 5
        assert policy.attempts_for(DeviceError("x")) == 2
        assert policy.attempts_for(ValidationError("x")) == 1

    def test_from_performance(self) -> None:
        policy = RetryPolicy.from_performance(PerformanceConfig(retry_attempts=1, retry_delay=3))
        assert policy.max_attempts == 1
        assert policy.conditional_attempts == 1
        assert policy.initial_delay == 3


class TestRetryCall:
    """Tests for retry_call."""

    def test_success_after_transient_failures(self) -> None:
        func = MagicMock(side_effect=[NetworkError("a"), NetworkError("b"), "done"])
        assert retry_call(func, FAST) == "done"
        assert func.call_count == 3

    def test_gives_up_after_max_attempts(self) -> None:
        func = MagicMock(side_effect=NetworkError("down"))
        with pytest.raises(NetworkError):
            retry_call(func, FAST)
        assert func.call_count == 3

    def test_non_retryable_fails_immediately(self) -> None:
        func = MagicMock(side_effect=ValidationError("bad"))
        with pytest.raises(ValidationError):
            retry_call(func, FAST)
        assert func.call_count == 1

    def test_conditional_limited(self) -> None:
        func = MagicMock(side_effect=DeviceError("io"))
        with pytest.raises(DeviceError):
            retry_call(func, FAST)
        assert func.call_count == 2

    def test_open_circuit_not_retried(self) -> None:
        func = MagicMock(side_effect=CircuitOpenError("dep"))
        with pytest.raises(CircuitOpenError):
            retry_call(func, FAST)
        assert func.call_count == 1

    def test_library_errors_classified(self) -> None:
        """Builtin exceptions are wrapped into the taxonomy."""
        func = MagicMock(side_effect=ConnectionResetError("reset"))
        with pytest.raises(NetworkError) as exc_info:
            retry_call(func, FAST)
        assert isinstance(exc_info.value.__cause__, ConnectionResetError)
        assert func.call_count == 3

    def test_cancel_interrupts_backoff(self) -> None:
        cancel = threading.Event()
        cancel.set()
        func = MagicMock(side_effect=NetworkError("down"))
        policy = RetryPolicy(max_attempts=5, initial_delay=30.0)
        with pytest.raises(TransferCancelledError):
            retry_call(func, policy, cancel_event=cancel)
        assert func.call_count == 1

    def test_on_retry_callback(self) -> None:
        on_retry = MagicMock()
        func = MagicMock(side_effect=[NetworkError("a"), "ok"])
        retry_call(func, FAST, on_retry=on_retry)
        attempt, error, delay = on_retry.call_args.args
        assert attempt == 1
        assert isinstance(error, NetworkError)
        assert delay == 0.0
