"""Retry logic with exponential backoff and failure classification.

This module provides:
- JitterMode: Randomization applied to backoff delays
- RetryPolicy: Attempt limits and backoff parameters
- retry_call: Execute a function, retrying according to its error class

Retry decisions follow the error taxonomy:
- RETRYABLE errors are retried up to max_attempts
- CONDITIONAL errors (device, filesystem, resource) are retried up to
  conditional_attempts, then escalated
- NON_RETRYABLE errors and open circuits fail immediately

Backoff waits on the caller's cancel event, so a stop request or a
target removal interrupts a pending retry.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, TypeVar

from offlinesync.core.errors import (
    CircuitOpenError,
    RetryClassification,
    SyncError,
    TransferCancelledError,
    classify_error,
)

if TYPE_CHECKING:
    from offlinesync.core.config import PerformanceConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY = 1.0  # seconds
DEFAULT_MAX_DELAY = 60.0  # seconds
DEFAULT_MULTIPLIER = 2.0
DEFAULT_CONDITIONAL_ATTEMPTS = 2


class JitterMode(str, Enum):
    """Randomization applied to a computed backoff delay."""

    NONE = "none"
    FULL = "full"  # uniform in [0, delay]
    EQUAL = "equal"  # delay/2 + uniform in [0, delay/2]


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently to retry.

    Attributes:
        max_attempts: Total attempts for retryable errors (first call included).
        initial_delay: Delay before the second attempt, in seconds.
        max_delay: Upper bound for any delay.
        multiplier: Growth factor between attempts.
        jitter: Randomization mode.
        conditional_attempts: Total attempts for conditionally retryable errors.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    initial_delay: float = DEFAULT_INITIAL_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    multiplier: float = DEFAULT_MULTIPLIER
    jitter: JitterMode = JitterMode.NONE
    conditional_attempts: int = DEFAULT_CONDITIONAL_ATTEMPTS

    @classmethod
    def from_performance(cls, performance: PerformanceConfig) -> RetryPolicy:
        """Build the policy described by the performance settings."""
        return cls(
            max_attempts=performance.retry_attempts,
            initial_delay=performance.retry_delay,
            max_delay=performance.max_retry_delay,
            conditional_attempts=min(DEFAULT_CONDITIONAL_ATTEMPTS, performance.retry_attempts),
        )

    def attempts_for(self, error: SyncError) -> int:
        """Total attempts allowed for an error's retry classification."""
        if error.retry == RetryClassification.RETRYABLE:
            return self.max_attempts
        if error.retry == RetryClassification.CONDITIONAL:
            return min(self.conditional_attempts, self.max_attempts)
        return 1

    def delay_for(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)
        if self.jitter == JitterMode.FULL:
            return delay * rng()
        if self.jitter == JitterMode.EQUAL:
            return delay / 2 + (delay / 2) * rng()
        return delay


def retry_call(
    func: Callable[[], T],
    policy: RetryPolicy | None = None,
    cancel_event: threading.Event | None = None,
    operation: str = "operation",
    on_retry: Callable[[int, SyncError, float], None] | None = None,
) -> T:
    """Execute a function, retrying failures according to their class.

    Args:
        func: Zero-argument function to execute.
        policy: Retry policy (defaults to RetryPolicy()).
        cancel_event: Event that interrupts backoff waits when set.
        operation: Description used in log messages.
        on_retry: Called with (attempt, error, delay) before each wait.

    Returns:
        Result of the function.

    Raises:
        SyncError: The classified error of the last attempt, or
            TransferCancelledError if cancelled during a backoff wait.
    """
    policy = policy or RetryPolicy()
    attempt = 0

    while True:
        attempt += 1
        try:
            return func()
        except Exception as e:
            error = classify_error(e, context={"operation": operation})

            if isinstance(error, CircuitOpenError):
                logger.debug(f"{operation}: circuit '{error.name}' open, not retrying")
                raise

            limit = policy.attempts_for(error)
            if attempt >= limit:
                if limit > 1:
                    logger.error(f"{operation}: all {limit} attempts failed: {error.message}")
                if error is e:
                    raise
                raise error from e

            delay = policy.delay_for(attempt)
            logger.warning(
                f"{operation}: attempt {attempt}/{limit} failed "
                f"({error.category.value}): {error.message}. Retrying in {delay:.1f}s..."
            )
            if on_retry:
                on_retry(attempt, error, delay)

            if cancel_event is not None:
                if cancel_event.wait(delay):
                    raise TransferCancelledError(
                        f"{operation} cancelled while waiting to retry"
                    ) from e
            else:
                time.sleep(delay)
