"""Error taxonomy for the sync engine.

This module provides:
- ErrorCategory, ErrorSeverity, RetryClassification: classification axes
- SyncError: Base exception carrying category, severity and retry class
- One subclass per category plus engine-specific errors
- classify_error: Map arbitrary exceptions onto the taxonomy

Every failure that crosses a component boundary is expressed as a
SyncError so the retry policy, the circuit breaker and the result
reporting can make decisions without inspecting library exceptions.
"""

from __future__ import annotations

import errno
from enum import Enum
from typing import Any

import httpx


class ErrorCategory(str, Enum):
    """What kind of thing failed."""

    NETWORK = "network"
    FILESYSTEM = "filesystem"
    DEVICE = "device"
    TRANSFER = "transfer"
    PERMISSION = "permission"
    TIMEOUT = "timeout"
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    RESOURCE = "resource"
    AUTHENTICATION = "authentication"


class ErrorSeverity(str, Enum):
    """How bad a failure is for the operator."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RetryClassification(str, Enum):
    """Whether an operation that failed this way may be retried."""

    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"
    CONDITIONAL = "conditionally_retryable"


class SyncError(Exception):
    """Base class for all engine errors.

    Class attributes give the defaults for each category; individual
    instances may override severity and retry classification.

    Attributes:
        message: Human readable description.
        category: Error category.
        severity: Error severity.
        retry: Retry classification.
        notify: Whether the error should be flagged for external notification.
        context: Extra structured details (paths, item ids, status codes).
    """

    category: ErrorCategory = ErrorCategory.TRANSFER
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    retry: RetryClassification = RetryClassification.NON_RETRYABLE
    notify: bool = False

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        severity: ErrorSeverity | None = None,
        retry: RetryClassification | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})
        if severity is not None:
            self.severity = severity
        if retry is not None:
            self.retry = retry

    @property
    def retryable(self) -> bool:
        """True if the error may be retried without limit."""
        return self.retry == RetryClassification.RETRYABLE

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "retry": self.retry.value,
            "context": self.context,
        }


class NetworkError(SyncError):
    """Remote service unreachable or returned a transient failure."""

    category = ErrorCategory.NETWORK
    severity = ErrorSeverity.HIGH
    retry = RetryClassification.RETRYABLE


class FileSystemError(SyncError):
    """Local filesystem operation failed."""

    category = ErrorCategory.FILESYSTEM
    severity = ErrorSeverity.HIGH
    retry = RetryClassification.CONDITIONAL


class DeviceError(SyncError):
    """Target device misbehaved (I/O error, removed, read-only)."""

    category = ErrorCategory.DEVICE
    severity = ErrorSeverity.HIGH
    retry = RetryClassification.CONDITIONAL


class TransferError(SyncError):
    """A single transfer failed for a reason specific to that item."""

    category = ErrorCategory.TRANSFER
    severity = ErrorSeverity.MEDIUM
    retry = RetryClassification.NON_RETRYABLE


class AccessDeniedError(SyncError):
    """Permission denied on a local path."""

    category = ErrorCategory.PERMISSION
    severity = ErrorSeverity.HIGH
    retry = RetryClassification.NON_RETRYABLE


class OperationTimeoutError(SyncError):
    """An operation did not complete in time."""

    category = ErrorCategory.TIMEOUT
    severity = ErrorSeverity.MEDIUM
    retry = RetryClassification.RETRYABLE


class ConfigurationError(SyncError):
    """Invalid or inconsistent configuration."""

    category = ErrorCategory.CONFIGURATION
    severity = ErrorSeverity.CRITICAL
    retry = RetryClassification.NON_RETRYABLE
    notify = True


class ValidationError(SyncError):
    """Invalid input data (bad rule, negative budget, malformed catalog)."""

    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.MEDIUM
    retry = RetryClassification.NON_RETRYABLE
    notify = True


class ResourceError(SyncError):
    """A resource is exhausted (disk full, quota)."""

    category = ErrorCategory.RESOURCE
    severity = ErrorSeverity.HIGH
    retry = RetryClassification.CONDITIONAL


class AuthenticationError(SyncError):
    """Remote service rejected our credentials."""

    category = ErrorCategory.AUTHENTICATION
    severity = ErrorSeverity.HIGH
    retry = RetryClassification.NON_RETRYABLE


# === Engine errors ===


class CircuitOpenError(SyncError):
    """Raised when a call is rejected by an open circuit breaker.

    Attributes:
        name: Name of the protected dependency.
        retry_at: Monotonic time at which a trial call will be allowed.
    """

    category = ErrorCategory.NETWORK
    severity = ErrorSeverity.MEDIUM
    retry = RetryClassification.NON_RETRYABLE

    def __init__(self, name: str, retry_at: float | None = None) -> None:
        super().__init__(
            f"Circuit breaker '{name}' is open",
            context={"breaker": name, "retry_at": retry_at},
        )
        self.name = name
        self.retry_at = retry_at


class TargetUnavailableError(DeviceError):
    """Target is not attached or not ready."""

    retry = RetryClassification.NON_RETRYABLE


class TargetBusyError(DeviceError):
    """Target is held by another sync operation."""

    severity = ErrorSeverity.LOW
    retry = RetryClassification.NON_RETRYABLE


class TransferCancelledError(TransferError):
    """Transfer was cancelled (stop request or target removal)."""

    severity = ErrorSeverity.LOW


class VerificationError(TransferError):
    """Transferred data did not match the expected size or checksum."""

    retry = RetryClassification.CONDITIONAL


_DEVICE_ERRNOS = {errno.ENODEV, errno.ENXIO, errno.EIO, errno.EROFS, errno.ENOTCONN}
_RESOURCE_ERRNOS = {errno.ENOSPC, errno.EDQUOT, errno.EMFILE, errno.ENFILE}
_PERMISSION_ERRNOS = {errno.EACCES, errno.EPERM}


def classify_error(exc: BaseException, context: dict[str, Any] | None = None) -> SyncError:
    """Map an exception onto the error taxonomy.

    SyncError instances are returned unchanged. Library and builtin
    exceptions are wrapped in the matching SyncError subclass; the
    original exception is attached as ``__cause__``.

    Args:
        exc: The exception to classify.
        context: Extra context to attach to the wrapped error.

    Returns:
        A SyncError describing the failure.
    """
    if isinstance(exc, SyncError):
        return exc

    error = _wrap(exc, context or {})
    error.__cause__ = exc
    return error


def _wrap(exc: BaseException, context: dict[str, Any]) -> SyncError:
    message = str(exc) or type(exc).__name__

    if isinstance(exc, httpx.TimeoutException):
        return OperationTimeoutError(message, context=context)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        context = {**context, "status_code": status}
        if status in (401, 403):
            return AuthenticationError(message, context=context)
        if status in (408, 429) or status >= 500:
            return NetworkError(message, context=context)
        return TransferError(message, context=context)
    if isinstance(exc, httpx.TransportError):
        return NetworkError(message, context=context)

    if isinstance(exc, TimeoutError):
        return OperationTimeoutError(message, context=context)
    if isinstance(exc, ConnectionError):
        return NetworkError(message, context=context)
    if isinstance(exc, OSError):
        code = exc.errno
        if code is not None:
            context = {**context, "errno": code}
        if code in _RESOURCE_ERRNOS:
            return ResourceError(message, context=context)
        if code in _PERMISSION_ERRNOS or isinstance(exc, PermissionError):
            return AccessDeniedError(message, context=context)
        if code in _DEVICE_ERRNOS:
            return DeviceError(message, context=context)
        return FileSystemError(message, context=context)
    if isinstance(exc, ValueError | KeyError | TypeError):
        return ValidationError(message, context=context)

    return TransferError(message, context=context)
