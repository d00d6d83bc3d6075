"""Tests for the error taxonomy."""

import errno

import httpx

from offlinesync.core.errors import (
    AccessDeniedError,
    AuthenticationError,
    CircuitOpenError,
    ConfigurationError,
    DeviceError,
    ErrorCategory,
    FileSystemError,
    NetworkError,
    OperationTimeoutError,
    ResourceError,
    RetryClassification,
    SyncError,
    TransferError,
    ValidationError,
    classify_error,
)


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "http://catalog.test/items")
    response = httpx.Response(code, request=request)
    return httpx.HTTPStatusError(f"HTTP {code}", request=request, response=response)


class TestSyncError:
    """Tests for SyncError defaults and overrides."""

    def test_class_defaults(self) -> None:
        """Subclasses carry category and retry defaults."""
        error = NetworkError("down")
        assert error.category == ErrorCategory.NETWORK
        assert error.retryable is True

    def test_instance_override(self) -> None:
        """Retry classification can be overridden per instance."""
        error = NetworkError("down", retry=RetryClassification.NON_RETRYABLE)
        assert error.retryable is False
        assert NetworkError("again").retryable is True

    def test_configuration_errors_notify(self) -> None:
        """Configuration and validation errors are flagged for notification."""
        assert ConfigurationError("bad").notify is True
        assert ValidationError("bad").notify is True
        assert NetworkError("down").notify is False

    def test_to_dict(self) -> None:
        """to_dict exposes type, category and context."""
        data = TransferError("broken", context={"item": "a"}).to_dict()
        assert data["type"] == "TransferError"
        assert data["category"] == "transfer"
        assert data["context"] == {"item": "a"}

    def test_circuit_open_is_not_retryable(self) -> None:
        """An open circuit must not be retried by the retry loop."""
        error = CircuitOpenError("catalog:x", retry_at=12.0)
        assert error.name == "catalog:x"
        assert error.retry == RetryClassification.NON_RETRYABLE


class TestClassifyError:
    """Tests for classify_error."""

    def test_sync_error_unchanged(self) -> None:
        original = DeviceError("gone")
        assert classify_error(original) is original

    def test_http_timeout(self) -> None:
        assert isinstance(classify_error(httpx.ReadTimeout("slow")), OperationTimeoutError)

    def test_http_connect_error(self) -> None:
        assert isinstance(classify_error(httpx.ConnectError("refused")), NetworkError)

    def test_http_status_codes(self) -> None:
        """Status codes map to auth, network or transfer errors."""
        assert isinstance(classify_error(_status_error(401)), AuthenticationError)
        assert isinstance(classify_error(_status_error(503)), NetworkError)
        assert isinstance(classify_error(_status_error(429)), NetworkError)
        error = classify_error(_status_error(404))
        assert isinstance(error, TransferError)
        assert error.context["status_code"] == 404

    def test_os_errors(self) -> None:
        """OSError errno values select the category."""
        assert isinstance(classify_error(OSError(errno.ENOSPC, "full")), ResourceError)
        assert isinstance(classify_error(PermissionError(errno.EACCES, "no")), AccessDeniedError)
        assert isinstance(classify_error(OSError(errno.EIO, "io")), DeviceError)
        assert isinstance(classify_error(FileNotFoundError(errno.ENOENT, "x")), FileSystemError)

    def test_value_error_is_validation(self) -> None:
        assert isinstance(classify_error(ValueError("bad")), ValidationError)

    def test_unknown_is_transfer_error(self) -> None:
        """Anything else becomes a TransferError with the cause attached."""
        cause = RuntimeError("boom")
        error = classify_error(cause, context={"item": "x"})
        assert isinstance(error, TransferError)
        assert isinstance(error, SyncError)
        assert error.__cause__ is cause
        assert error.context == {"item": "x"}
