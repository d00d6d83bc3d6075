"""Core module - shared primitives for the sync engine.

This module contains:
- config: Validated configuration dataclasses
- errors: Error taxonomy and exception classification
- rules: Filter, priority and group-limit rules
- sizes: Byte size parsing and formatting
- hashing: File hashing
- types: Shared state enums
"""

from offlinesync.core.config import (
    BreakerConfig,
    DetectionConfig,
    EngineConfig,
    JobConfig,
    NotificationConfig,
    PerformanceConfig,
    SourceConfig,
    TargetConfig,
)
from offlinesync.core.errors import (
    AccessDeniedError,
    AuthenticationError,
    CircuitOpenError,
    ConfigurationError,
    DeviceError,
    ErrorCategory,
    ErrorSeverity,
    FileSystemError,
    NetworkError,
    OperationTimeoutError,
    ResourceError,
    RetryClassification,
    SyncError,
    TargetBusyError,
    TargetUnavailableError,
    TransferCancelledError,
    TransferError,
    ValidationError,
    VerificationError,
    classify_error,
)
from offlinesync.core.hashing import compute_file_hash
from offlinesync.core.rules import FilterRule, FilterTree, GroupLimit, PriorityRule
from offlinesync.core.sizes import format_size, parse_size
from offlinesync.core.types import (
    BusyPolicy,
    HealthStatus,
    OrchestratorState,
    SyncDirection,
    TargetState,
)

__all__ = [
    # Config
    "BreakerConfig",
    "DetectionConfig",
    "EngineConfig",
    "JobConfig",
    "NotificationConfig",
    "PerformanceConfig",
    "SourceConfig",
    "TargetConfig",
    # Errors
    "AccessDeniedError",
    "AuthenticationError",
    "CircuitOpenError",
    "ConfigurationError",
    "DeviceError",
    "ErrorCategory",
    "ErrorSeverity",
    "FileSystemError",
    "NetworkError",
    "OperationTimeoutError",
    "ResourceError",
    "RetryClassification",
    "SyncError",
    "TargetBusyError",
    "TargetUnavailableError",
    "TransferCancelledError",
    "TransferError",
    "ValidationError",
    "VerificationError",
    "classify_error",
    # Rules
    "FilterRule",
    "FilterTree",
    "GroupLimit",
    "PriorityRule",
    # Helpers
    "compute_file_hash",
    "format_size",
    "parse_size",
    # Types
    "BusyPolicy",
    "HealthStatus",
    "OrchestratorState",
    "SyncDirection",
    "TargetState",
]
