"""Shared types for offlinesync.

This module defines enums shared by the sync engine, the status feed
and the control server.
"""

from __future__ import annotations

from enum import Enum


class OrchestratorState(str, Enum):
    """State of a sync orchestrator.

    A failed cycle passes through ERROR and returns to IDLE, so the
    next scheduled attempt can still run.
    """

    IDLE = "idle"
    PLANNING = "planning"
    TRANSFERRING = "transferring"
    REPORTING = "reporting"
    ERROR = "error"
    STOPPED = "stopped"


class TargetState(str, Enum):
    """Availability state of a sync target (mount point or device)."""

    ABSENT = "absent"
    ATTACHING = "attaching"
    READY = "ready"
    BUSY = "busy"
    DETACHING = "detaching"
    FAILED = "failed"


class HealthStatus(str, Enum):
    """Overall health reported by the status feed."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class SyncDirection(str, Enum):
    """Direction of a sync job relative to its target."""

    TO_TARGET = "to_target"
    FROM_TARGET = "from_target"


class BusyPolicy(str, Enum):
    """What to do when a target is requested while it is busy."""

    QUEUE = "queue"
    REJECT = "reject"
