"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from offlinesync.sync.status import HealthReport, StatusSnapshot

# === Health schema ===


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    issues: list[str] = []
    timestamp: float


# === Status schemas ===


class StatusResponse(BaseModel):
    """Snapshot of the whole service."""

    running: bool
    state: str
    active_target: str | None
    targets: list[dict[str, Any]]
    breakers: dict[str, dict[str, Any]]
    timestamp: float


class ManifestResponse(BaseModel):
    """Last manifest planned for a target job."""

    target_id: str
    job: str | None
    budget: int
    planned_size: int
    fetch_size: int
    orphan_overflow: int
    created_at: float
    entries: list[dict[str, Any]]
    skipped: list[dict[str, Any]]


# === Control schemas ===


class ControlRequest(BaseModel):
    """Optional target selection for control actions."""

    target: str | None = None


class ControlResponse(BaseModel):
    """Outcome of a control action."""

    action: str
    targets: list[str]


class BreakerResetRequest(BaseModel):
    """Breaker to reset; every breaker when omitted."""

    name: str | None = None


class BreakerResetResponse(BaseModel):
    breakers: list[str]


class TargetToggleResponse(BaseModel):
    """Outcome of enabling or disabling a target."""

    target_id: str
    enabled: bool


# === Converters ===


def health_to_response(report: HealthReport) -> HealthResponse:
    """Convert a HealthReport to a response model."""
    return HealthResponse(
        status=report.status.value,
        issues=report.issues,
        timestamp=report.timestamp,
    )


def status_to_response(snapshot: StatusSnapshot) -> StatusResponse:
    """Convert a StatusSnapshot to a response model."""
    return StatusResponse(**snapshot.to_dict())
