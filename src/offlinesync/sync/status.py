"""Status and health reporting.

This module provides:
- StatusSnapshot: Point-in-time view of targets, cycles and breakers
- HealthReport: healthy / degraded / unhealthy assessment
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from offlinesync.core.types import HealthStatus, OrchestratorState

if TYPE_CHECKING:
    from offlinesync.sync.breaker import BreakerRegistry
    from offlinesync.sync.orchestrator import SyncOrchestrator
    from offlinesync.sync.target import TargetLifecycleManager

# Most active state first, used for the overall state of the service
_STATE_ORDER = (
    OrchestratorState.TRANSFERRING,
    OrchestratorState.PLANNING,
    OrchestratorState.REPORTING,
    OrchestratorState.ERROR,
    OrchestratorState.IDLE,
    OrchestratorState.STOPPED,
)


@dataclass
class StatusSnapshot:
    """Everything an observer needs to display the engine state.

    Attributes:
        running: Whether the service is started.
        state: Most active orchestrator state.
        active_target: Target with a cycle in progress, if any.
        targets: Per-target view (lifecycle + orchestrator).
        breakers: Circuit breaker snapshots by name.
        timestamp: When the snapshot was taken.
    """

    running: bool
    state: OrchestratorState
    active_target: str | None = None
    targets: list[dict[str, Any]] = field(default_factory=list)
    breakers: dict[str, dict[str, Any]] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def collect(
        cls,
        orchestrators: Sequence[SyncOrchestrator],
        manager: TargetLifecycleManager,
        registry: BreakerRegistry,
        running: bool = True,
    ) -> StatusSnapshot:
        targets = []
        states = []
        active = None
        for orchestrator in orchestrators:
            entry = orchestrator.status()
            entry["target"] = manager.get(orchestrator.target_id).to_dict()
            targets.append(entry)
            states.append(orchestrator.state)
            if active is None and orchestrator.is_running:
                active = orchestrator.target_id

        state = OrchestratorState.IDLE if running else OrchestratorState.STOPPED
        for candidate in _STATE_ORDER:
            if candidate in states:
                state = candidate
                break

        return cls(
            running=running,
            state=state,
            active_target=active,
            targets=targets,
            breakers=registry.snapshot(),
        )

    def target(self, target_id: str) -> dict[str, Any] | None:
        for entry in self.targets:
            if entry["target_id"] == target_id:
                return entry
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "state": self.state.value,
            "active_target": self.active_target,
            "targets": self.targets,
            "breakers": self.breakers,
            "timestamp": self.timestamp,
        }


@dataclass
class HealthReport:
    """Overall health.

    - unhealthy: the service is stopped, or every known breaker is open
    - degraded: some breaker is open, a target failed its probe, or the
      last cycle of a target was aborted
    - healthy: otherwise
    """

    status: HealthStatus
    issues: list[str] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def assess(cls, snapshot: StatusSnapshot) -> HealthReport:
        issues: list[str] = []
        if not snapshot.running:
            return cls(HealthStatus.UNHEALTHY, ["service not running"])

        open_breakers = [
            name for name, info in snapshot.breakers.items() if info.get("state") == "open"
        ]
        for name in open_breakers:
            issues.append(f"circuit open: {name}")

        for entry in snapshot.targets:
            target_id = entry["target_id"]
            last_error = entry.get("target", {}).get("last_error")
            if last_error:
                issues.append(f"target {target_id}: {last_error}")
            last = entry.get("last_result")
            if last and last.get("aborted"):
                issues.append(f"target {target_id}: last cycle aborted")

        if snapshot.breakers and len(open_breakers) == len(snapshot.breakers):
            return cls(HealthStatus.UNHEALTHY, issues)
        if issues:
            return cls(HealthStatus.DEGRADED, issues)
        return cls(HealthStatus.HEALTHY)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "issues": self.issues,
            "timestamp": self.timestamp,
        }
