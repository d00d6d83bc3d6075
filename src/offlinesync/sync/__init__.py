"""Sync engine: planning, transfers and target lifecycle.

Architecture:
    Detector → TargetLifecycleManager → SyncOrchestrator → TransferExecutor → Workers

Components:
- **Detector**: Watches (or polls) a mount base, pushes attach/detach events
- **TargetLifecycleManager**: Consumes detection events, probes targets,
  hands out exclusive leases
- **SyncOrchestrator**: Runs list → plan → transfer → report cycles per target
- **SelectionPlanner**: Greedy, budgeted keep/fetch/evict manifest
- **TransferExecutor**: Evictions then fetches on a WorkerPool
- **BreakerRegistry**: Circuit breakers guarding catalog and webhook calls

Only the dependency-free building blocks are re-exported here; import the
orchestrator, executor and detector from their modules.
"""

from offlinesync.sync.breaker import BreakerRegistry, CircuitBreaker, CircuitState, protect
from offlinesync.sync.planner import SelectionPlanner, plan
from offlinesync.sync.retry import RetryPolicy, retry_call
from offlinesync.sync.types import (
    CatalogItem,
    ItemError,
    LocalEntry,
    ManifestAction,
    ManifestEntry,
    SkippedCandidate,
    SyncManifest,
    SyncResult,
)

__all__ = [
    # Planning
    "SelectionPlanner",
    "plan",
    # Resilience
    "BreakerRegistry",
    "CircuitBreaker",
    "CircuitState",
    "protect",
    "RetryPolicy",
    "retry_call",
    # Types
    "CatalogItem",
    "ItemError",
    "LocalEntry",
    "ManifestAction",
    "ManifestEntry",
    "SkippedCandidate",
    "SyncManifest",
    "SyncResult",
]
