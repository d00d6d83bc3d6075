"""Sync service: wires the engine together from an EngineConfig.

This module provides:
- SyncService: Owns state, breakers, targets, detection and orchestrators

The service is what the CLI and the HTTP API talk to. It holds exactly
one BreakerRegistry, one LocalSyncState and one TargetLifecycleManager,
and hands them to every orchestrator it creates.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from offlinesync.core.errors import TargetUnavailableError, ValidationError
from offlinesync.core.types import TargetState
from offlinesync.sync.breaker import BreakerRegistry, CircuitState
from offlinesync.sync.detector import MountWatcher, PollingDetector, create_detector
from offlinesync.sync.events import EventBus, EventType
from offlinesync.sync.orchestrator import (
    AdapterFactory,
    SyncOrchestrator,
    default_adapter_factory,
)
from offlinesync.sync.state import LocalSyncState
from offlinesync.sync.status import HealthReport, StatusSnapshot
from offlinesync.sync.target import (
    Target,
    TargetEvent,
    TargetEventKind,
    TargetLifecycleManager,
)

if TYPE_CHECKING:
    from offlinesync.core.config import EngineConfig
    from offlinesync.sync.types import SyncManifest, SyncResult

logger = logging.getLogger(__name__)


class SyncService:
    """The running engine.

    Usage:
        service = SyncService(EngineConfig.from_dict(data))
        service.start()
        service.trigger("sdcard")
        print(service.status().to_dict())
        service.close()
    """

    def __init__(
        self,
        config: EngineConfig,
        state: LocalSyncState | None = None,
        adapter_factory: AdapterFactory = default_adapter_factory,
    ) -> None:
        """Initialize the service.

        Args:
            config: Validated engine configuration.
            state: Sync state (opened at config.state_path by default).
            adapter_factory: Builds catalog adapters for to_target jobs.
        """
        self._config = config
        self._lock = threading.Lock()
        self._running = False

        self.events = EventBus()
        self.state = state or LocalSyncState(config.state_path)
        self.registry = BreakerRegistry(config.breaker, on_state_change=self._on_breaker_change)
        self.manager = TargetLifecycleManager(config.targets)
        self.manager.add_listener(self._on_target_change)

        self._orchestrators: dict[str, SyncOrchestrator] = {}
        for target in config.targets:
            orchestrator = SyncOrchestrator(
                target,
                config.jobs_for(target.target_id),
                self.manager,
                self.state,
                self.registry,
                performance=config.performance,
                events=self.events,
                history_size=config.history_size,
                adapter_factory=adapter_factory,
            )
            self.manager.add_listener(orchestrator.on_target_change)
            self._orchestrators[target.target_id] = orchestrator

        self._detector: MountWatcher | PollingDetector | None = create_detector(
            config.detection,
            self.manager.channel,
            paths=[t.path for t in config.targets if t.removable],
        )

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def running(self) -> bool:
        return self._running

    @property
    def orchestrators(self) -> list[SyncOrchestrator]:
        return list(self._orchestrators.values())

    def orchestrator(self, target_id: str) -> SyncOrchestrator:
        """Orchestrator of a target.

        Raises:
            TargetUnavailableError: If the target is not configured.
        """
        try:
            return self._orchestrators[target_id]
        except KeyError:
            raise TargetUnavailableError(
                f"Unknown target: {target_id}", context={"target": target_id}
            ) from None

    # === Event translation ===

    def _on_breaker_change(self, name: str, old: CircuitState, new: CircuitState) -> None:
        self.events.emit(
            EventType.BREAKER_STATE_CHANGED, None, name=name, old=old.value, new=new.value
        )

    def _on_target_change(self, target: Target, old: TargetState, new: TargetState) -> None:
        self.events.emit(
            EventType.TARGET_STATE_CHANGED,
            target.target_id,
            old=old.value,
            new=new.value,
        )
        if new == TargetState.READY and old == TargetState.ATTACHING:
            self.events.emit(EventType.TARGET_ATTACHED, target.target_id, path=str(target.path))
        elif new == TargetState.ABSENT and old in (
            TargetState.READY,
            TargetState.BUSY,
            TargetState.DETACHING,
        ):
            self.events.emit(EventType.TARGET_DETACHED, target.target_id, path=str(target.path))

    # === Lifecycle ===

    def start(self) -> None:
        """Probe targets, start detection and schedule the orchestrators."""
        with self._lock:
            if self._running:
                return
            self._running = True

        # Orchestrators first so an attach seen by the manager triggers a cycle
        for orchestrator in self._orchestrators.values():
            orchestrator.start()
        self.manager.start()
        if self._detector is not None:
            try:
                self._detector.start()
            except FileNotFoundError as e:
                logger.error(f"Device detection disabled: {e}")
        logger.info(f"Sync service started ({len(self._orchestrators)} targets)")

    def stop(self, timeout: float = 30.0) -> None:
        """Stop detection and orchestrators, cancelling running transfers."""
        with self._lock:
            if not self._running:
                return
            self._running = False

        if self._detector is not None:
            self._detector.stop()
        for orchestrator in self._orchestrators.values():
            orchestrator.stop(timeout=timeout)
        self.manager.stop()
        logger.info("Sync service stopped")

    def close(self) -> None:
        self.stop()
        self.state.close()

    # === Control ===

    def trigger(self, target_id: str | None = None) -> list[str]:
        """Start an on-demand cycle for one target or every ready target.

        Returns:
            Ids of the targets whose cycle was started.
        """
        if target_id is not None:
            return [target_id] if self.orchestrator(target_id).trigger() else []
        started = []
        for tid, orchestrator in self._orchestrators.items():
            if self.manager.is_ready(tid) and orchestrator.trigger():
                started.append(tid)
        return started

    def run_once(self, target_id: str | None = None) -> list[SyncResult]:
        """Run cycles synchronously (one target, or every ready target)."""
        if target_id is not None:
            return self.orchestrator(target_id).run_cycle()
        results: list[SyncResult] = []
        for tid, orchestrator in self._orchestrators.items():
            if self.manager.is_ready(tid):
                results.extend(orchestrator.run_cycle())
        return results

    def cancel(self, target_id: str | None = None) -> list[str]:
        """Cancel running cycles; scheduling continues.

        Returns:
            Ids of the targets whose cycle was cancelled.
        """
        if target_id is not None:
            return [target_id] if self.orchestrator(target_id).cancel() else []
        return [tid for tid, o in self._orchestrators.items() if o.cancel()]

    def refresh(self, target_id: str | None = None) -> list[str]:
        """Re-probe targets.

        Absent targets get an attach event queued for the lifecycle
        manager; attached ones have their free space re-read.

        Returns:
            Ids of the targets refreshed.
        """
        if target_id is not None:
            self.orchestrator(target_id)
        ids = [target_id] if target_id is not None else list(self._orchestrators)
        for tid in ids:
            target = self.manager.get(tid)
            if target.state == TargetState.ABSENT:
                self.manager.channel.put(TargetEvent(TargetEventKind.ATTACH, target.path, tid))
            elif target.state in (TargetState.READY, TargetState.BUSY):
                self.manager.refresh_space(tid)
        return ids

    def enable_target(self, target_id: str) -> None:
        self.orchestrator(target_id).enable()

    def disable_target(self, target_id: str) -> None:
        self.orchestrator(target_id).disable()

    def reset_breakers(self, name: str | None = None) -> list[str]:
        """Close circuit breakers by hand, one by name or all of them.

        Returns:
            Names of the breakers reset.

        Raises:
            ValidationError: If no breaker has that name.
        """
        if name is None:
            names = self.registry.names()
            self.registry.reset_all()
        elif name in self.registry.names():
            names = [name]
            self.registry.get(name).reset()
        else:
            raise ValidationError(f"Unknown circuit breaker: {name}")
        logger.info(f"Circuit breakers reset: {', '.join(names) or 'none'}")
        return names

    # === Queries ===

    def status(self) -> StatusSnapshot:
        return StatusSnapshot.collect(
            self.orchestrators, self.manager, self.registry, running=self._running
        )

    def health(self) -> HealthReport:
        return HealthReport.assess(self.status())

    def manifest(self, target_id: str, job: str | None = None) -> SyncManifest | None:
        return self.orchestrator(target_id).last_manifest(job)

    def find_job(self, job_name: str) -> SyncOrchestrator:
        """Orchestrator owning a job.

        Raises:
            ValidationError: If no configured target has the job.
        """
        for orchestrator in self._orchestrators.values():
            if any(job.name == job_name for job in orchestrator.jobs):
                return orchestrator
        raise ValidationError(f"No target runs job {job_name!r}")
