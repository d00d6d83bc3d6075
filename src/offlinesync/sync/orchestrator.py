"""Sync orchestrator: one scheduled sync loop per target.

This module provides:
- VALID_TRANSITIONS: Allowed orchestrator state changes
- compute_budget: Byte budget for a job from its cap and the free space
- SyncOrchestrator: Runs cycles for the jobs of one target

A cycle takes the target lease, then for each job:
1. Lists the catalog (retry + the catalog's circuit breaker)
2. Scans the destination and reconciles it with the sync state
3. Plans a manifest within the job's budget
4. Executes the manifest and records the result

Catalog and target failures abort the job (recorded as an aborted
result); per-item failures are only recorded. The last manifest of each
job and a bounded history of results stay available after failures.
"""

from __future__ import annotations

import logging
import shutil
import threading
import time
from collections import deque
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from offlinesync.core.config import PerformanceConfig
from offlinesync.core.errors import SyncError, ValidationError, classify_error
from offlinesync.core.types import OrchestratorState, SyncDirection, TargetState
from offlinesync.sync.catalog import DirectoryCatalogAdapter, create_adapter, protect_catalog
from offlinesync.sync.events import EventBus, EventType
from offlinesync.sync.executor import TransferExecutor
from offlinesync.sync.matcher import ContentMatcher
from offlinesync.sync.planner import plan
from offlinesync.sync.retry import RetryPolicy, retry_call
from offlinesync.sync.state import scan_local_entries
from offlinesync.sync.types import (
    CatalogItem,
    InvalidTransitionError,
    ItemError,
    LocalEntry,
    SyncManifest,
    SyncResult,
)

if TYPE_CHECKING:
    from offlinesync.core.config import JobConfig, TargetConfig
    from offlinesync.sync.breaker import BreakerRegistry
    from offlinesync.sync.catalog import CatalogAdapter
    from offlinesync.sync.state import LocalSyncState
    from offlinesync.sync.target import Target, TargetLease, TargetLifecycleManager

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 20

VALID_TRANSITIONS: dict[OrchestratorState, set[OrchestratorState]] = {
    OrchestratorState.IDLE: {OrchestratorState.PLANNING, OrchestratorState.STOPPED},
    OrchestratorState.PLANNING: {
        OrchestratorState.IDLE,
        OrchestratorState.TRANSFERRING,
        OrchestratorState.REPORTING,
        OrchestratorState.ERROR,
    },
    OrchestratorState.TRANSFERRING: {OrchestratorState.REPORTING, OrchestratorState.ERROR},
    OrchestratorState.REPORTING: {
        OrchestratorState.PLANNING,
        OrchestratorState.IDLE,
        OrchestratorState.ERROR,
    },
    OrchestratorState.ERROR: {OrchestratorState.IDLE},
    OrchestratorState.STOPPED: {OrchestratorState.IDLE},
}

AdapterFactory = Callable[["JobConfig", "BreakerRegistry"], "CatalogAdapter"]


def default_adapter_factory(job: JobConfig, registry: BreakerRegistry) -> CatalogAdapter:
    """Build the catalog adapter of a to_target job from its source.

    HTTP sources get one breaker per mirror from the registry.
    """
    source = job.source
    return create_adapter(
        source.kind,
        source.location,
        name=source.name,
        timeout=source.timeout,
        headers=source.headers,
        file_extensions=job.file_extensions,
        mirrors=source.mirrors,
        registry=registry,
    )


def compute_budget(
    max_size: int,
    free_space: int | None,
    reserve: int,
    tracked: int,
) -> int:
    """Byte budget of a job.

    The budget is what the job already occupies plus the free space above
    the reserve, capped by the configured max_size (0 means no cap).

    Args:
        max_size: Configured cap in bytes (0 for none).
        free_space: Free bytes on the destination, None when unknown.
        reserve: Bytes that must stay free.
        tracked: Bytes currently occupied by the job's synced items.
    """
    if free_space is None:
        return max_size
    available = max(0, free_space - reserve) + tracked
    if max_size > 0:
        return min(max_size, available)
    return available


class SyncOrchestrator:
    """Drives sync cycles for one target.

    Usage:
        orchestrator = SyncOrchestrator(target_config, jobs, manager, state, registry)
        orchestrator.start()        # schedules jobs with an interval
        orchestrator.trigger()      # on-demand cycle in the background
        orchestrator.stop()         # cancels transfers and waits
    """

    def __init__(
        self,
        target: TargetConfig,
        jobs: Sequence[JobConfig],
        manager: TargetLifecycleManager,
        state: LocalSyncState,
        registry: BreakerRegistry,
        performance: PerformanceConfig | None = None,
        events: EventBus | None = None,
        history_size: int = DEFAULT_HISTORY_SIZE,
        adapter_factory: AdapterFactory = default_adapter_factory,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            target: Target configuration.
            jobs: Jobs bound to this target, in processing order.
            manager: Lifecycle manager owning the target.
            state: Sync state database.
            registry: Circuit breaker registry shared with the executor.
            performance: Transfer settings.
            events: Event bus.
            history_size: Number of results kept.
            adapter_factory: Builds the catalog adapter of a to_target job
                from the job and the breaker registry.
            retry_policy: Retry policy (derived from performance by default).
        """
        self._target = target
        self._jobs = list(jobs)
        self._manager = manager
        self._state = state
        self._registry = registry
        self._events = events or EventBus()
        self._adapter_factory = adapter_factory
        self._performance = performance or PerformanceConfig()
        self._policy = retry_policy or RetryPolicy.from_performance(self._performance)
        self._executor = TransferExecutor(
            state, registry, self._performance, self._events, self._policy
        )

        self._lock = threading.RLock()
        self._cycle_lock = threading.Lock()
        self._orch_state = OrchestratorState.IDLE
        self._enabled = True
        self._stopping = False
        self._scheduler: BackgroundScheduler | None = None
        self._trigger_thread: threading.Thread | None = None
        self._lease: TargetLease | None = None
        self._history: deque[SyncResult] = deque(maxlen=history_size)
        self._manifests: dict[str, SyncManifest] = {}
        self._last_cycle_at: float | None = None

    # === Properties ===

    @property
    def target_id(self) -> str:
        return self._target.target_id

    @property
    def jobs(self) -> list[JobConfig]:
        return list(self._jobs)

    @property
    def state(self) -> OrchestratorState:
        return self._orch_state

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def is_running(self) -> bool:
        """True while a cycle is in progress."""
        return self._cycle_lock.locked()

    @property
    def history(self) -> list[SyncResult]:
        with self._lock:
            return list(self._history)

    @property
    def last_result(self) -> SyncResult | None:
        with self._lock:
            return self._history[-1] if self._history else None

    def last_manifest(self, job: str | None = None) -> SyncManifest | None:
        """Last manifest planned for a job (the first job by default)."""
        with self._lock:
            if job is None:
                job = self._jobs[0].name if self._jobs else None
            return self._manifests.get(job) if job else None

    def manifests(self) -> dict[str, SyncManifest]:
        with self._lock:
            return dict(self._manifests)

    # === State ===

    def _set_state(self, new_state: OrchestratorState) -> None:
        with self._lock:
            if new_state == self._orch_state:
                return
            if new_state not in VALID_TRANSITIONS[self._orch_state]:
                raise InvalidTransitionError(
                    f"Cannot transition from {self._orch_state.value} to {new_state.value}"
                )
            logger.debug(f"{self.target_id}: {self._orch_state.value} -> {new_state.value}")
            self._orch_state = new_state

    # === Lifecycle ===

    def start(self) -> None:
        """Schedule the jobs that have an interval."""
        with self._lock:
            if self._scheduler is not None:
                return
            self._stopping = False
            if self._orch_state == OrchestratorState.STOPPED:
                self._set_state(OrchestratorState.IDLE)

            scheduler = BackgroundScheduler()
            for job in self._jobs:
                if job.interval is None:
                    continue
                scheduler.add_job(
                    self.run_cycle,
                    trigger=IntervalTrigger(seconds=job.interval),
                    args=[[job.name]],
                    id=f"{self.target_id}:{job.name}",
                    name=f"Sync {job.name} to {self.target_id}",
                    max_instances=1,
                    coalesce=True,
                    replace_existing=True,
                )
            scheduler.start()
            self._scheduler = scheduler
        logger.info(f"Orchestrator for {self.target_id} started ({len(self._jobs)} jobs)")

    def stop(self, timeout: float = 30.0) -> bool:
        """Stop scheduling, cancel transfers and wait for the cycle to end.

        Returns:
            True if the running cycle (if any) finished within the timeout.
        """
        with self._lock:
            self._stopping = True
            scheduler, self._scheduler = self._scheduler, None
            lease = self._lease
        if scheduler is not None:
            scheduler.shutdown(wait=False)

        self._executor.cancel()
        if lease is not None:
            lease.cancel("stopped")

        finished = self._cycle_lock.acquire(timeout=timeout)
        if finished:
            self._cycle_lock.release()
        thread = self._trigger_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

        if finished:
            self._set_state(OrchestratorState.STOPPED)
            logger.info(f"Orchestrator for {self.target_id} stopped")
        else:
            logger.warning(f"Orchestrator for {self.target_id}: cycle still running after stop")
        return finished

    def enable(self) -> None:
        self._enabled = True
        logger.info(f"Target {self.target_id} enabled")

    def disable(self) -> None:
        """Prevent new cycles (a running cycle completes)."""
        self._enabled = False
        logger.info(f"Target {self.target_id} disabled")

    def cancel(self) -> bool:
        """Cancel the running cycle, keeping the schedule.

        Returns:
            True if a cycle was running.
        """
        with self._lock:
            lease = self._lease
        if not self.is_running:
            return False
        self._executor.cancel()
        if lease is not None:
            lease.cancel("cancelled")
        logger.info(f"Cycle on {self.target_id} cancelled")
        return True

    def trigger(self, job_names: Sequence[str] | None = None) -> bool:
        """Run a cycle in the background.

        Returns:
            False if a cycle is already running, the orchestrator is
            stopped or the target is disabled.
        """
        if self._stopping or not self._enabled or self.is_running:
            return False
        thread = threading.Thread(
            target=self.run_cycle,
            args=(list(job_names) if job_names else None,),
            name=f"SyncCycle-{self.target_id}",
            daemon=True,
        )
        self._trigger_thread = thread
        thread.start()
        return True

    def on_target_change(self, target: Target, old: TargetState, new: TargetState) -> None:
        """Lifecycle listener: sync as soon as the target becomes ready."""
        if target.target_id != self.target_id:
            return
        if new == TargetState.READY and old == TargetState.ATTACHING:
            if self._scheduler is not None and self.trigger():
                logger.info(f"Target {self.target_id} attached, cycle triggered")

    # === Cycle ===

    def run_cycle(self, job_names: Sequence[str] | None = None) -> list[SyncResult]:
        """Run one cycle synchronously.

        Args:
            job_names: Jobs to run (all jobs of the target by default).

        Returns:
            One result per job processed; empty when skipped.
        """
        if self._stopping or not self._enabled:
            logger.debug(f"{self.target_id}: cycle skipped (stopped or disabled)")
            return []
        if not self._cycle_lock.acquire(blocking=False):
            logger.info(f"{self.target_id}: cycle already running, skipped")
            return []
        try:
            return self._cycle(self._select_jobs(job_names))
        finally:
            self._cycle_lock.release()

    def _select_jobs(self, job_names: Sequence[str] | None) -> list[JobConfig]:
        if not job_names:
            return list(self._jobs)
        wanted = set(job_names)
        return [job for job in self._jobs if job.name in wanted]

    def _cycle(self, jobs: list[JobConfig]) -> list[SyncResult]:
        started = time.time()
        self._set_state(OrchestratorState.PLANNING)
        self._events.emit(
            EventType.CYCLE_STARTED, self.target_id, jobs=[job.name for job in jobs]
        )

        results: list[SyncResult] = []
        try:
            lease = self._manager.acquire(self.target_id)
        except SyncError as e:
            logger.warning(f"{self.target_id}: cycle aborted: {e.message}")
            results = [self._aborted(job, e, started) for job in jobs]
            self._finish(results, started)
            return results

        with lease:
            with self._lock:
                self._lease = lease
            try:
                for job in jobs:
                    if lease.cancelled or self._stopping:
                        break
                    results.append(self._run_job(job, lease))
            finally:
                with self._lock:
                    self._lease = None

        self._finish(results, started)
        return results

    def _finish(self, results: list[SyncResult], started: float) -> None:
        with self._lock:
            self._history.extend(results)
            self._last_cycle_at = time.time()

        failed = [r for r in results if not r.success]
        payload: dict[str, Any] = {
            "results": [r.to_dict() for r in results],
            "duration": time.time() - started,
        }
        if any(r.aborted or r.cancelled for r in results):
            self._set_state(OrchestratorState.ERROR)
            self._set_state(OrchestratorState.IDLE)
            self._events.emit(EventType.CYCLE_FAILED, self.target_id, **payload)
        else:
            self._set_state(OrchestratorState.IDLE)
            self._events.emit(EventType.CYCLE_COMPLETED, self.target_id, **payload)
        logger.info(
            f"{self.target_id}: cycle finished, {len(results)} jobs, {len(failed)} with errors"
        )

    def _aborted(self, job: JobConfig, error: SyncError, started: float) -> SyncResult:
        return SyncResult(
            job=job.name,
            target_id=self.target_id,
            started_at=started,
            duration=time.time() - started,
            errors=[ItemError.from_error("", error)],
            aborted=True,
        )

    def destination(self, job_name: str) -> Path:
        """Directory a job writes into."""
        job = self.get_job(job_name)
        if job.direction == SyncDirection.FROM_TARGET:
            return Path(job.source.location).expanduser()
        path = self._target.path
        return path / job.dest_subpath if job.dest_subpath else path

    def _endpoints(self, job: JobConfig, target_path: Path) -> tuple[CatalogAdapter, Path]:
        """Catalog adapter and destination root of a job."""
        target_dir = target_path / job.dest_subpath if job.dest_subpath else target_path
        if job.direction == SyncDirection.FROM_TARGET:
            adapter: CatalogAdapter = DirectoryCatalogAdapter(
                target_dir,
                name=f"target:{self.target_id}",
                file_extensions=job.file_extensions,
            )
            return adapter, Path(job.source.location).expanduser()
        return self._adapter_factory(job, self._registry), target_dir

    def _run_job(self, job: JobConfig, lease: TargetLease) -> SyncResult:
        started = time.time()
        self._set_state(OrchestratorState.PLANNING)
        adapter: CatalogAdapter | None = None
        try:
            adapter, dest_root = self._endpoints(job, lease.path)
            dest_root.mkdir(parents=True, exist_ok=True)

            catalog = retry_call(
                protect_catalog(self._registry, adapter, adapter.list_items),
                policy=self._policy,
                cancel_event=lease.cancel_event,
                operation=f"list {adapter.name}",
            )
            catalog = self._select_wanted(job, catalog)
            local = scan_local_entries(dest_root, self._state, self.target_id, job.name)
            budget = self._budget(job, dest_root, local)

            manifest = plan(
                catalog,
                local,
                job.filters,
                job.priorities,
                budget,
                group_limit=job.group_limit,
                delete_extras=job.delete_extras,
            )
            with self._lock:
                self._manifests[job.name] = manifest
            logger.info(
                f"{self.target_id}/{job.name}: {len(manifest.fetches)} to fetch, "
                f"{len(manifest.keeps)} to keep, {len(manifest.evictions)} to evict "
                f"(budget {budget} bytes)"
            )

            self._set_state(OrchestratorState.TRANSFERRING)
            result = self._executor.execute(manifest, lease, adapter, job.name, dest_root)
            self._set_state(OrchestratorState.REPORTING)
            if result.success:
                self._state.set_last_sync(self.target_id, job.name)
            return result

        except Exception as e:
            error = classify_error(e, context={"job": job.name, "target": self.target_id})
            logger.error(f"{self.target_id}/{job.name}: aborted: {error.message}")
            self._set_state(OrchestratorState.REPORTING)
            result = self._aborted(job, error, started)
            result.cancelled = lease.cancelled
            return result

        finally:
            close = getattr(adapter, "close", None)
            if callable(close):
                close()

    def _select_wanted(self, job: JobConfig, catalog: list[CatalogItem]) -> list[CatalogItem]:
        """Restrict the catalog to the job's wanted names, if any."""
        if not job.wanted:
            return catalog
        matcher = ContentMatcher(job.match_threshold)
        matches = matcher.reconcile(job.wanted, catalog)
        chosen = {m.item.item_id for m in matches.values() if m is not None}
        return [item for item in catalog if item.item_id in chosen]

    def _budget(self, job: JobConfig, dest_root: Path, local: list[LocalEntry]) -> int:
        try:
            free_space: int | None = shutil.disk_usage(dest_root).free
        except OSError as e:
            logger.debug(f"Cannot read disk usage of {dest_root}: {e}")
            free_space = None
        reserve = (
            self._target.min_free_space
            if job.direction == SyncDirection.TO_TARGET
            else 0
        )
        return compute_budget(job.max_size, free_space, reserve, sum(e.size for e in local))

    # === Dry runs ===

    def get_job(self, name: str) -> JobConfig:
        for job in self._jobs:
            if job.name == name:
                return job
        raise ValidationError(f"Unknown job for target {self.target_id}: {name}")

    def list_catalog(self, job_name: str) -> list[CatalogItem]:
        """List a job's catalog (through retry and its breaker)."""
        job = self.get_job(job_name)
        adapter, _ = self._endpoints(job, self._target.path)
        try:
            return retry_call(
                protect_catalog(self._registry, adapter, adapter.list_items),
                policy=self._policy,
                operation=f"list {adapter.name}",
            )
        finally:
            close = getattr(adapter, "close", None)
            if callable(close):
                close()

    def preview(self, job_name: str, budget: int | None = None) -> SyncManifest:
        """Plan a job without taking the target or transferring anything.

        The destination is scanned when it exists; otherwise the job is
        planned as if nothing was synced yet.

        Args:
            job_name: Job to plan.
            budget: Budget override (computed from the destination otherwise).
        """
        job = self.get_job(job_name)
        _, dest_root = self._endpoints(job, self._target.path)
        catalog = self._select_wanted(job, self.list_catalog(job_name))
        if dest_root.is_dir():
            local = scan_local_entries(dest_root, self._state, self.target_id, job.name)
            computed = self._budget(job, dest_root, local)
        else:
            local = []
            computed = job.max_size
        return plan(
            catalog,
            local,
            job.filters,
            job.priorities,
            computed if budget is None else budget,
            group_limit=job.group_limit,
            delete_extras=job.delete_extras,
        )

    # === Status ===

    def status(self) -> dict[str, Any]:
        """JSON-serializable view of this orchestrator."""
        with self._lock:
            last = self._history[-1] if self._history else None
            return {
                "target_id": self.target_id,
                "state": self._orch_state.value,
                "enabled": self._enabled,
                "running": self.is_running,
                "jobs": [job.name for job in self._jobs],
                "progress": self._executor.progress.to_dict() if self._executor.is_running else None,
                "last_result": last.to_dict() if last else None,
                "last_cycle_at": self._last_cycle_at,
                "history": [r.to_dict() for r in self._history],
                "last_sync": {
                    job.name: self._state.get_last_sync(self.target_id, job.name)
                    for job in self._jobs
                },
            }
