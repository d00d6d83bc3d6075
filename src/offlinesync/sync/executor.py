"""Transfer executor.

This module provides:
- TransferExecutor: Runs the fetch/evict actions of a SyncManifest

Evictions run before fetches so that space is freed first. Both phases
use a bounded WorkerPool; each entry is processed exactly once, in no
particular order. Per-item failures are recorded in the SyncResult and
never abort the run. The run is cancelled when the target lease is
cancelled (device removed) or when cancel() is called.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING

from offlinesync.core.config import PerformanceConfig
from offlinesync.core.errors import SyncError
from offlinesync.sync.events import EventBus, EventType
from offlinesync.sync.progress import ProgressThrottle, ProgressTracker
from offlinesync.sync.retry import RetryPolicy
from offlinesync.sync.types import ItemError, ManifestAction, SyncResult
from offlinesync.sync.workers import (
    BandwidthLimiter,
    EvictWorker,
    FetchWorker,
    WorkerPool,
    WorkerResult,
    WorkerTask,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from offlinesync.sync.breaker import BreakerRegistry
    from offlinesync.sync.catalog import CatalogAdapter
    from offlinesync.sync.state import LocalSyncState
    from offlinesync.sync.target import TargetLease
    from offlinesync.sync.types import ManifestEntry, SyncManifest

logger = logging.getLogger(__name__)


class TransferExecutor:
    """Executes manifests against a leased target.

    Usage:
        executor = TransferExecutor(state, registry, performance, events)
        with manager.acquire("sdcard") as lease:
            result = executor.execute(manifest, lease, adapter, "movies", root)
    """

    def __init__(
        self,
        state: LocalSyncState,
        registry: BreakerRegistry,
        performance: PerformanceConfig | None = None,
        events: EventBus | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            state: Sync state database.
            registry: Circuit breaker registry shared with the orchestrator.
            performance: Pool size, chunk size, bandwidth and progress settings.
            events: Event bus for progress and item failure events.
            retry_policy: Retry policy (derived from performance by default).
        """
        self._state = state
        self._registry = registry
        self._performance = performance or PerformanceConfig()
        self._events = events or EventBus()
        self._policy = retry_policy or RetryPolicy.from_performance(self._performance)
        self._progress = ProgressTracker()
        self._lock = threading.Lock()
        self._cancel_event: threading.Event | None = None

    @property
    def progress(self) -> ProgressTracker:
        return self._progress

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._cancel_event is not None

    def cancel(self) -> bool:
        """Cancel the running execution.

        Returns:
            True if an execution was running.
        """
        with self._lock:
            event = self._cancel_event
        if event is None:
            return False
        logger.info("Cancelling transfers")
        event.set()
        return True

    def execute(
        self,
        manifest: SyncManifest,
        lease: TargetLease,
        adapter: CatalogAdapter,
        job: str,
        dest_root: Path,
    ) -> SyncResult:
        """Run every fetch and evict entry of a manifest.

        Args:
            manifest: Plan to execute.
            lease: Held lease on the target (its cancel event stops the run).
            adapter: Catalog the fetched items come from.
            job: Job name (state key).
            dest_root: Destination root directory.

        Returns:
            SyncResult with per-item outcomes.
        """
        cancel_event = threading.Event()
        with self._lock:
            if self._cancel_event is not None:
                raise RuntimeError("Executor is already running")
            self._cancel_event = cancel_event
        lease.add_cancel_callback(cancel_event.set)

        target_id = lease.target_id
        result = SyncResult(job=job, target_id=target_id, kept=len(manifest.keeps))
        result_lock = threading.Lock()
        throttle = ProgressThrottle(self._performance.progress_interval)
        evictions = manifest.evictions
        fetches = manifest.fetches
        self._progress.begin(len(evictions) + len(fetches), manifest.fetch_size)
        start = time.monotonic()

        def on_done(task: WorkerTask, outcome: WorkerResult) -> None:
            entry = task.entry
            moved = entry.size if outcome.success and entry.action == ManifestAction.FETCH else 0
            self._progress.item_finished(entry.item_id, moved)
            throttle.forget(entry.item_id)
            with result_lock:
                result.items_processed += 1
                if outcome.success:
                    if entry.action == ManifestAction.FETCH:
                        result.fetched += 1
                        result.bytes_moved += entry.size
                    else:
                        result.evicted += 1
                    return
                error = outcome.error or SyncError(f"{task.worker.worker_type} failed")
                result.errors.append(ItemError.from_error(entry.item_id, error))
            if not outcome.cancelled:
                self._events.emit(
                    EventType.ITEM_FAILED,
                    target_id,
                    job=job,
                    item_id=entry.item_id,
                    action=entry.action.value,
                    error=error.to_dict(),
                )

        def progress_for(entry: ManifestEntry) -> Callable[[int, int], None]:
            def report(current: int, total: int) -> None:
                self._progress.item_progress(entry.item_id, current, total)
                if throttle.should_emit(entry.item_id, current, total):
                    self._events.emit(
                        EventType.PROGRESS,
                        target_id,
                        job=job,
                        item_id=entry.item_id,
                        bytes_done=current,
                        bytes_total=total,
                    )

            return report

        # One limiter for the whole run: the limit applies to total throughput
        limiter = BandwidthLimiter(self._performance.bandwidth_limit)
        pool = WorkerPool(self._performance.max_concurrent_transfers, cancel_event)
        pool.start()
        try:
            for entry in evictions:
                pool.submit(
                    WorkerTask(
                        entry=entry,
                        worker=EvictWorker(self._state, target_id, job, dest_root),
                        on_done=on_done,
                    )
                )
            pool.join()

            for entry in fetches:
                worker = FetchWorker(
                    adapter,
                    self._state,
                    self._registry,
                    target_id,
                    job,
                    dest_root,
                    retry_policy=self._policy,
                    chunk_size=self._performance.chunk_size,
                    limiter=limiter,
                )
                pool.submit(
                    WorkerTask(
                        entry=entry,
                        worker=worker,
                        on_done=on_done,
                        on_progress=progress_for(entry),
                    )
                )
            pool.join()
        finally:
            pool.stop()
            with self._lock:
                self._cancel_event = None

        result.cancelled = cancel_event.is_set()
        result.duration = time.monotonic() - start
        if result.cancelled:
            reason = lease.reason or "cancelled"
            logger.warning(f"Transfers on {target_id} cancelled ({reason})")
        logger.info(
            f"{target_id}/{job}: fetched {result.fetched}, evicted {result.evicted}, "
            f"kept {result.kept}, failed {len(result.errors)}"
        )
        return result
