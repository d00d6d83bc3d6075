"""Bounded thread pool for manifest entries.

This module provides:
- WorkerTask: A manifest entry paired with the worker that applies it
- WorkerPool: Fixed set of threads draining a task queue

The executor submits one batch (evictions), joins, then submits the
next (fetches). A task submitted to a running pool always reaches its
on_done callback exactly once: after cancellation, tasks still queued
are reported as cancelled without touching the target.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from offlinesync.sync.workers.base import BaseWorker, WorkerResult

if TYPE_CHECKING:
    from offlinesync.sync.types import ManifestEntry

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 3

# Queue sentinel telling a thread to exit
_SHUTDOWN = None


@dataclass
class WorkerTask:
    """One unit of work for the pool.

    Attributes:
        entry: Manifest entry to process.
        worker: Worker applying the entry.
        on_done: Called on the pool thread with the task and its outcome.
        on_progress: Forwarded to the worker as (bytes done, bytes total).
    """

    entry: ManifestEntry
    worker: BaseWorker
    on_done: Callable[[WorkerTask, WorkerResult], None] | None = None
    on_progress: Callable[[int, int], None] | None = None


class WorkerPool:
    """Runs WorkerTasks on ``max_workers`` daemon threads.

    The cancel event is shared with every worker so a running transfer
    stops at its next chunk boundary.

    Usage:
        pool = WorkerPool(max_workers=3, cancel_event=cancel_event)
        pool.start()
        for task in tasks:
            pool.submit(task)
        pool.join()
        pool.stop()
    """

    def __init__(
        self,
        max_workers: int = DEFAULT_MAX_WORKERS,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._size = max(1, max_workers)
        self._cancel_event = cancel_event or threading.Event()
        self._tasks: queue.Queue[WorkerTask | None] = queue.Queue()
        self._threads: list[threading.Thread] = []
        self._accepting = False
        self._lock = threading.Lock()
        self._outcomes: Counter[str] = Counter()
        self._busy = 0

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel_event

    @property
    def running(self) -> bool:
        return self._accepting

    @property
    def busy_count(self) -> int:
        """Tasks currently inside a worker."""
        with self._lock:
            return self._busy

    @property
    def completed_count(self) -> int:
        with self._lock:
            return self._outcomes["completed"]

    @property
    def error_count(self) -> int:
        """Failed or cancelled tasks."""
        with self._lock:
            return self._outcomes["failed"] + self._outcomes["cancelled"]

    def start(self) -> None:
        with self._lock:
            if self._accepting:
                return
            self._accepting = True
            self._threads = [
                threading.Thread(target=self._drain, name=f"Transfer-{n}", daemon=True)
                for n in range(self._size)
            ]
        for thread in self._threads:
            thread.start()
        logger.debug(f"Transfer pool started ({self._size} threads)")

    def submit(self, task: WorkerTask) -> bool:
        """Queue a task.

        Returns:
            False (and the task is dropped) if the pool is not running.
        """
        if not self._accepting:
            logger.warning(f"Pool not running, {task.entry.item_id} not queued")
            return False
        self._tasks.put(task)
        return True

    def join(self) -> None:
        """Wait until every queued task has been processed."""
        self._tasks.join()

    def cancel(self) -> None:
        self._cancel_event.set()

    def stop(self, timeout: float = 10.0) -> None:
        """Let queued tasks finish, then end the threads."""
        with self._lock:
            if not self._accepting:
                return
            self._accepting = False
            threads, self._threads = self._threads, []
        for _ in threads:
            self._tasks.put(_SHUTDOWN)
        for thread in threads:
            thread.join(timeout=timeout / len(threads))
        logger.debug("Transfer pool stopped")

    def _drain(self) -> None:
        while True:
            task = self._tasks.get()
            try:
                if task is _SHUTDOWN:
                    return
                self._run(task)
            except Exception:
                logger.exception("Unexpected error in transfer thread")
            finally:
                self._tasks.task_done()

    def _run(self, task: WorkerTask) -> None:
        if self._cancel_event.is_set():
            outcome = WorkerResult.skipped(task.entry)
        else:
            with self._lock:
                self._busy += 1
            try:
                outcome = task.worker.execute(
                    task.entry, cancel_event=self._cancel_event, on_progress=task.on_progress
                )
            finally:
                with self._lock:
                    self._busy -= 1

        if outcome.success:
            key = "completed"
        elif outcome.cancelled:
            key = "cancelled"
        else:
            key = "failed"
        with self._lock:
            self._outcomes[key] += 1
        if task.on_done is not None:
            task.on_done(task, outcome)
