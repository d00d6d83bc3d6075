"""Worker interface for manifest entries.

This module provides:
- WorkerResult: Outcome of one entry (value, classified error, cancelled flag)
- WorkerContext: Entry, cancel event and progress callback for one run
- BaseWorker: Runs one entry and turns every exception into a WorkerResult
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from offlinesync.core.errors import SyncError, TransferCancelledError, classify_error

if TYPE_CHECKING:
    from collections.abc import Callable

    from offlinesync.sync.types import ManifestEntry

logger = logging.getLogger(__name__)


@dataclass
class WorkerResult:
    """Outcome of one manifest entry.

    ``result`` holds the worker's return value on success (a
    TransferOperation for fetches, an EvictResult for evictions).
    """

    success: bool
    result: Any = None
    error: SyncError | None = None
    cancelled: bool = False
    elapsed_time: float = 0.0

    @classmethod
    def skipped(cls, entry: ManifestEntry) -> WorkerResult:
        """Result of an entry dropped before it started (run cancelled)."""
        return cls(
            success=False,
            error=TransferCancelledError(
                f"Cancelled before start: {entry.item_id}",
                context={"item_id": entry.item_id},
            ),
            cancelled=True,
        )


@dataclass
class WorkerContext:
    """What a worker needs while processing one entry."""

    entry: ManifestEntry
    cancel_event: threading.Event = field(default_factory=threading.Event)
    on_progress: Callable[[int, int], None] | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def raise_if_cancelled(self) -> None:
        """Cancellation point: raise if the run was cancelled."""
        if self.cancel_event.is_set():
            raise TransferCancelledError(
                f"Cancelled: {self.entry.item_id}", context={"item_id": self.entry.item_id}
            )

    def report(self, current: int, total: int) -> None:
        if self.on_progress is not None:
            self.on_progress(current, total)


class BaseWorker(ABC):
    """A fetch or evict action applied to one manifest entry.

    execute() never raises. Cancellation and failures come back as a
    WorkerResult whose error is already classified, so the executor can
    record them as item errors without knowing the worker.

    Subclasses implement ``worker_type`` and ``_do_work``; the latter
    should call ``ctx.raise_if_cancelled()`` between I/O steps.
    """

    @property
    @abstractmethod
    def worker_type(self) -> str:
        """Short action name used in logs ("fetch", "evict")."""
        ...

    def execute(
        self,
        entry: ManifestEntry,
        cancel_event: threading.Event | None = None,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> WorkerResult:
        """Process one entry.

        Args:
            entry: Manifest entry to apply.
            cancel_event: Set to cancel; checked before starting and by
                the worker at each cancellation point.
            on_progress: Called with (bytes done, bytes total).
        """
        ctx = WorkerContext(entry, cancel_event or threading.Event(), on_progress)
        started = time.monotonic()
        try:
            ctx.raise_if_cancelled()
            value = self._do_work(ctx)
        except TransferCancelledError as e:
            logger.info(f"{self.worker_type} {entry.item_id}: cancelled")
            return WorkerResult(
                False, error=e, cancelled=True, elapsed_time=time.monotonic() - started
            )
        except Exception as e:
            error = classify_error(e, context={"item_id": entry.item_id})
            logger.error(f"{self.worker_type} {entry.item_id}: {error.message}")
            return WorkerResult(False, error=error, elapsed_time=time.monotonic() - started)
        return WorkerResult(True, result=value, elapsed_time=time.monotonic() - started)

    @abstractmethod
    def _do_work(self, ctx: WorkerContext) -> Any: ...
