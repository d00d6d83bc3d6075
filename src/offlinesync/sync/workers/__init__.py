"""Transfer workers.

This module contains:
- base: BaseWorker with cancellation and error classification
- fetch: FetchWorker (temp file, verify, atomic replace)
- evict: EvictWorker (tracked files only)
- pool: WorkerPool (bounded threads, exactly-once processing)
"""

from offlinesync.sync.workers.base import BaseWorker, WorkerContext, WorkerResult
from offlinesync.sync.workers.evict import EvictResult, EvictWorker
from offlinesync.sync.workers.fetch import BandwidthLimiter, FetchWorker
from offlinesync.sync.workers.pool import WorkerPool, WorkerTask

__all__ = [
    # Base
    "BaseWorker",
    "WorkerContext",
    "WorkerResult",
    # Workers
    "BandwidthLimiter",
    "EvictResult",
    "EvictWorker",
    "FetchWorker",
    # Pool
    "WorkerPool",
    "WorkerTask",
]
