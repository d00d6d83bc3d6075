"""Fetch worker: copy one catalog item to the destination.

This module provides:
- BandwidthLimiter: Paces a copy loop to a byte rate
- FetchWorker: Streams an item into place with verification

Protocol for one item:
1. Stream into ``<dest>.offlinesync-partial`` (resuming from its length
   when the adapter honors offsets)
2. Verify the size and, when the catalog provides one, the sha256 checksum
3. ``os.replace`` the temp file onto the destination
4. Record the item in the sync state

Opening the item and each chunk read go through the catalog's circuit
breaker; writes to the target do not, so a full disk never opens the
circuit. The whole attempt loop runs through retry_call. On failure or
cancellation the temp file is removed, so the destination never holds
a partial item.
"""

from __future__ import annotations

import contextlib
import logging
import os
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

from offlinesync.core.errors import (
    TransferCancelledError,
    TransferError,
    ValidationError,
    VerificationError,
)
from offlinesync.core.hashing import compute_file_hash
from offlinesync.sync.catalog import PARTIAL_SUFFIX, protect_catalog
from offlinesync.sync.retry import RetryPolicy, retry_call
from offlinesync.sync.types import LocalEntry, TransferOperation
from offlinesync.sync.workers.base import BaseWorker, WorkerContext

if TYPE_CHECKING:
    from offlinesync.sync.breaker import BreakerRegistry
    from offlinesync.sync.catalog import CatalogAdapter
    from offlinesync.sync.state import LocalSyncState
    from offlinesync.sync.types import CatalogItem

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CHUNK_SIZE = 1024 * 1024


def resolve_destination(root: Path, relative: str) -> Path:
    """Join a relative item path onto a root, refusing to escape it.

    Raises:
        ValidationError: If the path is absolute or climbs out of root.
    """
    candidate = (root / relative).resolve()
    base = root.resolve()
    if candidate == base or base not in candidate.parents:
        raise ValidationError(
            f"Item path escapes the destination: {relative}", context={"path": relative}
        )
    return root / relative


def partial_path(dest: Path) -> Path:
    return dest.with_name(dest.name + PARTIAL_SUFFIX)


class BandwidthLimiter:
    """Paces consumers to at most ``rate`` bytes per second.

    Waits use the caller's cancel event so a paced copy stays cancellable.
    """

    def __init__(self, rate: int | None) -> None:
        self._rate = rate
        self._lock = threading.Lock()
        self._next = time.monotonic()

    @property
    def rate(self) -> int | None:
        return self._rate

    def consume(self, nbytes: int, cancel_event: threading.Event | None = None) -> None:
        if not self._rate or nbytes <= 0:
            return
        with self._lock:
            now = time.monotonic()
            start = max(self._next, now)
            self._next = start + nbytes / self._rate
            delay = start - now
        if delay > 0:
            if cancel_event is not None:
                cancel_event.wait(delay)
            else:
                time.sleep(delay)


class FetchWorker(BaseWorker):
    """Worker that fetches one manifest entry from a catalog.

    Usage:
        worker = FetchWorker(adapter, state, registry, "sdcard", "movies", root)
        result = worker.execute(entry, cancel_event=lease.cancel_event)
    """

    def __init__(
        self,
        adapter: CatalogAdapter,
        state: LocalSyncState,
        registry: BreakerRegistry,
        target_id: str,
        job: str,
        dest_root: Path,
        retry_policy: RetryPolicy | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        limiter: BandwidthLimiter | None = None,
    ) -> None:
        """Initialize the fetch worker.

        Args:
            adapter: Catalog the item is read from.
            state: Sync state recording completed items.
            registry: Breaker registry shared by the engine.
            target_id: Target identifier used as state key.
            job: Job name used as state key.
            dest_root: Destination root directory.
            retry_policy: Retry policy for failed attempts.
            chunk_size: Copy buffer size.
            limiter: Optional bandwidth limiter.
        """
        super().__init__()
        self._adapter = adapter
        self._state = state
        self._registry = registry
        self._target_id = target_id
        self._job = job
        self._root = dest_root
        self._policy = retry_policy or RetryPolicy()
        self._chunk_size = chunk_size
        self._limiter = limiter or BandwidthLimiter(None)

    @property
    def worker_type(self) -> str:
        return "fetch"

    def _do_work(self, ctx: WorkerContext) -> TransferOperation:
        """Fetch, verify and record the entry's item.

        Returns:
            The completed TransferOperation.

        Raises:
            TransferCancelledError: If cancelled.
            SyncError: If the transfer failed after retries.
        """
        item = ctx.entry.item
        if item is None:
            raise TransferError("Fetch entry without a catalog item")

        dest = resolve_destination(self._root, item.item_id)
        tmp = partial_path(dest)
        op = TransferOperation(
            entry=ctx.entry,
            source=item.address,
            destination=str(dest),
            expected_size=item.size,
            checksum=item.checksum,
        )
        op.start()

        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            digest = retry_call(
                lambda: self._attempt(item, tmp, op, ctx),
                policy=self._policy,
                cancel_event=ctx.cancel_event,
                operation=f"fetch {item.item_id}",
            )
            ctx.raise_if_cancelled()
            os.replace(tmp, dest)
        except TransferCancelledError:
            op.cancel()
            self._discard(tmp)
            raise
        except Exception as e:
            op.fail(str(e))
            self._discard(tmp)
            raise

        self._state.mark_synced(
            self._target_id,
            self._job,
            LocalEntry(
                item_id=item.item_id,
                path=item.item_id,
                size=item.size,
                checksum=digest,
                synced_at=time.time(),
            ),
        )
        op.complete()
        logger.info(f"Fetched {item.item_id} ({item.size} bytes)")
        return op

    def _attempt(
        self,
        item: CatalogItem,
        tmp: Path,
        op: TransferOperation,
        ctx: WorkerContext,
    ) -> str:
        """One transfer attempt. Returns the verified sha256 of the temp file."""
        offset = 0
        if self._adapter.supports_resume and tmp.is_file():
            offset = tmp.stat().st_size
            if offset >= item.size:
                offset = 0

        with self._remote(lambda: self._adapter.open(item, offset)) as stream:
            if stream.offset not in (0, offset):
                raise TransferError(
                    f"Source resumed at unexpected offset {stream.offset}",
                    context={"item_id": item.item_id},
                )
            written = stream.offset
            if written:
                logger.info(f"Resuming {item.item_id} at byte {written}")
            ctx.report(written, item.size)
            chunks = stream.iter_chunks(self._chunk_size)
            with open(tmp, "ab" if written else "wb") as f:
                while True:
                    chunk = self._remote(lambda: next(chunks, None))
                    if chunk is None:
                        break
                    ctx.raise_if_cancelled()
                    f.write(chunk)
                    written += len(chunk)
                    op.transferred = written
                    if written > item.size:
                        break
                    ctx.report(written, item.size)
                    self._limiter.consume(len(chunk), ctx.cancel_event)

        ctx.raise_if_cancelled()
        return self._verify(item, tmp)

    def _remote(self, operation: Callable[[], T]) -> T:
        """Run a remote catalog call through the catalog's breaker."""
        return protect_catalog(self._registry, self._adapter, operation)()

    def _verify(self, item: CatalogItem, tmp: Path) -> str:
        size = tmp.stat().st_size
        if size != item.size:
            self._discard(tmp)
            raise VerificationError(
                f"Size mismatch for {item.item_id}: expected {item.size}, got {size}",
                context={"item_id": item.item_id},
            )
        digest = compute_file_hash(tmp)
        if item.checksum and digest != item.checksum.lower():
            self._discard(tmp)
            raise VerificationError(
                f"Checksum mismatch for {item.item_id}",
                context={"item_id": item.item_id},
            )
        return digest

    @staticmethod
    def _discard(tmp: Path) -> None:
        with contextlib.suppress(OSError):
            tmp.unlink()
