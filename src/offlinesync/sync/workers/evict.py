"""Evict worker: remove an item this engine previously synced.

This module provides:
- EvictResult: Outcome of one eviction
- EvictWorker: Deletes tracked files only
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from offlinesync.core.errors import TransferError
from offlinesync.sync.workers.base import BaseWorker, WorkerContext
from offlinesync.sync.workers.fetch import resolve_destination

if TYPE_CHECKING:
    from offlinesync.sync.state import LocalSyncState

logger = logging.getLogger(__name__)


@dataclass
class EvictResult:
    """Result of an eviction.

    Attributes:
        item_id: Evicted item.
        path: Relative path of the file.
        size: Bytes freed.
        deleted: Whether a file was actually removed from disk.
    """

    item_id: str
    path: str
    size: int = 0
    deleted: bool = False


class EvictWorker(BaseWorker):
    """Worker deleting a synced item from the destination.

    Only paths recorded in the sync state for this target and job are
    deleted; anything else on the device is left untouched.
    """

    def __init__(
        self,
        state: LocalSyncState,
        target_id: str,
        job: str,
        dest_root: Path,
    ) -> None:
        super().__init__()
        self._state = state
        self._target_id = target_id
        self._job = job
        self._root = dest_root

    @property
    def worker_type(self) -> str:
        return "evict"

    def _do_work(self, ctx: WorkerContext) -> EvictResult:
        local = ctx.entry.local
        if local is None:
            raise TransferError("Evict entry without a local entry")

        if not self._state.is_tracked_path(self._target_id, self._job, local.path):
            raise TransferError(
                f"Refusing to delete untracked file: {local.path}",
                context={"path": local.path},
            )

        path = resolve_destination(self._root, local.path)
        deleted = False
        try:
            path.unlink()
            deleted = True
        except FileNotFoundError:
            logger.debug(f"Already gone: {local.path}")

        self._state.mark_deleted(self._target_id, self._job, local.item_id)
        self._prune_empty_dirs(path.parent)
        logger.info(f"Evicted {local.item_id} ({local.size} bytes)")
        return EvictResult(local.item_id, local.path, local.size, deleted)

    def _prune_empty_dirs(self, directory: Path) -> None:
        root = self._root.resolve()
        current = directory
        while current.resolve() != root and root in current.resolve().parents:
            try:
                current.rmdir()
            except OSError:
                # Not empty
                return
            current = current.parent
