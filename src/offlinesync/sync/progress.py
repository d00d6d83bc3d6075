"""Transfer progress tracking.

This module provides:
- ProgressThrottle: Rate-limits progress notifications per item
- ItemProgress: Progress of one in-flight item
- ProgressTracker: Bytes/items done versus planned for a run
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

DEFAULT_PROGRESS_INTERVAL = 0.5  # seconds


class ProgressThrottle:
    """Lets a progress update through at most once per interval per key.

    The final update of an item (current == total) always passes so
    observers never miss completion.
    """

    def __init__(
        self,
        interval: float = DEFAULT_PROGRESS_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._interval = interval
        self._clock = clock
        self._last: dict[str, float] = {}
        self._lock = threading.Lock()

    def should_emit(self, key: str, current: int = 0, total: int = -1) -> bool:
        now = self._clock()
        with self._lock:
            last = self._last.get(key)
            if current == total or last is None or now - last >= self._interval:
                self._last[key] = now
                return True
            return False

    def forget(self, key: str) -> None:
        with self._lock:
            self._last.pop(key, None)


@dataclass
class ItemProgress:
    """Progress of one item being transferred."""

    item_id: str
    bytes_done: int
    bytes_total: int

    @property
    def percent(self) -> float:
        if self.bytes_total <= 0:
            return 100.0
        return min(100.0, self.bytes_done * 100.0 / self.bytes_total)

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "bytes_done": self.bytes_done,
            "bytes_total": self.bytes_total,
            "percent": round(self.percent, 1),
        }


class ProgressTracker:
    """Aggregate progress of one executor run.

    Thread-safe: updated by every worker, read by the status feed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items_planned = 0
        self._bytes_planned = 0
        self._items_done = 0
        self._bytes_done = 0
        self._current: dict[str, ItemProgress] = {}

    def begin(self, items_planned: int, bytes_planned: int) -> None:
        """Reset the counters for a new run."""
        with self._lock:
            self._items_planned = items_planned
            self._bytes_planned = bytes_planned
            self._items_done = 0
            self._bytes_done = 0
            self._current.clear()

    def item_progress(self, item_id: str, bytes_done: int, bytes_total: int) -> None:
        """Record a transfer's position; the first report registers the item."""
        with self._lock:
            progress = self._current.get(item_id)
            if progress is None:
                self._current[item_id] = ItemProgress(item_id, bytes_done, bytes_total)
            else:
                progress.bytes_done = bytes_done

    def item_finished(self, item_id: str, bytes_moved: int = 0) -> None:
        """Count an item as processed, whatever its outcome."""
        with self._lock:
            self._current.pop(item_id, None)
            self._items_done += 1
            self._bytes_done += bytes_moved

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            in_flight = sum(p.bytes_done for p in self._current.values())
            return {
                "items_done": self._items_done,
                "items_planned": self._items_planned,
                "bytes_done": self._bytes_done + in_flight,
                "bytes_planned": self._bytes_planned,
                "current": [p.to_dict() for p in self._current.values()],
            }
