"""Removable device detection.

This module provides:
- MountWatcher: Watches a mount base directory with watchdog
- PollingDetector: Periodically diffs the mount base (fallback)
- create_detector: Factory from DetectionConfig

Both detectors only produce TargetEvents on the lifecycle manager's
channel; they never touch target state. Attach events are delayed by a
short settle period (mounts appear before they are fully usable) and
dropped if the device goes away within it. Detach events are sent
immediately so in-flight transfers are cancelled as soon as possible.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from offlinesync.sync.target import TargetEvent, TargetEventKind

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

    from offlinesync.core.config import DetectionConfig

logger = logging.getLogger(__name__)

DEFAULT_SETTLE_DELAY = 1.0  # seconds

Channel = queue.Queue[TargetEvent | None]


def _event_path(raw: str | bytes) -> Path:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    return Path(raw)


class MountEventHandler(FileSystemEventHandler):
    """Turns directory events under the mount base into TargetEvents."""

    def __init__(
        self,
        mount_base: Path,
        channel: Channel,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
    ) -> None:
        super().__init__()
        self._base = mount_base
        self._channel = channel
        self._settle_delay = settle_delay
        self._pending: dict[Path, threading.Timer] = {}
        self._lock = threading.Lock()

    def _is_mount_dir(self, path: Path) -> bool:
        return path.parent == self._base

    def _schedule_attach(self, path: Path) -> None:
        with self._lock:
            timer = self._pending.pop(path, None)
            if timer:
                timer.cancel()
            timer = threading.Timer(self._settle_delay, self._emit_attach, args=(path,))
            timer.daemon = True
            self._pending[path] = timer
            timer.start()

    def _emit_attach(self, path: Path) -> None:
        with self._lock:
            self._pending.pop(path, None)
        if not path.is_dir():
            logger.debug(f"Mount vanished before settling: {path}")
            return
        logger.info(f"Device attached: {path}")
        self._channel.put(TargetEvent(TargetEventKind.ATTACH, path))

    def _emit_detach(self, path: Path) -> None:
        with self._lock:
            timer = self._pending.pop(path, None)
        if timer:
            # Never announced, nothing to detach
            timer.cancel()
            return
        logger.info(f"Device detached: {path}")
        self._channel.put(TargetEvent(TargetEventKind.DETACH, path))

    def cancel_pending(self) -> None:
        with self._lock:
            timers = list(self._pending.values())
            self._pending.clear()
        for timer in timers:
            timer.cancel()

    def on_created(self, event: FileSystemEvent) -> None:
        path = _event_path(event.src_path)
        if isinstance(event, DirCreatedEvent) and self._is_mount_dir(path):
            self._schedule_attach(path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        path = _event_path(event.src_path)
        if isinstance(event, DirDeletedEvent) and self._is_mount_dir(path):
            self._emit_detach(path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not isinstance(event, DirMovedEvent):
            return
        src = _event_path(event.src_path)
        dest = _event_path(event.dest_path)
        if self._is_mount_dir(src):
            self._emit_detach(src)
        if self._is_mount_dir(dest):
            self._schedule_attach(dest)


class MountWatcher:
    """Watches a mount base (e.g. /media/offline) for devices coming and going.

    Usage:
        watcher = MountWatcher(manager.channel, Path("/media/offline"))
        watcher.start()
        ...
        watcher.stop()
    """

    def __init__(
        self,
        channel: Channel,
        mount_base: Path,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
    ) -> None:
        self._channel = channel
        self._base = mount_base
        self._handler = MountEventHandler(mount_base, channel, settle_delay)
        self._observer: BaseObserver | None = None

    @property
    def handler(self) -> MountEventHandler:
        return self._handler

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        """Start watching the mount base."""
        if self._observer is not None:
            return
        if not self._base.is_dir():
            raise FileNotFoundError(f"Mount base not found: {self._base}")
        observer = Observer()
        observer.schedule(self._handler, str(self._base), recursive=False)
        observer.start()
        self._observer = observer
        logger.info(f"Watching {self._base} for devices")

    def stop(self) -> None:
        """Stop watching."""
        if self._observer is None:
            return
        self._handler.cancel_pending()
        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._observer = None
        logger.info("Mount watcher stopped")


class PollingDetector:
    """Polls for devices when filesystem events are unavailable.

    Each poll lists the directories below the mount base plus any
    explicitly watched paths and reports the difference with the previous
    poll. The first poll only records a baseline.
    """

    def __init__(
        self,
        channel: Channel,
        mount_base: Path | None = None,
        paths: Sequence[Path] = (),
        interval: float = 5.0,
    ) -> None:
        self._channel = channel
        self._base = mount_base
        self._paths = tuple(paths)
        self._interval = interval
        self._known: set[Path] | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def _present(self) -> set[Path]:
        present: set[Path] = set()
        if self._base is not None and self._base.is_dir():
            try:
                present.update(p for p in self._base.iterdir() if p.is_dir())
            except OSError as e:
                logger.warning(f"Cannot list {self._base}: {e}")
        present.update(p for p in self._paths if p.is_dir())
        return present

    def poll_once(self) -> list[TargetEvent]:
        """Compare with the previous poll and emit the differences."""
        present = self._present()
        if self._known is None:
            self._known = present
            return []

        events = [
            TargetEvent(TargetEventKind.DETACH, path)
            for path in sorted(self._known - present)
        ] + [
            TargetEvent(TargetEventKind.ATTACH, path)
            for path in sorted(present - self._known)
        ]
        self._known = present
        for event in events:
            logger.info(f"Device {event.kind.value}: {event.path}")
            self._channel.put(event)
        return events

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self.poll_once()
        self._thread = threading.Thread(target=self._run, name="PollingDetector", daemon=True)
        self._thread.start()
        logger.info(f"Polling for devices every {self._interval:.0f}s")

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=self._interval + 1.0)
        self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self.poll_once()
            except Exception:
                logger.exception("Device poll failed")


def create_detector(
    config: DetectionConfig,
    channel: Channel,
    paths: Sequence[Path] = (),
) -> MountWatcher | PollingDetector | None:
    """Build the detector described by the config.

    Args:
        config: Detection settings.
        channel: Lifecycle manager channel.
        paths: Removable target paths to poll when no mount base is set.

    Returns:
        A detector, or None when there is nothing to watch.
    """
    if config.mode == "watch" and config.mount_base is not None:
        return MountWatcher(channel, config.mount_base)
    if config.mount_base is not None or paths:
        return PollingDetector(
            channel, config.mount_base, paths=paths, interval=config.poll_interval
        )
    return None
