"""Target lifecycle management.

States:
    ABSENT -> ATTACHING -> READY -> BUSY -> READY -> DETACHING -> ABSENT
                        -> FAILED -> ABSENT          (readiness probe failed)
    BUSY -> ABSENT                                   (abrupt removal)

This module provides:
- TargetEvent / TargetEventKind: Attach/detach messages pushed by detectors
- Target: Current view of one target
- ReadinessProbe: Checks a path before it is marked READY
- TargetLease: Exclusive hold on a READY target for one sync operation
- TargetLifecycleManager: Consumes the event channel and owns all state

Detectors never touch target state directly: they put TargetEvents on
the manager's channel (a queue.Queue) and the manager's thread applies
them. An abrupt detach while BUSY sets the lease's cancel event before
the handler returns, so in-flight transfers stop at their next chunk.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import queue
import shutil
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from offlinesync.core.config import TargetConfig
from offlinesync.core.errors import TargetBusyError, TargetUnavailableError
from offlinesync.core.types import BusyPolicy, TargetState

logger = logging.getLogger(__name__)

MOUNTS_FILE = Path("/proc/mounts")
PROBE_FILENAME = ".offlinesync-probe"


class TargetEventKind(str, Enum):
    """Kind of detector event."""

    ATTACH = "attach"
    DETACH = "detach"


@dataclass(frozen=True)
class TargetEvent:
    """Message from a detector to the lifecycle manager.

    Attributes:
        kind: Attach or detach.
        path: Path that appeared or disappeared.
        target_id: Target identifier if the detector knows it.
        timestamp: When the change was observed.
    """

    kind: TargetEventKind
    path: Path
    target_id: str | None = None
    timestamp: float = field(default_factory=time.time)


# Valid state transitions
VALID_TRANSITIONS: dict[TargetState, set[TargetState]] = {
    TargetState.ABSENT: {TargetState.ATTACHING},
    TargetState.ATTACHING: {TargetState.READY, TargetState.FAILED, TargetState.ABSENT},
    TargetState.READY: {TargetState.BUSY, TargetState.DETACHING},
    TargetState.BUSY: {TargetState.READY, TargetState.ABSENT},
    TargetState.DETACHING: {TargetState.ABSENT},
    TargetState.FAILED: {TargetState.ABSENT},
}


class InvalidTargetTransitionError(Exception):
    """Raised when attempting an invalid target state transition."""

    pass


@dataclass
class Target:
    """Current view of a sync target.

    Attributes:
        target_id: Unique identifier.
        path: Mount point or directory.
        state: Lifecycle state.
        capacity: Total bytes of the filesystem (0 when unknown).
        free_space: Free bytes at the last probe.
        writable: Result of the last write probe.
        filesystem: Filesystem type, if known.
        removable: Whether the target is a hotplug device.
        last_error: Reason of the last failed probe.
        updated_at: Time of the last state change.
    """

    target_id: str
    path: Path
    state: TargetState = TargetState.ABSENT
    capacity: int = 0
    free_space: int = 0
    writable: bool = False
    filesystem: str | None = None
    removable: bool = False
    last_error: str | None = None
    updated_at: float = field(default_factory=time.time)

    @property
    def ready(self) -> bool:
        return self.state == TargetState.READY

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_id": self.target_id,
            "path": str(self.path),
            "state": self.state.value,
            "ready": self.ready,
            "capacity": self.capacity,
            "free_space": self.free_space,
            "writable": self.writable,
            "filesystem": self.filesystem,
            "removable": self.removable,
            "last_error": self.last_error,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of a readiness probe."""

    ok: bool
    reason: str | None = None
    capacity: int = 0
    free_space: int = 0
    filesystem: str | None = None
    writable: bool = False


def filesystem_type(path: Path, mounts_file: Path = MOUNTS_FILE) -> str | None:
    """Filesystem type of the mount containing path, from /proc/mounts.

    Returns:
        The type (e.g. "ext4", "vfat"), or None when it cannot be read.
    """
    try:
        lines = mounts_file.read_text().splitlines()
    except OSError:
        return None

    resolved = str(path.resolve())
    best_mount = ""
    best_type: str | None = None
    for line in lines:
        fields = line.split()
        if len(fields) < 3:
            continue
        # Spaces in mount points are octal-escaped
        mount_point = fields[1].replace("\\040", " ")
        inside = resolved == mount_point or resolved.startswith(mount_point.rstrip("/") + "/")
        if inside and len(mount_point) >= len(best_mount):
            best_mount = mount_point
            best_type = fields[2]
    return best_type


class ReadinessProbe:
    """Checks a target path before it is marked READY.

    A path passes when it is a directory, is a mount point (if required),
    has an allowed filesystem type (if restricted), has enough free space
    and accepts a small test write.
    """

    def __init__(
        self,
        min_free_space: int = 0,
        allowed_filesystems: Sequence[str] = (),
        require_mount: bool = False,
        mounts_file: Path = MOUNTS_FILE,
    ) -> None:
        self._min_free = min_free_space
        self._allowed = tuple(fs.lower() for fs in allowed_filesystems)
        self._require_mount = require_mount
        self._mounts_file = mounts_file

    @classmethod
    def from_config(cls, config: TargetConfig) -> ReadinessProbe:
        return cls(
            min_free_space=config.min_free_space,
            allowed_filesystems=config.allowed_filesystems,
            require_mount=config.require_mount,
        )

    def probe(self, path: Path) -> ProbeResult:
        """Run all checks against a path."""
        if not path.is_dir():
            return ProbeResult(ok=False, reason=f"not a directory: {path}")

        if self._require_mount and not os.path.ismount(path):
            return ProbeResult(ok=False, reason=f"not a mount point: {path}")

        filesystem = filesystem_type(path, self._mounts_file)
        if self._allowed and (filesystem is None or filesystem.lower() not in self._allowed):
            return ProbeResult(
                ok=False,
                reason=f"filesystem {filesystem or 'unknown'} not allowed",
                filesystem=filesystem,
            )

        try:
            usage = shutil.disk_usage(path)
        except OSError as e:
            return ProbeResult(ok=False, reason=f"cannot read disk usage: {e}")
        if usage.free < self._min_free:
            return ProbeResult(
                ok=False,
                reason=f"insufficient free space ({usage.free} < {self._min_free})",
                capacity=usage.total,
                free_space=usage.free,
                filesystem=filesystem,
            )

        probe_file = path / f"{PROBE_FILENAME}-{os.getpid()}"
        try:
            probe_file.write_bytes(b"ok")
            probe_file.unlink()
        except OSError as e:
            return ProbeResult(
                ok=False,
                reason=f"not writable: {e}",
                capacity=usage.total,
                free_space=usage.free,
                filesystem=filesystem,
            )

        return ProbeResult(
            ok=True,
            capacity=usage.total,
            free_space=usage.free,
            filesystem=filesystem,
            writable=True,
        )


class TargetLease:
    """Exclusive hold on a target for one sync operation.

    The cancel event is set when the target disappears while held (or when
    the holder is asked to stop). Workers check it at every I/O boundary.

    Usage:
        with manager.acquire("sdcard") as lease:
            executor.execute(manifest, lease, adapter)
    """

    def __init__(self, manager: TargetLifecycleManager, target_id: str, path: Path) -> None:
        self._manager = manager
        self.target_id = target_id
        self.path = path
        self.cancel_event = threading.Event()
        self.reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []
        self._released = False
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def released(self) -> bool:
        return self._released

    def add_cancel_callback(self, callback: Callable[[], None]) -> None:
        """Register a callback run synchronously when the lease is cancelled."""
        with self._lock:
            self._callbacks.append(callback)
        if self.cancelled:
            callback()

    def cancel(self, reason: str = "cancelled") -> None:
        """Signal cancellation and run callbacks (idempotent)."""
        with self._lock:
            if self.cancel_event.is_set():
                return
            self.reason = reason
            self.cancel_event.set()
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception(f"Cancel callback failed for target {self.target_id}")

    def release(self) -> None:
        """Give the target back (idempotent)."""
        if not self._released:
            self._released = True
            self._manager.release(self)

    def __enter__(self) -> TargetLease:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


TargetListener = Callable[[Target, TargetState, TargetState], None]


class TargetLifecycleManager:
    """Owns the availability state of every configured target.

    Usage:
        manager = TargetLifecycleManager(config.targets)
        manager.add_listener(on_target_change)
        manager.start()                  # static targets are probed here
        detector = MountWatcher(manager.channel, mount_base)
        detector.start()
        ...
        lease = manager.acquire("sdcard", timeout=60)
    """

    def __init__(
        self,
        targets: Sequence[TargetConfig],
        channel: queue.Queue[TargetEvent | None] | None = None,
        probe_factory: Callable[[TargetConfig], ReadinessProbe] = ReadinessProbe.from_config,
    ) -> None:
        """Initialize the manager.

        Args:
            targets: Target configurations.
            channel: Event channel shared with detectors (created if omitted).
            probe_factory: Builds the readiness probe for a target.
        """
        self._configs = {t.target_id: t for t in targets}
        self._probes = {t.target_id: probe_factory(t) for t in targets}
        self._targets = {
            t.target_id: Target(target_id=t.target_id, path=t.path, removable=t.removable)
            for t in targets
        }
        self._leases: dict[str, TargetLease] = {}
        self._channel: queue.Queue[TargetEvent | None] = channel or queue.Queue()
        self._cond = threading.Condition()
        self._listeners: list[TargetListener] = []
        self._thread: threading.Thread | None = None

    @property
    def channel(self) -> queue.Queue[TargetEvent | None]:
        """Queue detectors push TargetEvents onto."""
        return self._channel

    def add_listener(self, listener: TargetListener) -> None:
        """Register a callback for state changes (target, old, new)."""
        self._listeners.append(listener)

    # === Lifecycle ===

    def start(self) -> None:
        """Probe static targets and start consuming the channel."""
        for config in self._configs.values():
            # Removable devices may already be mounted when the service starts
            if not config.removable or config.path.is_dir():
                self.handle_event(
                    TargetEvent(TargetEventKind.ATTACH, config.path, config.target_id)
                )

        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._consume, name="TargetLifecycle", daemon=True
        )
        self._thread.start()
        logger.info(f"Target lifecycle manager started ({len(self._configs)} targets)")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop consuming the channel."""
        if self._thread is None:
            return
        self._channel.put(None)
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Target lifecycle manager stopped")

    def _consume(self) -> None:
        while True:
            event = self._channel.get()
            if event is None:
                # Poison pill
                break
            try:
                self.handle_event(event)
            except Exception:
                logger.exception(f"Error handling target event {event}")

    # === Event handling ===

    def resolve(self, event: TargetEvent) -> str | None:
        """Find the target an event refers to."""
        if event.target_id is not None:
            return event.target_id if event.target_id in self._configs else None
        event_path = Path(event.path)
        for target_id, config in self._configs.items():
            if config.path == event_path or event_path in config.path.parents:
                return target_id
        return None

    def handle_event(self, event: TargetEvent) -> None:
        """Apply one detector event synchronously.

        A detach of a BUSY target cancels its lease before returning.
        """
        target_id = self.resolve(event)
        if target_id is None:
            logger.debug(f"Ignoring event for unknown path: {event.path}")
            return

        if event.kind == TargetEventKind.ATTACH:
            self._attach(target_id)
        else:
            self._detach(target_id)

    def _attach(self, target_id: str) -> None:
        changes: list[tuple[TargetState, TargetState]] = []
        with self._cond:
            target = self._targets[target_id]
            if target.state not in (TargetState.ABSENT, TargetState.FAILED):
                logger.debug(f"Target {target_id}: attach ignored in state {target.state.value}")
                return
            if target.state == TargetState.FAILED:
                changes.append(self._transition(target, TargetState.ABSENT))
            changes.append(self._transition(target, TargetState.ATTACHING))
        self._notify(target_id, changes)

        # Probe outside the lock, it touches the filesystem
        result = self._probes[target_id].probe(self._configs[target_id].path)

        changes = []
        with self._cond:
            target = self._targets[target_id]
            if target.state != TargetState.ATTACHING:
                # Detached while probing
                return
            target.capacity = result.capacity
            target.free_space = result.free_space
            target.filesystem = result.filesystem
            target.writable = result.writable
            if result.ok:
                target.last_error = None
                changes.append(self._transition(target, TargetState.READY))
                logger.info(f"Target {target_id} ready at {target.path}")
            else:
                target.last_error = result.reason
                changes.append(self._transition(target, TargetState.FAILED))
                changes.append(self._transition(target, TargetState.ABSENT))
                logger.warning(f"Target {target_id} failed readiness probe: {result.reason}")
            self._cond.notify_all()
        self._notify(target_id, changes)

    def _detach(self, target_id: str) -> None:
        changes: list[tuple[TargetState, TargetState]] = []
        lease: TargetLease | None = None
        with self._cond:
            target = self._targets[target_id]
            if target.state == TargetState.BUSY:
                lease = self._leases.pop(target_id, None)
                changes.append(self._transition(target, TargetState.ABSENT))
                logger.warning(f"Target {target_id} removed while busy")
            elif target.state == TargetState.READY:
                changes.append(self._transition(target, TargetState.DETACHING))
                changes.append(self._transition(target, TargetState.ABSENT))
                logger.info(f"Target {target_id} detached")
            elif target.state in (TargetState.ATTACHING, TargetState.FAILED):
                changes.append(self._transition(target, TargetState.ABSENT))
            target.writable = False
            target.free_space = 0
            self._cond.notify_all()

        if lease is not None:
            lease.cancel("target removed")
        self._notify(target_id, changes)

    def _transition(self, target: Target, new_state: TargetState) -> tuple[TargetState, TargetState]:
        old_state = target.state
        if new_state not in VALID_TRANSITIONS[old_state]:
            raise InvalidTargetTransitionError(
                f"Target {target.target_id}: cannot go from {old_state.value} to {new_state.value}"
            )
        target.state = new_state
        target.updated_at = time.time()
        return old_state, new_state

    def _notify(self, target_id: str, changes: list[tuple[TargetState, TargetState]]) -> None:
        if not changes or not self._listeners:
            return
        snapshot = self.get(target_id)
        for old_state, new_state in changes:
            for listener in self._listeners:
                try:
                    listener(snapshot, old_state, new_state)
                except Exception:
                    logger.exception(f"Target listener failed for {target_id}")

    # === Leases ===

    def acquire(
        self,
        target_id: str,
        timeout: float | None = None,
        policy: BusyPolicy | None = None,
    ) -> TargetLease:
        """Take exclusive hold of a READY target.

        Args:
            target_id: Target to acquire.
            timeout: Seconds to wait while the target is busy (QUEUE policy);
                defaults to the target's busy_timeout.
            policy: Override of the target's busy policy.

        Returns:
            A lease; release it (or use it as a context manager) when done.

        Raises:
            TargetBusyError: If busy and the policy rejects, or the wait timed out.
            TargetUnavailableError: If the target is not READY.
        """
        config = self._configs.get(target_id)
        if config is None:
            raise TargetUnavailableError(f"Unknown target: {target_id}")
        policy = policy or config.busy_policy
        wait = config.busy_timeout if timeout is None else timeout

        changes: list[tuple[TargetState, TargetState]] = []
        with self._cond:
            target = self._targets[target_id]
            if target.state == TargetState.BUSY:
                if policy == BusyPolicy.REJECT:
                    raise TargetBusyError(
                        f"Target {target_id} is busy", context={"target": target_id}
                    )
                logger.info(f"Target {target_id} busy, waiting up to {wait:.0f}s")
                freed = self._cond.wait_for(
                    lambda: self._targets[target_id].state != TargetState.BUSY,
                    timeout=wait,
                )
                if not freed:
                    raise TargetBusyError(
                        f"Timed out waiting for target {target_id}",
                        context={"target": target_id},
                    )

            if target.state != TargetState.READY:
                raise TargetUnavailableError(
                    f"Target {target_id} is {target.state.value}",
                    context={"target": target_id, "state": target.state.value},
                )
            changes.append(self._transition(target, TargetState.BUSY))
            lease = TargetLease(self, target_id, target.path)
            self._leases[target_id] = lease
        self._notify(target_id, changes)
        return lease

    def release(self, lease: TargetLease) -> None:
        """Return a lease (called by TargetLease.release)."""
        changes: list[tuple[TargetState, TargetState]] = []
        with self._cond:
            if self._leases.get(lease.target_id) is lease:
                del self._leases[lease.target_id]
                target = self._targets[lease.target_id]
                if target.state == TargetState.BUSY:
                    changes.append(self._transition(target, TargetState.READY))
            self._cond.notify_all()
        self._notify(lease.target_id, changes)

    # === Queries ===

    def get(self, target_id: str) -> Target:
        """Snapshot of a target (a copy, safe to read without locking)."""
        with self._cond:
            target = self._targets.get(target_id)
            if target is None:
                raise TargetUnavailableError(f"Unknown target: {target_id}")
            return dataclasses.replace(target)

    def state(self, target_id: str) -> TargetState:
        return self.get(target_id).state

    def targets(self) -> list[Target]:
        with self._cond:
            return [dataclasses.replace(t) for t in self._targets.values()]

    def is_ready(self, target_id: str) -> bool:
        return self.state(target_id) == TargetState.READY

    def refresh_space(self, target_id: str) -> Target:
        """Update capacity and free space of an attached target."""
        path = self._configs[target_id].path
        try:
            usage = shutil.disk_usage(path)
        except OSError as e:
            logger.debug(f"Cannot read disk usage of {path}: {e}")
            return self.get(target_id)
        with self._cond:
            target = self._targets[target_id]
            if target.state in (TargetState.READY, TargetState.BUSY):
                target.capacity = usage.total
                target.free_space = usage.free
        return self.get(target_id)
