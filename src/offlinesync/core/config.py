"""Configuration classes for offlinesync.

This module defines the validated configuration structure handed to the
engine. Loading it from disk is the CLI's job (see offlinesync.cli.config);
everything here works from plain dicts.

Example (JSON):
    {
      "state_path": "~/.offlinesync/state.db",
      "targets": [{"id": "media", "path": "/mnt/media"}],
      "jobs": [{
        "name": "movies",
        "target": "media",
        "source": {"kind": "directory", "location": "/srv/nfs/movies"},
        "max_size": "500GB",
        "filters": {"all_of": [{"attribute": "rating", "operator": ">=", "value": 7}]},
        "priorities": [{"attribute": "rating", "weight": 2}]
      }]
    }
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from offlinesync.core.errors import ConfigurationError, ValidationError
from offlinesync.core.rules import FilterTree, GroupLimit, PriorityRule
from offlinesync.core.sizes import parse_size
from offlinesync.core.types import BusyPolicy, SyncDirection

DEFAULT_STATE_PATH = Path.home() / ".offlinesync" / "state.db"

SOURCE_KINDS = ("directory", "http")


def _size(value: Any, name: str) -> int:
    try:
        return parse_size(value)
    except ValueError as e:
        raise ConfigurationError(f"Invalid size for {name}: {e}") from e


def _optional_size(value: Any, name: str) -> int | None:
    if value is None:
        return None
    return _size(value, name)


@dataclass
class PerformanceConfig:
    """Transfer performance settings.

    Attributes:
        max_concurrent_transfers: Size of the transfer worker pool.
        bandwidth_limit: Optional cap in bytes/second for each transfer.
        retry_attempts: Maximum attempts for retryable failures.
        retry_delay: Initial backoff delay in seconds.
        max_retry_delay: Upper bound for the backoff delay.
        progress_interval: Minimum seconds between progress events per item.
        chunk_size: Copy buffer size in bytes.
    """

    max_concurrent_transfers: int = 3
    bandwidth_limit: int | None = None
    retry_attempts: int = 3
    retry_delay: float = 1.0
    max_retry_delay: float = 60.0
    progress_interval: float = 0.5
    chunk_size: int = 1024 * 1024

    def __post_init__(self) -> None:
        if self.max_concurrent_transfers < 1:
            raise ConfigurationError("max_concurrent_transfers must be at least 1")
        if self.retry_attempts < 1:
            raise ConfigurationError("retry_attempts must be at least 1")
        if self.chunk_size < 1:
            raise ConfigurationError("chunk_size must be positive")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PerformanceConfig:
        return cls(
            max_concurrent_transfers=int(data.get("max_concurrent_transfers", 3)),
            bandwidth_limit=_optional_size(data.get("bandwidth_limit"), "bandwidth_limit"),
            retry_attempts=int(data.get("retry_attempts", 3)),
            retry_delay=float(data.get("retry_delay", 1.0)),
            max_retry_delay=float(data.get("max_retry_delay", 60.0)),
            progress_interval=float(data.get("progress_interval", 0.5)),
            chunk_size=_size(data.get("chunk_size", 1024 * 1024), "chunk_size"),
        )


@dataclass
class BreakerConfig:
    """Circuit breaker settings shared by every protected dependency.

    Attributes:
        failure_threshold: Failures within the window that open the circuit.
        window: Sliding window length in seconds.
        cooldown: Seconds the circuit stays open before half-opening.
        half_open_max_calls: Concurrent trial calls allowed while half-open.
        success_threshold: Trial successes needed to close the circuit.
    """

    failure_threshold: int = 5
    window: float = 60.0
    cooldown: float = 30.0
    half_open_max_calls: int = 1
    success_threshold: int = 1

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ConfigurationError("failure_threshold must be at least 1")
        if self.half_open_max_calls < 1:
            raise ConfigurationError("half_open_max_calls must be at least 1")
        if self.success_threshold < 1:
            raise ConfigurationError("success_threshold must be at least 1")

    @classmethod
    def preset(cls, name: str) -> BreakerConfig:
        """Get a copy of a named preset (see BREAKER_PRESETS)."""
        try:
            return dataclasses.replace(BREAKER_PRESETS[name])
        except KeyError as e:
            raise ConfigurationError(f"Unknown breaker preset: {name!r}") from e

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BreakerConfig:
        """Create from config. A "preset" key supplies defaults for missing fields."""
        base = cls.preset(data["preset"]) if "preset" in data else cls()
        return cls(
            failure_threshold=int(data.get("failure_threshold", base.failure_threshold)),
            window=float(data.get("window", base.window)),
            cooldown=float(data.get("cooldown", base.cooldown)),
            half_open_max_calls=int(data.get("half_open_max_calls", base.half_open_max_calls)),
            success_threshold=int(data.get("success_threshold", base.success_threshold)),
        )


# Named breaker presets
BREAKER_PRESETS: dict[str, BreakerConfig] = {
    "fast_fail": BreakerConfig(failure_threshold=3, window=30.0, cooldown=10.0),
    "standard": BreakerConfig(),
    "api": BreakerConfig(failure_threshold=10, window=60.0, cooldown=30.0, success_threshold=3),
    "conservative": BreakerConfig(
        failure_threshold=10, window=120.0, cooldown=60.0, success_threshold=2
    ),
    "external_service": BreakerConfig(failure_threshold=5, window=300.0, cooldown=120.0),
}


@dataclass
class TargetConfig:
    """A sync destination.

    Attributes:
        target_id: Unique identifier.
        path: Mount point or directory.
        removable: True for hotplug devices (tracked by the detector),
            False for always-present directories.
        min_free_space: Free bytes required by the readiness probe.
        allowed_filesystems: Filesystem types accepted (empty = any).
        require_mount: Require the path to be a mount point.
        busy_policy: Queue or reject a second request while busy.
        busy_timeout: Seconds a queued request waits for the target.
    """

    target_id: str
    path: Path
    removable: bool = False
    min_free_space: int = 0
    allowed_filesystems: tuple[str, ...] = ()
    require_mount: bool = False
    busy_policy: BusyPolicy = BusyPolicy.QUEUE
    busy_timeout: float = 300.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TargetConfig:
        try:
            target_id = str(data["id"])
            path = Path(data["path"]).expanduser()
        except KeyError as e:
            raise ConfigurationError(f"Target missing field: {e.args[0]}") from e
        try:
            busy_policy = BusyPolicy(data.get("busy_policy", "queue"))
        except ValueError as e:
            raise ConfigurationError(f"Invalid busy_policy for target {target_id}") from e
        return cls(
            target_id=target_id,
            path=path,
            removable=bool(data.get("removable", False)),
            min_free_space=_size(data.get("min_free_space", 0), "min_free_space"),
            allowed_filesystems=tuple(data.get("allowed_filesystems", ())),
            require_mount=bool(data.get("require_mount", False)),
            busy_policy=busy_policy,
            busy_timeout=float(data.get("busy_timeout", 300.0)),
        )


@dataclass
class SourceConfig:
    """Where a job's catalog comes from.

    Attributes:
        kind: "directory" (mounted share) or "http" (JSON catalog).
        location: Directory path or catalog URL.
        name: Dependency name used for the circuit breaker.
        timeout: Request timeout for HTTP sources.
        headers: Extra HTTP headers (e.g. API keys).
        mirrors: Fallback catalog URLs serving the same listing, tried in
            order after location (http only).
    """

    kind: str
    location: str
    name: str = ""
    timeout: float = 30.0
    headers: dict[str, str] = field(default_factory=dict)
    mirrors: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.kind not in SOURCE_KINDS:
            raise ConfigurationError(f"Unknown source kind: {self.kind!r}")
        if self.mirrors and self.kind != "http":
            raise ConfigurationError(f"Mirrors need an http source, not {self.kind!r}")
        if not self.name:
            self.name = f"{self.kind}:{self.location}"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SourceConfig:
        try:
            return cls(
                kind=data["kind"],
                location=str(data["location"]),
                name=data.get("name", ""),
                timeout=float(data.get("timeout", 30.0)),
                headers=dict(data.get("headers", {})),
                mirrors=tuple(str(url) for url in data.get("mirrors", ())),
            )
        except KeyError as e:
            raise ConfigurationError(f"Source missing field: {e.args[0]}") from e


@dataclass
class JobConfig:
    """One content type synced to or from one target.

    For ``to_target`` jobs the catalog comes from ``source`` and files land
    under ``<target path>/<dest_subpath>``. For ``from_target`` jobs the
    target directory is the catalog and ``source.location`` is the local
    destination directory.

    Attributes:
        name: Unique job name.
        target: Target identifier.
        source: Catalog source.
        direction: Sync direction.
        dest_subpath: Subdirectory on the target.
        max_size: Byte budget for this job.
        filters: Filter tree.
        priorities: Priority rules.
        group_limit: Optional per-group sub-budget.
        delete_extras: Evict local files that left the catalog.
        interval: Seconds between scheduled cycles (None = on demand only).
        wanted: Display names to reconcile against the catalog; when set,
            only matched items are candidates.
        match_threshold: Similarity threshold for ``wanted`` reconciliation.
        file_extensions: Only catalog files with these extensions.
    """

    name: str
    target: str
    source: SourceConfig
    direction: SyncDirection = SyncDirection.TO_TARGET
    dest_subpath: str = ""
    max_size: int = 0
    filters: FilterTree = field(default_factory=FilterTree)
    priorities: tuple[PriorityRule, ...] = ()
    group_limit: GroupLimit | None = None
    delete_extras: bool = False
    interval: float | None = None
    wanted: tuple[str, ...] = ()
    match_threshold: float = 0.6
    file_extensions: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.direction == SyncDirection.FROM_TARGET and self.source.kind != "directory":
            raise ConfigurationError(
                f"Job {self.name}: from_target jobs need a directory source"
            )
        if self.interval is not None and self.interval <= 0:
            raise ConfigurationError(f"Job {self.name}: interval must be positive")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> JobConfig:
        try:
            name = str(data["name"])
            target = str(data["target"])
            source = SourceConfig.from_dict(data["source"])
        except KeyError as e:
            raise ConfigurationError(f"Job missing field: {e.args[0]}") from e

        try:
            direction = SyncDirection(data.get("direction", "to_target"))
        except ValueError as e:
            raise ConfigurationError(f"Job {name}: invalid direction") from e

        try:
            filters = FilterTree.from_dict(data.get("filters"))
            priorities = tuple(PriorityRule.from_dict(p) for p in data.get("priorities", []))
            group_limit = None
            if data.get("group_limit"):
                gl = data["group_limit"]
                group_limit = GroupLimit(
                    attribute=gl["attribute"],
                    max_items=gl.get("max_items"),
                    max_bytes=_optional_size(gl.get("max_bytes"), "group_limit.max_bytes"),
                )
        except (ValidationError, KeyError) as e:
            raise ConfigurationError(f"Job {name}: invalid rules: {e}") from e

        interval = data.get("interval")
        return cls(
            name=name,
            target=target,
            source=source,
            direction=direction,
            dest_subpath=str(data.get("dest_subpath", "")),
            max_size=_size(data.get("max_size", 0), f"{name}.max_size"),
            filters=filters,
            priorities=priorities,
            group_limit=group_limit,
            delete_extras=bool(data.get("delete_extras", False)),
            interval=float(interval) if interval is not None else None,
            wanted=tuple(data.get("wanted", ())),
            match_threshold=float(data.get("match_threshold", 0.6)),
            file_extensions=tuple(
                ext.lower() if ext.startswith(".") else f".{ext.lower()}"
                for ext in data.get("file_extensions", ())
            ),
        )


@dataclass
class DetectionConfig:
    """Removable target detection.

    Attributes:
        mount_base: Directory where removable devices get mounted.
        mode: "watch" (filesystem events) or "poll".
        poll_interval: Seconds between polls in poll mode.
    """

    mount_base: Path | None = None
    mode: str = "watch"
    poll_interval: float = 5.0

    def __post_init__(self) -> None:
        if self.mode not in ("watch", "poll"):
            raise ConfigurationError(f"Unknown detection mode: {self.mode!r}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DetectionConfig:
        base = data.get("mount_base")
        return cls(
            mount_base=Path(base).expanduser() if base else None,
            mode=data.get("mode", "watch"),
            poll_interval=float(data.get("poll_interval", 5.0)),
        )


@dataclass
class NotificationConfig:
    """External notification delivery.

    Attributes:
        webhook_url: URL receiving JSON event payloads.
        events: Event type names to deliver (empty = cycle, item failure,
            target and breaker events).
        console: Also log events through the console channel.
    """

    webhook_url: str | None = None
    events: tuple[str, ...] = ()
    console: bool = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> NotificationConfig:
        return cls(
            webhook_url=data.get("webhook_url"),
            events=tuple(data.get("events", ())),
            console=bool(data.get("console", True)),
        )


@dataclass
class EngineConfig:
    """Complete validated configuration for a SyncService."""

    jobs: list[JobConfig]
    targets: list[TargetConfig]
    performance: PerformanceConfig = field(default_factory=PerformanceConfig)
    breaker: BreakerConfig = field(default_factory=BreakerConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    state_path: Path = DEFAULT_STATE_PATH
    history_size: int = 20

    def __post_init__(self) -> None:
        target_ids = [t.target_id for t in self.targets]
        if len(set(target_ids)) != len(target_ids):
            raise ConfigurationError("Duplicate target ids")
        job_names = [j.name for j in self.jobs]
        if len(set(job_names)) != len(job_names):
            raise ConfigurationError("Duplicate job names")
        for job in self.jobs:
            if job.target not in target_ids:
                raise ConfigurationError(
                    f"Job {job.name} references unknown target {job.target!r}"
                )
        if self.history_size < 1:
            raise ConfigurationError("history_size must be at least 1")

    def get_target(self, target_id: str) -> TargetConfig:
        for target in self.targets:
            if target.target_id == target_id:
                return target
        raise ConfigurationError(f"Unknown target: {target_id}")

    def jobs_for(self, target_id: str) -> list[JobConfig]:
        """Jobs bound to a target, in configuration order."""
        return [j for j in self.jobs if j.target == target_id]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> EngineConfig:
        """Build and validate a config from a plain mapping.

        Raises:
            ConfigurationError: If anything is missing or inconsistent.
        """
        if not isinstance(data, Mapping):
            raise ConfigurationError("Configuration must be a mapping")
        try:
            return cls(
                jobs=[JobConfig.from_dict(j) for j in data.get("jobs", [])],
                targets=[TargetConfig.from_dict(t) for t in data.get("targets", [])],
                performance=PerformanceConfig.from_dict(data.get("performance", {})),
                breaker=BreakerConfig.from_dict(data.get("breaker", {})),
                detection=DetectionConfig.from_dict(data.get("detection", {})),
                notifications=NotificationConfig.from_dict(data.get("notifications", {})),
                state_path=Path(data.get("state_path", DEFAULT_STATE_PATH)).expanduser(),
                history_size=int(data.get("history_size", 20)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e
