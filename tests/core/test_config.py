"""Tests for configuration classes."""

from pathlib import Path
from typing import Any

import pytest

from offlinesync.core.config import (
    BreakerConfig,
    DetectionConfig,
    EngineConfig,
    JobConfig,
    PerformanceConfig,
    SourceConfig,
    TargetConfig,
)
from offlinesync.core.errors import ConfigurationError
from offlinesync.core.types import BusyPolicy, SyncDirection


def _config(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "targets": [{"id": "usb", "path": "/mnt/usb", "removable": True}],
        "jobs": [
            {
                "name": "movies",
                "target": "usb",
                "source": {"kind": "directory", "location": "/srv/movies"},
                "max_size": "8GB",
            }
        ],
    }
    data.update(overrides)
    return data


class TestEngineConfig:
    """Tests for EngineConfig.from_dict."""

    def test_minimal(self) -> None:
        config = EngineConfig.from_dict(_config())
        assert config.targets[0].target_id == "usb"
        assert config.targets[0].removable is True
        job = config.jobs[0]
        assert job.max_size == 8 * 1000**3
        assert job.direction == SyncDirection.TO_TARGET
        assert job.source.name == "directory:/srv/movies"
        assert config.history_size == 20

    def test_jobs_for(self) -> None:
        config = EngineConfig.from_dict(_config())
        assert [j.name for j in config.jobs_for("usb")] == ["movies"]
        assert config.jobs_for("other") == []

    def test_unknown_target_reference(self) -> None:
        data = _config()
        data["jobs"][0]["target"] = "nowhere"
        with pytest.raises(ConfigurationError, match="unknown target"):
            EngineConfig.from_dict(data)

    def test_duplicate_target_ids(self) -> None:
        data = _config(
            targets=[{"id": "usb", "path": "/a"}, {"id": "usb", "path": "/b"}]
        )
        with pytest.raises(ConfigurationError, match="Duplicate target"):
            EngineConfig.from_dict(data)

    def test_not_a_mapping(self) -> None:
        with pytest.raises(ConfigurationError):
            EngineConfig.from_dict(["not", "a", "dict"])  # type: ignore[arg-type]

    def test_invalid_size(self) -> None:
        data = _config()
        data["jobs"][0]["max_size"] = "huge"
        with pytest.raises(ConfigurationError, match="max_size"):
            EngineConfig.from_dict(data)

    def test_state_path_expanded(self) -> None:
        config = EngineConfig.from_dict(_config(state_path="~/state.db"))
        assert config.state_path == Path("~/state.db").expanduser()


class TestJobConfig:
    """Tests for JobConfig.from_dict."""

    def test_rules_and_limits(self) -> None:
        job = JobConfig.from_dict(
            {
                "name": "shows",
                "target": "usb",
                "source": {"kind": "http", "location": "http://catalog.test/shows"},
                "filters": [{"attribute": "rating", "operator": ">=", "value": 7}],
                "priorities": [{"attribute": "rating", "weight": 2}],
                "group_limit": {"attribute": "series", "max_items": 3, "max_bytes": "2GB"},
                "file_extensions": ["MKV", ".mp4"],
                "interval": 3600,
            }
        )
        assert len(job.filters.all_of) == 1
        assert job.priorities[0].weight == 2.0
        assert job.group_limit is not None
        assert job.group_limit.max_bytes == 2 * 1000**3
        assert job.file_extensions == (".mkv", ".mp4")
        assert job.interval == 3600.0

    def test_bad_rule_is_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError, match="invalid rules"):
            JobConfig.from_dict(
                {
                    "name": "x",
                    "target": "usb",
                    "source": {"kind": "directory", "location": "/srv"},
                    "filters": [{"attribute": "a", "operator": "??", "value": 1}],
                }
            )

    def test_from_target_requires_directory_source(self) -> None:
        with pytest.raises(ConfigurationError, match="directory source"):
            JobConfig.from_dict(
                {
                    "name": "camera",
                    "target": "usb",
                    "direction": "from_target",
                    "source": {"kind": "http", "location": "http://x"},
                }
            )

    def test_missing_source(self) -> None:
        with pytest.raises(ConfigurationError, match="source"):
            JobConfig.from_dict({"name": "x", "target": "usb"})

    def test_non_positive_interval(self) -> None:
        with pytest.raises(ConfigurationError, match="interval"):
            JobConfig.from_dict(
                {
                    "name": "x",
                    "target": "usb",
                    "source": {"kind": "directory", "location": "/srv"},
                    "interval": 0,
                }
            )


class TestTargetConfig:
    """Tests for TargetConfig.from_dict."""

    def test_fields(self) -> None:
        target = TargetConfig.from_dict(
            {
                "id": "sd",
                "path": "/media/sd",
                "min_free_space": "1GB",
                "allowed_filesystems": ["vfat", "exfat"],
                "busy_policy": "reject",
            }
        )
        assert target.min_free_space == 1000**3
        assert target.allowed_filesystems == ("vfat", "exfat")
        assert target.busy_policy == BusyPolicy.REJECT

    def test_invalid_busy_policy(self) -> None:
        with pytest.raises(ConfigurationError, match="busy_policy"):
            TargetConfig.from_dict({"id": "sd", "path": "/x", "busy_policy": "panic"})


class TestSourceConfig:
    """Tests for SourceConfig.from_dict."""

    def test_mirrors(self) -> None:
        source = SourceConfig.from_dict(
            {
                "kind": "http",
                "location": "http://a.example/catalog.json",
                "mirrors": ["http://b.example/catalog.json"],
            }
        )
        assert source.mirrors == ("http://b.example/catalog.json",)
        assert source.name == "http:http://a.example/catalog.json"

    def test_mirrors_need_http_source(self) -> None:
        with pytest.raises(ConfigurationError, match="Mirrors"):
            SourceConfig.from_dict(
                {"kind": "directory", "location": "/srv", "mirrors": ["/backup"]}
            )


class TestSmallConfigs:
    """Tests for performance, breaker and detection settings."""

    def test_performance_validation(self) -> None:
        with pytest.raises(ConfigurationError):
            PerformanceConfig(max_concurrent_transfers=0)
        perf = PerformanceConfig.from_dict({"bandwidth_limit": "10MB"})
        assert perf.bandwidth_limit == 10 * 1000**2

    def test_breaker_preset(self) -> None:
        breaker = BreakerConfig.from_dict({"preset": "fast_fail", "cooldown": 5})
        assert breaker.failure_threshold == 3
        assert breaker.cooldown == 5.0

    def test_unknown_breaker_preset(self) -> None:
        with pytest.raises(ConfigurationError, match="preset"):
            BreakerConfig.preset("nope")

    def test_detection_mode(self) -> None:
        with pytest.raises(ConfigurationError, match="detection mode"):
            DetectionConfig(mode="magic")
        detection = DetectionConfig.from_dict({"mount_base": "/media", "mode": "poll"})
        assert detection.mount_base == Path("/media")
