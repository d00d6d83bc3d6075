"""Tests for SyncService."""

import threading
from pathlib import Path

import pytest

from offlinesync.core.config import BreakerConfig
from offlinesync.core.errors import NetworkError, TargetUnavailableError, ValidationError
from offlinesync.core.types import HealthStatus, TargetState
from offlinesync.service import SyncService
from offlinesync.sync.breaker import CircuitState
from offlinesync.sync.events import EventType
from offlinesync.sync.target import TargetEvent, TargetEventKind


def _attach(service: SyncService) -> None:
    service.manager.handle_event(TargetEvent(TargetEventKind.ATTACH, Path("/"), "sd"))


def _trip(service: SyncService, name: str) -> None:
    breaker = service.registry.get(name, BreakerConfig(failure_threshold=1, cooldown=600))

    def unreachable() -> None:
        raise NetworkError("connection refused")

    with pytest.raises(NetworkError):
        breaker.call(unreachable)
    assert breaker.state == CircuitState.OPEN


class TestSyncService:
    """Tests for SyncService."""

    def test_run_once(self, service: SyncService, tmp_path: Path) -> None:
        _attach(service)

        [result] = service.run_once()

        assert result.success
        assert result.fetched == 2
        assert (tmp_path / "sd" / "Movies" / "Alpha Movie.mkv").exists()
        assert service.manifest("sd").planned_size == 700

    def test_run_once_skips_absent_targets(self, service: SyncService) -> None:
        assert service.run_once() == []

    def test_target_events_published(self, service: SyncService) -> None:
        seen = []
        service.events.subscribe(seen.append, EventType.TARGET_ATTACHED)
        _attach(service)
        assert [e.target_id for e in seen] == ["sd"]

    def test_unknown_target(self, service: SyncService) -> None:
        with pytest.raises(TargetUnavailableError):
            service.orchestrator("usb")
        with pytest.raises(TargetUnavailableError):
            service.trigger("usb")

    def test_find_job(self, service: SyncService) -> None:
        assert service.find_job("movies").target_id == "sd"
        with pytest.raises(ValidationError):
            service.find_job("music")

    def test_start_attaches_static_target_and_syncs(self, service: SyncService) -> None:
        """A static target is probed at start and synced as soon as it is ready."""
        done = threading.Event()
        service.events.subscribe(lambda e: done.set(), EventType.CYCLE_COMPLETED)

        service.start()
        try:
            assert service.running
            assert done.wait(10.0)
            assert service.manager.state("sd") in (TargetState.READY, TargetState.BUSY)
        finally:
            service.stop()
        assert not service.running

    def test_refresh_absent_target_queues_attach(self, service: SyncService) -> None:
        assert service.refresh() == ["sd"]
        event = service.manager.channel.get_nowait()
        assert event.kind == TargetEventKind.ATTACH
        assert event.target_id == "sd"

    def test_refresh_ready_target_reads_space(self, service: SyncService) -> None:
        _attach(service)
        assert service.refresh("sd") == ["sd"]
        assert service.manager.channel.empty()

    def test_cancel_without_cycle(self, service: SyncService) -> None:
        assert service.cancel() == []

    def test_reset_breakers(self, service: SyncService) -> None:
        _trip(service, "catalog:a")
        _trip(service, "catalog:b")

        assert service.reset_breakers("catalog:a") == ["catalog:a"]
        assert service.registry.get("catalog:a").state == CircuitState.CLOSED
        assert service.registry.get("catalog:b").state == CircuitState.OPEN

        assert service.reset_breakers() == ["catalog:a", "catalog:b"]
        assert service.registry.open_breakers() == []

    def test_reset_unknown_breaker(self, service: SyncService) -> None:
        with pytest.raises(ValidationError, match="catalog:nope"):
            service.reset_breakers("catalog:nope")

    def test_enable_disable(self, service: SyncService) -> None:
        _attach(service)
        service.disable_target("sd")
        assert service.run_once() == []
        service.enable_target("sd")
        assert len(service.run_once()) == 1

    def test_status_and_health(self, service: SyncService) -> None:
        snapshot = service.status()
        assert not snapshot.running
        assert snapshot.target("sd")["target"]["state"] == "absent"
        assert service.health().status == HealthStatus.UNHEALTHY
