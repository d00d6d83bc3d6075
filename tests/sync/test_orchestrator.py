"""Tests for the sync orchestrator."""

import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from offlinesync.core.config import JobConfig, PerformanceConfig, SourceConfig, TargetConfig
from offlinesync.core.errors import ValidationError
from offlinesync.core.types import OrchestratorState, SyncDirection, TargetState
from offlinesync.sync.breaker import BreakerRegistry
from offlinesync.sync.events import EventBus, EventType
from offlinesync.sync.orchestrator import SyncOrchestrator, compute_budget
from offlinesync.sync.retry import RetryPolicy
from offlinesync.sync.state import LocalSyncState
from offlinesync.sync.target import TargetEvent, TargetEventKind, TargetLifecycleManager
from offlinesync.sync.types import ManifestAction
from tests.factories import HookedAdapter, write_file

FILES = {
    "Alpha Movie.mkv": b"a" * 400,
    "Beta Movie.mkv": b"b" * 300,
    "Gamma Movie.mkv": b"c" * 200,
}


class TestComputeBudget:
    """Tests for compute_budget."""

    def test_capped_by_max_size(self) -> None:
        assert compute_budget(1000, free_space=5000, reserve=0, tracked=0) == 1000

    def test_free_space_minus_reserve_plus_tracked(self) -> None:
        assert compute_budget(0, free_space=500, reserve=100, tracked=300) == 700

    def test_reserve_larger_than_free(self) -> None:
        assert compute_budget(0, free_space=50, reserve=100, tracked=300) == 300

    def test_unknown_free_space(self) -> None:
        assert compute_budget(1000, free_space=None, reserve=0, tracked=10) == 1000


@pytest.fixture
def source(tmp_path: Path) -> Path:
    root = tmp_path / "library"
    for name, content in FILES.items():
        write_file(root, name, content)
    return root


@pytest.fixture
def target_path(tmp_path: Path) -> Path:
    path = tmp_path / "sd"
    path.mkdir()
    return path


@pytest.fixture
def manager(target_path: Path) -> TargetLifecycleManager:
    return TargetLifecycleManager([TargetConfig("sd", target_path, removable=True)])


def _attach(manager: TargetLifecycleManager) -> None:
    manager.handle_event(TargetEvent(TargetEventKind.ATTACH, Path("/"), "sd"))


def _job(source: Path, **overrides) -> JobConfig:
    settings = {
        "name": "movies",
        "target": "sd",
        "source": SourceConfig("directory", str(source)),
        "dest_subpath": "Movies",
        "max_size": 700,
    }
    settings.update(overrides)
    return JobConfig(**settings)


def _orchestrator(
    target_path: Path,
    jobs: list[JobConfig],
    manager: TargetLifecycleManager,
    state: LocalSyncState,
    events: EventBus | None = None,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        TargetConfig("sd", target_path, removable=True),
        jobs,
        manager,
        state,
        BreakerRegistry(),
        events=events,
        retry_policy=RetryPolicy(max_attempts=2, initial_delay=0.0),
    )


class TestRunCycle:
    """Tests for SyncOrchestrator.run_cycle."""

    def test_cycle_fetches_within_budget(
        self, source, target_path, manager, state: LocalSyncState
    ) -> None:
        _attach(manager)
        events = EventBus()
        seen: list[EventType] = []
        events.subscribe(lambda e: seen.append(e.type), EventType.CYCLE_STARTED, EventType.CYCLE_COMPLETED)
        orchestrator = _orchestrator(target_path, [_job(source)], manager, state, events)

        [result] = orchestrator.run_cycle()

        assert result.success
        assert result.fetched == 2
        assert result.bytes_moved == 700
        assert sorted(p.name for p in (target_path / "Movies").iterdir()) == [
            "Alpha Movie.mkv",
            "Beta Movie.mkv",
        ]
        assert seen == [EventType.CYCLE_STARTED, EventType.CYCLE_COMPLETED]
        assert orchestrator.state == OrchestratorState.IDLE
        assert state.get_last_sync("sd", "movies") is not None
        assert orchestrator.last_manifest().planned_size == 700
        assert manager.state("sd") == TargetState.READY

    def test_second_cycle_keeps_everything(
        self, source, target_path, manager, state: LocalSyncState
    ) -> None:
        _attach(manager)
        orchestrator = _orchestrator(target_path, [_job(source)], manager, state)
        orchestrator.run_cycle()

        [result] = orchestrator.run_cycle()

        assert result.fetched == 0
        assert result.kept == 2
        manifest = orchestrator.last_manifest("movies")
        assert {e.action for e in manifest.entries} == {ManifestAction.KEEP}
        assert len(orchestrator.history) == 2

    def test_absent_target_aborts(self, source, target_path, manager, state) -> None:
        events = EventBus()
        failed = []
        events.subscribe(failed.append, EventType.CYCLE_FAILED)
        orchestrator = _orchestrator(target_path, [_job(source)], manager, state, events)

        [result] = orchestrator.run_cycle()

        assert result.aborted
        assert result.errors[0].category == "device"
        assert len(failed) == 1
        assert orchestrator.state == OrchestratorState.IDLE

    def test_catalog_failure_aborts_job(self, tmp_path, target_path, manager, state) -> None:
        _attach(manager)
        orchestrator = _orchestrator(
            target_path, [_job(tmp_path / "unmounted-share")], manager, state
        )

        [result] = orchestrator.run_cycle()

        assert result.aborted
        assert not result.cancelled
        assert manager.state("sd") == TargetState.READY
        assert orchestrator.last_manifest() is None

    def test_from_target_job(self, tmp_path, target_path, manager, state) -> None:
        write_file(target_path, "DCIM/photo.jpg", b"jpeg")
        backup = tmp_path / "backup"
        job = JobConfig(
            name="photos",
            target="sd",
            source=SourceConfig("directory", str(backup)),
            direction=SyncDirection.FROM_TARGET,
            dest_subpath="DCIM",
        )
        _attach(manager)
        orchestrator = _orchestrator(target_path, [job], manager, state)

        [result] = orchestrator.run_cycle()

        assert result.success
        assert (backup / "photo.jpg").read_bytes() == b"jpeg"
        assert orchestrator.destination("photos") == backup

    def test_wanted_names_restrict_catalog(
        self, source, target_path, manager, state
    ) -> None:
        _attach(manager)
        job = _job(source, wanted=("gamma movie",), max_size=0)
        orchestrator = _orchestrator(target_path, [job], manager, state)

        [result] = orchestrator.run_cycle()

        assert result.fetched == 1
        assert (target_path / "Movies" / "Gamma Movie.mkv").exists()

    def test_job_selection(self, source, target_path, manager, state) -> None:
        _attach(manager)
        jobs = [_job(source), _job(source, name="other", dest_subpath="Other")]
        orchestrator = _orchestrator(target_path, jobs, manager, state)

        results = orchestrator.run_cycle(["other"])

        assert [r.job for r in results] == ["other"]

    def test_disabled_target_skips(self, source, target_path, manager, state) -> None:
        _attach(manager)
        orchestrator = _orchestrator(target_path, [_job(source)], manager, state)
        orchestrator.disable()
        assert orchestrator.run_cycle() == []
        assert not orchestrator.trigger()
        orchestrator.enable()
        assert orchestrator.enabled


class TestControl:
    """Tests for trigger, cancel and stop."""

    def test_trigger_runs_in_background(self, source, target_path, manager, state) -> None:
        _attach(manager)
        events = EventBus()
        done = threading.Event()
        events.subscribe(lambda e: done.set(), EventType.CYCLE_COMPLETED)
        orchestrator = _orchestrator(target_path, [_job(source)], manager, state, events)

        assert orchestrator.trigger()

        assert done.wait(10.0)
        orchestrator.stop(timeout=5.0)
        assert orchestrator.last_result.fetched == 2
        assert orchestrator.state == OrchestratorState.STOPPED
        assert not orchestrator.trigger()

    def test_stop_mid_transfer(self, source, target_path, manager, state) -> None:
        """stop() during a transfer cancels the pool and leaves nothing half-written."""
        _attach(manager)
        leases = []
        acquire = manager.acquire

        def recording_acquire(*args, **kwargs):
            lease = acquire(*args, **kwargs)
            leases.append(lease)
            return lease

        cancelled = threading.Event()
        stopped: list[bool] = []
        stoppers: list[threading.Thread] = []

        def stop_from_another_thread() -> None:
            if stoppers:
                return
            leases[0].add_cancel_callback(cancelled.set)
            stopper = threading.Thread(
                target=lambda: stopped.append(orchestrator.stop(timeout=10.0))
            )
            stoppers.append(stopper)
            stopper.start()
            # stop() cancels the pool before the lease
            cancelled.wait(5.0)

        orchestrator = SyncOrchestrator(
            TargetConfig("sd", target_path, removable=True),
            [_job(source)],
            manager,
            state,
            BreakerRegistry(),
            performance=PerformanceConfig(
                max_concurrent_transfers=1, chunk_size=64, retry_delay=0.0
            ),
            adapter_factory=lambda job, registry: HookedAdapter(
                Path(job.source.location), stop_from_another_thread
            ),
            retry_policy=RetryPolicy(max_attempts=2, initial_delay=0.0),
        )

        with patch.object(manager, "acquire", side_effect=recording_acquire):
            [result] = orchestrator.run_cycle()
        stoppers[0].join(10.0)

        assert cancelled.is_set()
        assert stopped == [True]
        assert result.cancelled
        assert result.fetched == 0
        assert not orchestrator.is_running
        assert orchestrator.state == OrchestratorState.STOPPED
        assert list(target_path.rglob("*.offlinesync-partial")) == []
        assert [p for p in target_path.rglob("*") if p.is_file()] == []
        assert state.list_items("sd", "movies") == []
        assert not orchestrator.trigger()

    def test_cancel_without_cycle(self, source, target_path, manager, state) -> None:
        orchestrator = _orchestrator(target_path, [_job(source)], manager, state)
        assert not orchestrator.cancel()

    def test_start_and_stop_scheduler(self, source, target_path, manager, state) -> None:
        orchestrator = _orchestrator(
            target_path, [_job(source, interval=3600.0)], manager, state
        )
        orchestrator.start()
        assert orchestrator.stop(timeout=5.0)
        orchestrator.start()
        assert orchestrator.state == OrchestratorState.IDLE
        orchestrator.stop(timeout=5.0)


class TestPreview:
    """Tests for dry-run planning."""

    def test_preview_does_not_transfer(self, source, target_path, manager, state) -> None:
        orchestrator = _orchestrator(target_path, [_job(source)], manager, state)

        manifest = orchestrator.preview("movies")

        assert manifest.budget == 700
        assert [e.item_id for e in manifest.fetches] == ["Alpha Movie.mkv", "Beta Movie.mkv"]
        assert not (target_path / "Movies").exists()

    def test_preview_budget_override(self, source, target_path, manager, state) -> None:
        orchestrator = _orchestrator(target_path, [_job(source)], manager, state)
        manifest = orchestrator.preview("movies", budget=200)
        assert manifest.planned_size == 200

    def test_unknown_job(self, source, target_path, manager, state) -> None:
        orchestrator = _orchestrator(target_path, [_job(source)], manager, state)
        with pytest.raises(ValidationError):
            orchestrator.preview("music")

    def test_destination(self, source, target_path, manager, state) -> None:
        orchestrator = _orchestrator(target_path, [_job(source)], manager, state)
        assert orchestrator.destination("movies") == target_path / "Movies"

    def test_status(self, source, target_path, manager, state) -> None:
        orchestrator = _orchestrator(target_path, [_job(source)], manager, state)
        status = orchestrator.status()
        assert status["target_id"] == "sd"
        assert status["jobs"] == ["movies"]
        assert status["progress"] is None
        assert status["last_sync"] == {"movies": None}
