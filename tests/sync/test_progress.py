"""Tests for progress tracking."""

from offlinesync.sync.progress import ItemProgress, ProgressThrottle, ProgressTracker


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestProgressThrottle:
    """Tests for ProgressThrottle."""

    def test_rate_limited_per_key(self) -> None:
        clock = FakeClock()
        throttle = ProgressThrottle(interval=1.0, clock=clock)
        assert throttle.should_emit("a", 1, 10)
        assert not throttle.should_emit("a", 2, 10)
        assert throttle.should_emit("b", 1, 10)
        clock.now = 1.0
        assert throttle.should_emit("a", 3, 10)

    def test_completion_always_passes(self) -> None:
        throttle = ProgressThrottle(interval=100.0, clock=FakeClock())
        throttle.should_emit("a", 1, 10)
        assert throttle.should_emit("a", 10, 10)

    def test_forget(self) -> None:
        throttle = ProgressThrottle(interval=100.0, clock=FakeClock())
        throttle.should_emit("a", 1, 10)
        throttle.forget("a")
        assert throttle.should_emit("a", 2, 10)


class TestProgressTracker:
    """Tests for ProgressTracker."""

    def test_counts_in_flight_bytes(self) -> None:
        tracker = ProgressTracker()
        tracker.begin(items_planned=2, bytes_planned=300)
        tracker.item_progress("a", 0, 100)
        tracker.item_progress("a", 40, 100)

        data = tracker.to_dict()

        assert data["bytes_done"] == 40
        assert data["current"] == [
            {"item_id": "a", "bytes_done": 40, "bytes_total": 100, "percent": 40.0}
        ]

    def test_finished_items(self) -> None:
        tracker = ProgressTracker()
        tracker.begin(2, 300)
        tracker.item_progress("a", 0, 100)
        tracker.item_finished("a", 100)
        tracker.item_finished("b")

        data = tracker.to_dict()

        assert data["items_done"] == 2
        assert data["bytes_done"] == 100
        assert data["current"] == []

    def test_begin_resets(self) -> None:
        tracker = ProgressTracker()
        tracker.begin(1, 10)
        tracker.item_finished("a", 10)
        tracker.begin(5, 50)
        assert tracker.to_dict()["items_done"] == 0
        assert tracker.to_dict()["items_planned"] == 5

    def test_empty_item_is_complete(self) -> None:
        assert ItemProgress("a", 0, 0).percent == 100.0
