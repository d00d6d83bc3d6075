"""Tests for the engine event bus."""

from unittest.mock import MagicMock

from offlinesync.sync.events import EventBus, EventType, SyncEvent


class TestEventBus:
    """Tests for EventBus."""

    def test_subscribe_all(self) -> None:
        bus = EventBus()
        received = []
        bus.subscribe(received.append)
        bus.emit(EventType.CYCLE_STARTED, "sd", job="music")
        assert received[0].type == EventType.CYCLE_STARTED
        assert received[0].data == {"job": "music"}

    def test_type_filter(self) -> None:
        bus = EventBus()
        callback = MagicMock()
        bus.subscribe(callback, EventType.ITEM_FAILED)
        bus.emit(EventType.PROGRESS, "sd")
        callback.assert_not_called()
        bus.emit(EventType.ITEM_FAILED, "sd")
        callback.assert_called_once()

    def test_unsubscribe(self) -> None:
        bus = EventBus()
        callback = MagicMock()
        unsubscribe = bus.subscribe(callback)
        unsubscribe()
        unsubscribe()
        bus.emit(EventType.CYCLE_STARTED)
        callback.assert_not_called()

    def test_failing_subscriber_isolated(self) -> None:
        """One broken subscriber does not stop delivery to the others."""
        bus = EventBus()
        good = MagicMock()
        bus.subscribe(MagicMock(side_effect=RuntimeError("boom")))
        bus.subscribe(good)
        bus.emit(EventType.CYCLE_COMPLETED, "sd")
        good.assert_called_once()


class TestSyncEvent:
    """Tests for SyncEvent."""

    def test_to_dict(self) -> None:
        event = SyncEvent(EventType.TARGET_ATTACHED, "sd", {"path": "/m"}, timestamp=1.0)
        assert event.to_dict() == {
            "type": "target_attached",
            "target_id": "sd",
            "data": {"path": "/m"},
            "timestamp": 1.0,
        }
