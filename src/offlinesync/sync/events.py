"""Engine events.

This module provides:
- EventType: Kinds of events the engine publishes
- SyncEvent: One published event
- EventBus: Thread-safe publish/subscribe hub

Subscribers run on the publishing thread. A failing subscriber is logged
and never affects the publisher or the other subscribers.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Kinds of engine events."""

    TARGET_ATTACHED = "target_attached"
    TARGET_DETACHED = "target_detached"
    TARGET_STATE_CHANGED = "target_state_changed"
    CYCLE_STARTED = "cycle_started"
    CYCLE_COMPLETED = "cycle_completed"
    CYCLE_FAILED = "cycle_failed"
    ITEM_FAILED = "item_failed"
    PROGRESS = "progress"
    BREAKER_STATE_CHANGED = "breaker_state_changed"


@dataclass(frozen=True)
class SyncEvent:
    """An event published on the bus."""

    type: EventType
    target_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "target_id": self.target_id,
            "data": self.data,
            "timestamp": self.timestamp,
        }


Subscriber = Callable[[SyncEvent], None]


class EventBus:
    """Fan-out of SyncEvents to subscribers.

    Usage:
        bus = EventBus()
        unsubscribe = bus.subscribe(print, EventType.CYCLE_COMPLETED)
        bus.publish(SyncEvent(EventType.CYCLE_COMPLETED, "sdcard"))
        unsubscribe()
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[tuple[Subscriber, frozenset[EventType] | None]] = []

    def subscribe(self, callback: Subscriber, *types: EventType) -> Callable[[], None]:
        """Register a subscriber.

        Args:
            callback: Called with each matching event.
            *types: Event types to receive (all when omitted).

        Returns:
            Function removing the subscription.
        """
        entry = (callback, frozenset(types) if types else None)
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def publish(self, event: SyncEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback, types in subscribers:
            if types is not None and event.type not in types:
                continue
            try:
                callback(event)
            except Exception:
                logger.exception(f"Event subscriber failed for {event.type.value}")

    def emit(self, event_type: EventType, target_id: str | None = None, **data: Any) -> None:
        """Build and publish an event."""
        self.publish(SyncEvent(event_type, target_id, dict(data)))
