"""Notification channels for engine events.

This module provides:
- NotificationChannel: Protocol for a delivery channel
- ConsoleChannel: Logs events
- WebhookChannel: POSTs events as JSON with httpx
- NotificationDispatcher: Forwards selected bus events to channels on a
  delivery thread, so a slow endpoint never stalls the publisher
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Iterable, Sequence
from typing import TYPE_CHECKING, Protocol

import httpx

from offlinesync.core.errors import SyncError, classify_error
from offlinesync.sync.events import EventBus, EventType, SyncEvent

if TYPE_CHECKING:
    from offlinesync.core.config import NotificationConfig
    from offlinesync.sync.breaker import BreakerRegistry

logger = logging.getLogger(__name__)

# Events forwarded when the configuration does not name any
DEFAULT_EVENTS: tuple[EventType, ...] = (
    EventType.CYCLE_COMPLETED,
    EventType.CYCLE_FAILED,
    EventType.ITEM_FAILED,
    EventType.TARGET_ATTACHED,
    EventType.TARGET_DETACHED,
    EventType.BREAKER_STATE_CHANGED,
)

# Events waiting for delivery before new ones are dropped
DEFAULT_MAX_PENDING = 100

# Queue sentinel telling the delivery thread to exit
_STOP = None


class NotificationChannel(Protocol):
    """A destination for notifications."""

    name: str

    def send(self, event: SyncEvent) -> None: ...


def describe(event: SyncEvent) -> str:
    """One-line human description of an event."""
    data = event.data
    target = event.target_id or "-"
    if event.type in (EventType.CYCLE_COMPLETED, EventType.CYCLE_FAILED):
        results = data.get("results", [])
        fetched = sum(r.get("fetched", 0) for r in results)
        evicted = sum(r.get("evicted", 0) for r in results)
        errors = sum(len(r.get("errors", [])) for r in results)
        verb = "completed" if event.type == EventType.CYCLE_COMPLETED else "failed"
        return (
            f"[{target}] sync {verb}: {fetched} fetched, {evicted} evicted, {errors} errors"
        )
    if event.type == EventType.ITEM_FAILED:
        error = data.get("error", {})
        return f"[{target}] {data.get('action')} {data.get('item_id')} failed: {error.get('message')}"
    if event.type == EventType.BREAKER_STATE_CHANGED:
        return f"circuit {data.get('name')}: {data.get('old')} -> {data.get('new')}"
    return f"[{target}] {event.type.value}"


class ConsoleChannel:
    """Writes notifications to the log."""

    name = "console"

    def send(self, event: SyncEvent) -> None:
        level = logging.WARNING if event.type in (
            EventType.CYCLE_FAILED,
            EventType.ITEM_FAILED,
        ) else logging.INFO
        logger.log(level, describe(event))


class WebhookChannel:
    """POSTs each event as JSON to a URL.

    Deliveries go through the circuit breaker ``webhook:<url>`` when a
    registry is given, so a dead endpoint stops being hammered.
    """

    name = "webhook"

    def __init__(
        self,
        url: str,
        client: httpx.Client | None = None,
        timeout: float = 10.0,
        registry: BreakerRegistry | None = None,
    ) -> None:
        self._url = url
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)
        self._registry = registry

    @property
    def url(self) -> str:
        return self._url

    def _post(self, payload: dict[str, object]) -> None:
        response = self._client.post(self._url, json=payload)
        response.raise_for_status()

    def send(self, event: SyncEvent) -> None:
        """Deliver an event.

        Raises:
            SyncError: If the delivery failed.
        """
        payload = {"message": describe(event), "event": event.to_dict()}
        try:
            if self._registry is not None:
                self._registry.call(f"webhook:{self._url}", lambda: self._post(payload))
            else:
                self._post(payload)
        except SyncError:
            raise
        except Exception as e:
            raise classify_error(e, context={"url": self._url}) from e

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class NotificationDispatcher:
    """Subscribes to an EventBus and forwards events to channels.

    The bus subscriber only enqueues: delivery happens on a dedicated
    thread, since events are published from transfer workers. When the
    queue is full new events are dropped and counted. Channel failures
    are logged; they never reach the publisher.

    Usage:
        dispatcher = NotificationDispatcher([ConsoleChannel()])
        dispatcher.attach(bus)
        ...
        dispatcher.detach()
    """

    def __init__(
        self,
        channels: Sequence[NotificationChannel],
        events: Iterable[EventType] = DEFAULT_EVENTS,
        max_pending: int = DEFAULT_MAX_PENDING,
    ) -> None:
        self._channels = list(channels)
        self._events = frozenset(events)
        self._queue: queue.Queue[SyncEvent | None] = queue.Queue(maxsize=max(1, max_pending))
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._dropped = 0

    @property
    def channels(self) -> list[NotificationChannel]:
        return list(self._channels)

    @property
    def events(self) -> frozenset[EventType]:
        return self._events

    @property
    def dropped(self) -> int:
        """Events discarded because the delivery queue was full."""
        with self._lock:
            return self._dropped

    @classmethod
    def from_config(
        cls,
        config: NotificationConfig,
        registry: BreakerRegistry | None = None,
    ) -> NotificationDispatcher:
        channels: list[NotificationChannel] = []
        if config.console:
            channels.append(ConsoleChannel())
        if config.webhook_url:
            channels.append(WebhookChannel(config.webhook_url, registry=registry))
        events = [EventType(e) for e in config.events] if config.events else DEFAULT_EVENTS
        return cls(channels, events)

    def attach(self, bus: EventBus) -> None:
        """Start the delivery thread and subscribe to the bus."""
        with self._lock:
            if self._unsubscribe is not None:
                return
            self._thread = threading.Thread(
                target=self._deliver, name="Notifications", daemon=True
            )
            self._thread.start()
            self._unsubscribe = bus.subscribe(self._enqueue, *self._events)

    def detach(self, timeout: float = 10.0) -> None:
        """Unsubscribe, deliver what is queued, then close the channels."""
        with self._lock:
            unsubscribe, self._unsubscribe = self._unsubscribe, None
            thread, self._thread = self._thread, None
        if unsubscribe is not None:
            unsubscribe()
        if thread is not None:
            try:
                self._queue.put(_STOP, timeout=timeout)
            except queue.Full:
                logger.warning("Notification queue still full, delivery thread abandoned")
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Notification delivery still running after detach")
        for channel in self._channels:
            close = getattr(channel, "close", None)
            if callable(close):
                close()

    def flush(self) -> None:
        """Block until every queued event has been handed to the channels."""
        self._queue.join()

    def dispatch(self, event: SyncEvent) -> None:
        """Send one event to every channel, on the calling thread."""
        if event.type not in self._events:
            return
        for channel in self._channels:
            try:
                channel.send(event)
            except SyncError as e:
                logger.warning(f"Notification via {channel.name} failed: {e.message}")
            except Exception:
                logger.exception(f"Notification via {channel.name} failed")

    def _enqueue(self, event: SyncEvent) -> None:
        if event.type not in self._events:
            return
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            with self._lock:
                self._dropped += 1
            logger.warning(f"Notification queue full, {event.type.value} dropped")

    def _deliver(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    return
                self.dispatch(event)
            finally:
                self._queue.task_done()
