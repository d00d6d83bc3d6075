"""WebSocket status stream.

This module provides:
- StatusHub: Tracks observer connections and forwards engine events
- /ws/status: Pushes status snapshots periodically and on request

Architecture:
    EventBus (worker threads) ──► StatusHub ──ws──► Observers (dashboards, CLI)
                                      ▲
                               SyncService.status()

Message format (server -> observer):
    {"type": "status", "status": {...}}
    {"type": "event", "event": {...}}

Any text sent by the observer triggers an immediate status push.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from offlinesync.sync.events import EventBus, EventType, SyncEvent

logger = logging.getLogger(__name__)


class StatusHub:
    """Fan-out of engine events to connected observers.

    Events are published from engine threads; they are handed to the
    event loop the hub was bound to, never sent from the publishing thread.
    """

    def __init__(self) -> None:
        self._connections: set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def bind(self, bus: EventBus, loop: asyncio.AbstractEventLoop) -> None:
        """Start forwarding bus events (progress excluded) on a loop."""
        self._loop = loop
        types = [t for t in EventType if t != EventType.PROGRESS]
        self._unsubscribe = bus.subscribe(self.on_event, *types)

    def unbind(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._loop = None

    def on_event(self, event: SyncEvent) -> None:
        """EventBus subscriber, called from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed() or not self._connections:
            return
        message = {"type": "event", "event": event.to_dict()}
        asyncio.run_coroutine_threadsafe(self.broadcast(message), loop)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.add(websocket)
        logger.info("Status observer connected")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._connections.discard(websocket)
        logger.info("Status observer disconnected")

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Send a message to every observer, dropping dead connections."""
        async with self._lock:
            disconnected = []
            for ws in self._connections:
                try:
                    if ws.client_state == WebSocketState.CONNECTED:
                        await ws.send_json(message)
                except Exception:
                    disconnected.append(ws)

            for ws in disconnected:
                self._connections.discard(ws)


# WebSocket router
router = APIRouter(tags=["websocket"])


@router.websocket("/ws/status")
async def websocket_status(websocket: WebSocket) -> None:
    """Stream status snapshots to an observer.

    Args:
        websocket: The WebSocket connection.
    """
    service = websocket.app.state.service
    interval: float = websocket.app.state.status_interval
    hub: StatusHub | None = getattr(websocket.app.state, "hub", None)

    if hub is not None:
        await hub.connect(websocket)
    else:
        await websocket.accept()

    try:
        while True:
            await websocket.send_json({"type": "status", "status": service.status().to_dict()})
            # Wait for the next tick, or an observer message asking for a push
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(websocket.receive_text(), timeout=interval)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.exception(f"Error in status WebSocket: {e}")
    finally:
        if hub is not None:
            await hub.disconnect(websocket)
