"""Real-time delivery of queue events to WebSocket subscribers.

Lifecycle operations never talk to sockets directly. They collect events in
an ``EventOutbox`` while their transaction is open and flush it through an
``EventBroadcaster`` only after commit, so subscribers never see a change
that was rolled back. Delivery is fire-and-forget: failures are logged and
counted but never surface to the caller.
"""

import asyncio
import logging
from concurrent.futures import Future
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

from fastapi import WebSocket, status

from qms.core.metrics import metrics

logger = logging.getLogger(__name__)


def org_room(organization_id: int) -> str:
    return f"org:{organization_id}"


class EventBroadcaster(Protocol):
    def emit(self, room: str, event: str, payload: Dict[str, Any]) -> None:
        ...


class ConnectionManager:
    """Manages WebSocket connections, one channel per organization room."""

    MAX_CONNECTIONS_PER_CHANNEL = 1000

    def __init__(self):
        self.active_connections: Dict[str, List[WebSocket]] = {}
        self.connection_metadata: Dict[int, Dict[str, Any]] = {}

    async def connect(self, websocket: WebSocket, channel: str, user_id: Optional[int] = None) -> bool:
        """Accept a WebSocket into a channel.

        Returns False (after closing the socket) if the channel is full.
        """
        if len(self.active_connections.get(channel, [])) >= self.MAX_CONNECTIONS_PER_CHANNEL:
            logger.warning(f"WebSocket connection rejected: channel '{channel}' at capacity")
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return False

        await websocket.accept()
        self.active_connections.setdefault(channel, []).append(websocket)
        self.connection_metadata[id(websocket)] = {
            "connected_at": datetime.now(timezone.utc),
            "user_id": user_id,
            "channel": channel,
            "last_ping": datetime.now(timezone.utc),
        }
        metrics.ws_active_connections = self.get_connection_count()
        logger.debug(f"WebSocket connected to channel '{channel}', user_id={user_id}")
        return True

    def disconnect(self, websocket: WebSocket, channel: str):
        if websocket in self.active_connections.get(channel, []):
            self.active_connections[channel].remove(websocket)
            if not self.active_connections[channel]:
                del self.active_connections[channel]
        self.connection_metadata.pop(id(websocket), None)
        metrics.ws_active_connections = self.get_connection_count()
        logger.debug(f"WebSocket disconnected from channel '{channel}'")

    def update_ping(self, websocket: WebSocket):
        meta = self.connection_metadata.get(id(websocket))
        if meta is not None:
            meta["last_ping"] = datetime.now(timezone.utc)

    async def broadcast(self, message: Dict[str, Any], channel: str):
        """Send a message to every connection in a channel."""
        disconnected = []
        for connection in list(self.active_connections.get(channel, [])):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.debug(f"WebSocket send failed: {e}")
                disconnected.append(connection)

        for conn in disconnected:
            self.disconnect(conn, channel)

    def get_connection_count(self, channel: Optional[str] = None) -> int:
        if channel:
            return len(self.active_connections.get(channel, []))
        return sum(len(conns) for conns in self.active_connections.values())


class WebSocketBroadcaster:
    """Hands events from worker threads to the server's event loop.

    Sync route handlers run in a threadpool, so delivery is scheduled with
    ``run_coroutine_threadsafe`` onto the loop bound at startup.
    """

    def __init__(self, manager: ConnectionManager):
        self.manager = manager
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: Optional[asyncio.AbstractEventLoop]) -> None:
        self._loop = loop

    def emit(self, room: str, event: str, payload: Dict[str, Any]) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug(f"No event loop bound, dropping {event} for {room}")
            return

        message = {
            "event": event,
            "data": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        future = asyncio.run_coroutine_threadsafe(self.manager.broadcast(message, room), loop)
        future.add_done_callback(lambda f: self._on_delivered(f, room, event))

    @staticmethod
    def _on_delivered(future: Future, room: str, event: str) -> None:
        if future.cancelled():
            logger.warning(f"Broadcast of {event} to {room} was cancelled")
            metrics.record_broadcast_failure()
            return
        error = future.exception()
        if error is not None:
            logger.warning(f"Broadcast of {event} to {room} failed: {error}")
            metrics.record_broadcast_failure()


class EventOutbox:
    """Events recorded during a transaction, published after it commits."""

    def __init__(self):
        self._events: List[Tuple[str, str, Dict[str, Any]]] = []

    def add(self, organization_id: int, event: str, payload: Dict[str, Any]) -> None:
        self._events.append((org_room(organization_id), event, payload))

    def clear(self) -> None:
        self._events.clear()

    def __len__(self) -> int:
        return len(self._events)

    def flush(self, broadcaster: EventBroadcaster) -> int:
        """Emit pending events in order and return how many were accepted.

        A failing emit is logged and counted; the remaining events still go out.
        """
        events, self._events = self._events, []
        delivered = 0
        for room, event, payload in events:
            try:
                broadcaster.emit(room, event, payload)
            except Exception as e:
                logger.warning(f"Failed to emit {event} to {room}: {e}")
                metrics.record_broadcast_failure()
                continue
            metrics.record_queue_event(event)
            delivered += 1
        return delivered


ws_manager = ConnectionManager()
ws_broadcaster = WebSocketBroadcaster(ws_manager)
