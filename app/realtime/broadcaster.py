"""
Room broadcast seam.

Both the gateway's socket handlers and the conversation service publish
through a ``Broadcaster``. The in-process implementation fans a frame out to
the registry's current subscribers of a room.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Protocol

from realtime.events import build_frame
from realtime.registry import Connection, ConnectionRegistry
from realtime.metrics import (
    broadcasts_total, websocket_messages_sent_total, websocket_send_failures_total
)

logger = logging.getLogger(__name__)


class Broadcaster(Protocol):
    """Publishes an event to every subscriber of a room."""

    async def emit(
        self,
        room: str,
        event: str,
        payload: dict,
        exclude: Optional[Connection] = None
    ) -> int:
        ...


class LocalBroadcaster:
    """
    Delivers events to connections held by a local ConnectionRegistry.

    Emits to the same room are serialized by a per-room lock so subscribers
    observe them in emit order. Nothing is ordered across rooms. Delivery is
    at most once per connection subscribed at send time; a failed send is
    logged and the connection is left to its own receive loop to clean up.
    """

    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry
        self._room_locks: Dict[str, asyncio.Lock] = {}
        # {room: emits holding or waiting for the room lock}
        self._room_lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _room_turn(self, room: str) -> AsyncIterator[None]:
        """Hold the room lock; the lock is dropped once no emit holds or awaits it."""
        lock = self._room_locks.get(room)
        if lock is None:
            lock = self._room_locks[room] = asyncio.Lock()
        self._room_lock_users[room] = self._room_lock_users.get(room, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._room_lock_users[room] -= 1
            if not self._room_lock_users[room]:
                del self._room_lock_users[room]
                del self._room_locks[room]

    async def emit(
        self,
        room: str,
        event: str,
        payload: dict,
        exclude: Optional[Connection] = None
    ) -> int:
        """
        Send ``event`` to every subscriber of ``room``.

        Args:
            room: Tenant id or conversation id
            event: Outbound event name
            payload: JSON-serializable event data
            exclude: Connection to skip (the originating socket)

        Returns:
            Number of connections the frame was sent to
        """
        event_name = getattr(event, "value", event)
        if not self.registry.subscribers(room):
            return 0

        frame = build_frame(event_name, payload)
        sent_count = 0

        async with self._room_turn(room):
            for connection in self.registry.subscribers(room):
                if connection.closed or connection is exclude:
                    continue
                try:
                    await connection.send(frame)
                    sent_count += 1
                    websocket_messages_sent_total.labels(event=event_name, instance="api").inc()
                except Exception as e:
                    websocket_send_failures_total.labels(event=event_name, instance="api").inc()
                    logger.error(
                        f"Error sending {event_name} to user {connection.user_id} "
                        f"in room {room}: {e}"
                    )

        broadcasts_total.labels(event=event_name, instance="api").inc()
        if sent_count > 0:
            logger.debug(f"Broadcast {event_name} to room {room}: {sent_count} connections")
        return sent_count
