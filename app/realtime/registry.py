"""
Connection registry for live WebSocket connections.

Tracks every live connection and the rooms it has joined.
A room is either a tenant id (every connection of the tenant) or a
conversation id (connections that passed the membership check).

The registry is process-local and owned by one gateway instance; tests build
their own. Mutations are plain dict/set operations with no awaits, so a
connection is never half-registered when another task runs.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4

from services.identity import Identity

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class Connection:
    """One live socket and its room state. Never persisted."""
    websocket: Any
    identity: Identity
    connection_id: str = field(default_factory=lambda: str(uuid4()))
    joined_rooms: Set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=_now)
    closed: bool = False

    @property
    def user_id(self) -> str:
        return self.identity.user_id

    @property
    def tenant_room(self) -> str:
        return self.identity.tenant_room

    async def send(self, frame: dict) -> None:
        await self.websocket.send_json(frame)


class ConnectionRegistry:
    """
    Manages live connections and their room subscriptions.

    Features:
    - Several connections per user (devices/tabs)
    - Tenant room joined at registration
    - Conversation rooms joined/left on request
    - Idempotent unregister that empties every room first
    """

    def __init__(self):
        # {connection_id: Connection}
        self.connections: Dict[str, Connection] = {}

        # {room: {connection_id}}
        self.rooms: Dict[str, Set[str]] = defaultdict(set)

        # {user_id: {connection_id}}
        self.user_connections: Dict[str, Set[str]] = defaultdict(set)

        logger.info("ConnectionRegistry initialized")

    def register(self, connection: Connection) -> Connection:
        """Track a connection and subscribe it to its tenant room."""
        self.connections[connection.connection_id] = connection
        self.user_connections[connection.user_id].add(connection.connection_id)
        self.rooms[connection.tenant_room].add(connection.connection_id)

        logger.info(
            f"User {connection.user_id} registered connection {connection.connection_id} "
            f"(total connections: {len(self.user_connections[connection.user_id])})"
        )
        return connection

    def unregister(self, connection: Connection) -> Optional[Connection]:
        """
        Mark a connection closed and drop it from every room.

        Returns:
            The connection if it was registered, None on repeated calls
        """
        connection.closed = True
        if self.connections.pop(connection.connection_id, None) is None:
            return None

        self._discard(connection.tenant_room, connection.connection_id)
        for room in connection.joined_rooms:
            self._discard(room, connection.connection_id)

        user_ids = self.user_connections.get(connection.user_id)
        if user_ids is not None:
            user_ids.discard(connection.connection_id)
            if not user_ids:
                del self.user_connections[connection.user_id]

        logger.info(
            f"User {connection.user_id} unregistered connection {connection.connection_id} "
            f"(remaining connections: {len(self.user_connections.get(connection.user_id, ()))})"
        )
        return connection

    def _discard(self, room: str, connection_id: str) -> None:
        members = self.rooms.get(room)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self.rooms[room]

    def join(self, connection: Connection, room: str) -> None:
        if connection.closed:
            return
        self.rooms[room].add(connection.connection_id)
        connection.joined_rooms.add(room)
        logger.debug(f"User {connection.user_id} joined room {room}")

    def leave(self, connection: Connection, room: str) -> None:
        self._discard(room, connection.connection_id)
        connection.joined_rooms.discard(room)
        logger.debug(f"User {connection.user_id} left room {room}")

    def subscribers(self, room: str) -> List[Connection]:
        """Live connections currently subscribed to a room."""
        return [
            self.connections[connection_id]
            for connection_id in list(self.rooms.get(room, ()))
            if connection_id in self.connections
        ]

    def is_subscribed(self, connection: Connection, room: str) -> bool:
        return connection.connection_id in self.rooms.get(room, ())

    def rooms_for_user(self, user_id: str) -> Set[str]:
        """Conversation rooms joined by any connection of the user."""
        rooms: Set[str] = set()
        for connection_id in self.user_connections.get(user_id, ()):
            connection = self.connections.get(connection_id)
            if connection is not None:
                rooms.update(connection.joined_rooms)
        return rooms

    def get_user_connections(self, user_id: str) -> List[Connection]:
        return [
            self.connections[connection_id]
            for connection_id in self.user_connections.get(user_id, ())
            if connection_id in self.connections
        ]

    def connection_count(self) -> int:
        return len(self.connections)

    def user_count(self) -> int:
        return len(self.user_connections)

    def subscription_count(self) -> int:
        return sum(len(c.joined_rooms) for c in self.connections.values())
