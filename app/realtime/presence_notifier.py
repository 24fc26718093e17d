"""Fan-out of presence transitions."""
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from realtime.broadcaster import Broadcaster
from realtime.events import OutboundEvent
from realtime.registry import Connection, ConnectionRegistry
from services.presence import PresenceSnapshot

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> str:
    return (value or datetime.now(timezone.utc)).isoformat()


class PresenceNotifier:
    """
    Turns a presence transition into its two notifications:
    ``user-status-changed`` to each conversation room the user occupies and
    ``user-activity`` to the tenant room.
    """

    def __init__(self, broadcaster: Broadcaster, registry: ConnectionRegistry):
        self.broadcaster = broadcaster
        self.registry = registry

    async def announce(
        self,
        snapshot: PresenceSnapshot,
        tenant_id: str,
        rooms: Optional[Iterable[str]] = None,
        exclude: Optional[Connection] = None
    ) -> None:
        """
        Args:
            snapshot: Presence right after the transition
            tenant_id: Tenant room of the user
            rooms: Conversation rooms to notify; defaults to every room joined
                by any live connection of the user
            exclude: Originating connection, skipped in the conversation rooms
        """
        if rooms is None:
            rooms = self.registry.rooms_for_user(snapshot.user_id)
        updated_at = _iso(snapshot.last_seen_at)

        for room in sorted(rooms):
            await self.broadcaster.emit(
                room,
                OutboundEvent.USER_STATUS_CHANGED.value,
                {"userId": snapshot.user_id, "status": snapshot.status.value, "updatedAt": updated_at},
                exclude=exclude
            )

        await self.announce_activity(snapshot, tenant_id)

    async def announce_activity(self, snapshot: PresenceSnapshot, tenant_id: str) -> None:
        """Tenant-wide ``user-activity`` only; used when activity leaves the status unchanged."""
        await self.broadcaster.emit(
            tenant_id,
            OutboundEvent.USER_ACTIVITY.value,
            {
                "userId": snapshot.user_id,
                "lastActiveAt": _iso(snapshot.last_seen_at),
                "status": snapshot.status.value,
            }
        )
