"""
Realtime gateway.

Authenticates WebSocket connections, tracks their room membership and
dispatches inbound events through an exhaustive handler map. Every handler
returns a HandlerResult; a bad event is dropped and logged, it never tears
the connection down and no error frame is sent back.
"""
import asyncio
import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import AppError
from db.database import SessionLocal
from db.models import PresenceStatus
from realtime.broadcaster import Broadcaster, LocalBroadcaster
from realtime.events import (
    DropReason, HandlerResult, InboundEvent, MarkMessagesReadPayload, OutboundEvent
)
from realtime.metrics import (
    update_websocket_metrics, websocket_connections_total, websocket_disconnections_total,
    websocket_event_duration_seconds, websocket_events_received_total, websocket_handshakes_refused_total
)
from realtime.presence_notifier import PresenceNotifier
from realtime.registry import Connection, ConnectionRegistry
from services.identity import IdentityResolver
from services.membership import MembershipAuthority
from services.presence import PresenceStore

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, Any], Awaitable[HandlerResult]]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RealtimeGateway:
    """
    Owns the connection registry and the broadcaster of one process.

    Args:
        registry: Connection registry (a fresh one by default)
        broadcaster: Broadcast seam (a LocalBroadcaster over ``registry`` by default)
        session_factory: Callable returning a new SQLAlchemy session; one
            session is opened per store access
    """

    def __init__(
        self,
        registry: Optional[ConnectionRegistry] = None,
        broadcaster: Optional[Broadcaster] = None,
        session_factory: Callable[[], Session] = SessionLocal
    ):
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.broadcaster = broadcaster if broadcaster is not None else LocalBroadcaster(self.registry)
        self.presence_notifier = PresenceNotifier(self.broadcaster, self.registry)
        self.session_factory = session_factory

        self._handlers: Dict[InboundEvent, Handler] = {
            InboundEvent.JOIN_CONVERSATIONS: self._handle_join_conversations,
            InboundEvent.JOIN_CONVERSATION: self._handle_join_conversation,
            InboundEvent.LEAVE_CONVERSATION: self._handle_leave_conversation,
            InboundEvent.MARK_MESSAGES_READ: self._handle_mark_messages_read,
            InboundEvent.UPDATE_STATUS: self._handle_update_status,
        }
        missing = [event.value for event in InboundEvent if event not in self._handlers]
        if missing:
            raise RuntimeError(f"No handler registered for inbound events: {missing}")

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    # Connection lifecycle
    async def connect(self, websocket, token: str) -> Connection:
        """
        Authenticate, accept and register a connection.

        The credential is resolved before the socket is accepted; on failure
        the resolver's AuthenticationError / AuthorizationError propagates and
        nothing is registered.
        """
        try:
            with self._session() as db:
                identity = IdentityResolver(db).resolve(token)
        except AppError as e:
            websocket_handshakes_refused_total.labels(reason=e.error_code, instance="api").inc()
            raise

        await websocket.accept()
        connection = self.registry.register(Connection(websocket=websocket, identity=identity))
        websocket_connections_total.labels(instance="api").inc()

        last_active = _now_iso()
        try:
            with self._session() as db:
                snapshot = PresenceStore(db).mark_online(identity.user_id)
            last_active = snapshot.last_seen_at.isoformat()
        except Exception as e:
            logger.error(f"Failed to mark user {identity.user_id} online: {e}")

        await self.broadcaster.emit(
            connection.tenant_room,
            OutboundEvent.USER_ACTIVITY.value,
            {"userId": identity.user_id, "lastActiveAt": last_active, "status": PresenceStatus.ONLINE.value}
        )

        logger.info(
            f"User {identity.display_name} ({identity.user_id}) connected",
            extra={"user_id": identity.user_id, "connection_id": connection.connection_id}
        )
        return connection

    async def disconnect(self, connection: Connection, reason: str = "normal") -> None:
        """
        Tear down a connection. Idempotent.

        The connection leaves every room before anything is broadcast, then
        each conversation room it had joined gets ``user-offline`` and the
        tenant room gets ``user-activity`` with status offline.
        """
        if self.registry.unregister(connection) is None:
            return
        websocket_disconnections_total.labels(instance="api", reason=reason).inc()

        user_id = connection.user_id
        for room in sorted(connection.joined_rooms):
            try:
                await self.broadcaster.emit(
                    room,
                    OutboundEvent.USER_OFFLINE.value,
                    {"userId": user_id, "conversationId": room}
                )
            except Exception as e:
                logger.error(f"Failed to announce user {user_id} offline in room {room}: {e}")

        last_active = _now_iso()
        try:
            with self._session() as db:
                snapshot = PresenceStore(db).mark_offline(user_id)
            last_active = snapshot.last_seen_at.isoformat()
        except Exception as e:
            logger.error(f"Failed to mark user {user_id} offline: {e}")

        try:
            await self.broadcaster.emit(
                connection.tenant_room,
                OutboundEvent.USER_ACTIVITY.value,
                {"userId": user_id, "lastActiveAt": last_active, "status": PresenceStatus.OFFLINE.value}
            )
        except Exception as e:
            logger.error(f"Failed to announce user {user_id} activity: {e}")

        logger.info(
            f"User {connection.identity.display_name} ({user_id}) disconnected",
            extra={"user_id": user_id, "connection_id": connection.connection_id}
        )

    # Inbound dispatch
    async def dispatch(self, connection: Connection, frame: Any) -> HandlerResult:
        """
        Route one inbound frame ``{"event": name, "data": payload}`` to its handler.

        Returns:
            The handler's result, or a dropped result for closed connections,
            malformed frames, unknown events and handler exceptions
        """
        if connection.closed:
            return self._record("-", HandlerResult.dropped(DropReason.CONNECTION_CLOSED))

        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            return self._record("-", HandlerResult.dropped(DropReason.MALFORMED_PAYLOAD))

        try:
            event = InboundEvent(frame["event"])
        except ValueError:
            logger.debug(f"Unknown event {frame['event']!r} from user {connection.user_id}")
            return self._record("unknown", HandlerResult.dropped(DropReason.UNKNOWN_EVENT))

        started = time.perf_counter()
        try:
            result = await self._handlers[event](connection, frame.get("data"))
        except Exception as e:
            logger.exception(f"Error handling {event.value} for user {connection.user_id}: {e}")
            result = HandlerResult.dropped(DropReason.HANDLER_ERROR)
        websocket_event_duration_seconds.labels(event=event.value).observe(time.perf_counter() - started)

        return self._record(event.value, result)

    def _record(self, event_name: str, result: HandlerResult) -> HandlerResult:
        websocket_events_received_total.labels(
            event=event_name,
            result="accepted" if result.accepted else "dropped",
            reason=result.reason.value if result.reason else "",
            instance="api"
        ).inc()
        if not result.accepted:
            logger.debug(f"Dropped {event_name} event: {result.reason.value}")
        return result

    # Handlers
    async def _handle_join_conversations(self, connection: Connection, data: Any) -> HandlerResult:
        try:
            with self._session() as db:
                conversation_ids = MembershipAuthority(db).conversation_ids_for(connection.user_id)
        except Exception as e:
            logger.error(f"Error joining conversations for user {connection.user_id}: {e}")
            return HandlerResult.dropped(DropReason.STORE_ERROR)

        for conversation_id in conversation_ids:
            self.registry.join(connection, conversation_id)
        logger.info(
            f"User {connection.identity.display_name} joined {len(conversation_ids)} conversation rooms"
        )
        return HandlerResult.ok()

    async def _handle_join_conversation(self, connection: Connection, data: Any) -> HandlerResult:
        if not isinstance(data, str) or not data:
            return HandlerResult.dropped(DropReason.MALFORMED_PAYLOAD)
        conversation_id = data

        with self._session() as db:
            allowed = MembershipAuthority(db).is_participant(connection.user_id, conversation_id)
        if not allowed:
            logger.info(f"User {connection.user_id} is not a participant of {conversation_id}")
            return HandlerResult.dropped(DropReason.NOT_A_PARTICIPANT)

        self.registry.join(connection, conversation_id)
        await self.broadcaster.emit(
            conversation_id,
            OutboundEvent.USER_ONLINE.value,
            {
                "userId": connection.user_id,
                "displayName": connection.identity.display_name,
                "conversationId": conversation_id,
            },
            exclude=connection
        )
        return HandlerResult.ok()

    async def _handle_leave_conversation(self, connection: Connection, data: Any) -> HandlerResult:
        if not isinstance(data, str) or not data:
            return HandlerResult.dropped(DropReason.MALFORMED_PAYLOAD)
        conversation_id = data

        self.registry.leave(connection, conversation_id)
        await self.broadcaster.emit(
            conversation_id,
            OutboundEvent.USER_OFFLINE.value,
            {"userId": connection.user_id, "conversationId": conversation_id},
            exclude=connection
        )
        return HandlerResult.ok()

    async def _handle_mark_messages_read(self, connection: Connection, data: Any) -> HandlerResult:
        # Broadcast only: receipts are persisted by the HTTP read endpoint
        try:
            payload = MarkMessagesReadPayload.model_validate(data)
        except PydanticValidationError:
            return HandlerResult.dropped(DropReason.MALFORMED_PAYLOAD)

        with self._session() as db:
            allowed = MembershipAuthority(db).is_participant(connection.user_id, payload.conversation_id)
        if not allowed:
            return HandlerResult.dropped(DropReason.NOT_A_PARTICIPANT)
        if not payload.message_ids:
            return HandlerResult.dropped(DropReason.EMPTY_MESSAGE_IDS)

        await self.broadcaster.emit(
            payload.conversation_id,
            OutboundEvent.MESSAGES_READ.value,
            {
                "userId": connection.user_id,
                "conversationId": payload.conversation_id,
                "messageIds": payload.message_ids,
                "readAt": _now_iso(),
            },
            exclude=connection
        )
        return HandlerResult.ok()

    async def _handle_update_status(self, connection: Connection, data: Any) -> HandlerResult:
        status = PresenceStatus.parse(data)
        if status is None:
            return HandlerResult.dropped(DropReason.INVALID_STATUS)

        try:
            with self._session() as db:
                snapshot = PresenceStore(db).transition(connection.user_id, status)
        except Exception as e:
            logger.error(f"Error updating status for user {connection.user_id}: {e}")
            return HandlerResult.dropped(DropReason.STORE_ERROR)

        await self.presence_notifier.announce(
            snapshot,
            connection.identity.tenant_id,
            rooms=self.registry.rooms_for_user(connection.user_id),
            exclude=connection
        )
        return HandlerResult.ok()


    # Metrics
    async def metrics_monitor(self, interval_seconds: Optional[float] = None) -> None:
        """
        Background task refreshing the connection gauges.

        Dead sockets are detected by the server's transport-level ping/pong,
        which ends the receive loop; nothing here closes a connection.
        """
        interval_seconds = interval_seconds or settings.metrics_refresh_interval_seconds
        logger.info(f"Realtime metrics monitor started (interval={interval_seconds}s)")

        while True:
            await asyncio.sleep(interval_seconds)
            try:
                update_websocket_metrics(self.registry)
                logger.debug(
                    f"Realtime gauges refreshed: {self.registry.connection_count()} connections, "
                    f"{self.registry.user_count()} users"
                )
            except Exception as e:
                logger.error(f"Error refreshing realtime metrics: {e}")
