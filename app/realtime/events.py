"""
Realtime event vocabulary.

Frames are JSON objects ``{"event": <name>, "data": <payload>}`` in both
directions.
"""
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field


class InboundEvent(str, Enum):
    """Events a client may send."""
    JOIN_CONVERSATIONS = "join-conversations"
    JOIN_CONVERSATION = "join-conversation"
    LEAVE_CONVERSATION = "leave-conversation"
    MARK_MESSAGES_READ = "mark-messages-read"
    UPDATE_STATUS = "update-status"


class OutboundEvent(str, Enum):
    """Events the server emits."""
    USER_ACTIVITY = "user-activity"
    USER_ONLINE = "user-online"
    USER_OFFLINE = "user-offline"
    USER_STATUS_CHANGED = "user-status-changed"
    MESSAGES_READ = "messages-read"
    NEW_MESSAGE = "new-message"
    MESSAGE_UPDATED = "message-updated"
    MESSAGE_DELETED = "message-deleted"
    REACTION_ADDED = "reaction-added"
    REACTION_REMOVED = "reaction-removed"
    TYPING_INDICATOR = "typing-indicator"
    CONVERSATION_CREATED = "conversation-created"


class DropReason(str, Enum):
    """Why an inbound event had no effect."""
    MALFORMED_PAYLOAD = "malformed_payload"
    UNKNOWN_EVENT = "unknown_event"
    NOT_A_PARTICIPANT = "not_a_participant"
    EMPTY_MESSAGE_IDS = "empty_message_ids"
    INVALID_STATUS = "invalid_status"
    STORE_ERROR = "store_error"
    HANDLER_ERROR = "handler_error"
    CONNECTION_CLOSED = "connection_closed"


@dataclass(frozen=True)
class HandlerResult:
    """Outcome of one inbound event: accepted, or dropped with a reason."""
    accepted: bool
    reason: Optional[DropReason] = None

    @classmethod
    def ok(cls) -> "HandlerResult":
        return cls(accepted=True)

    @classmethod
    def dropped(cls, reason: DropReason) -> "HandlerResult":
        return cls(accepted=False, reason=reason)


class MarkMessagesReadPayload(BaseModel):
    """Payload of ``mark-messages-read``."""
    conversation_id: str = Field(alias="conversationId", min_length=1)
    message_ids: List[str] = Field(alias="messageIds")


def build_frame(event: str, payload: dict) -> dict:
    """Wire frame for an outbound event."""
    return {"event": event, "data": payload}


__all__ = [
    "InboundEvent",
    "OutboundEvent",
    "DropReason",
    "HandlerResult",
    "MarkMessagesReadPayload",
    "build_frame",
]
