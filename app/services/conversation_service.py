"""
Conversation and message service.

Every write is persisted first through the repository and broadcast second
through the Broadcaster. A broadcast failure is logged and swallowed: it never
rolls back a committed write and the caller still sees success.

Write-path broadcasts go to every subscriber of the room, including the
actor's own connections.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from core.exceptions import AuthorizationError, NotFoundError, ValidationError
from db.models import Conversation, Message, MessageReaction, MessageType
from db.repository import Repository
from realtime.broadcaster import Broadcaster
from realtime.events import OutboundEvent
from realtime.presence_notifier import PresenceNotifier
from services.identity import Identity
from services.membership import MembershipAuthority
from services.presence import PresenceStore

logger = logging.getLogger(__name__)

MAX_EMOJI_LENGTH = 10


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_message(message: Message) -> dict:
    sender = message.sender
    return {
        "id": message.id,
        "conversationId": message.conversation_id,
        "senderId": message.sender_id,
        "messageText": message.message_text,
        "messageType": message.message_type.value,
        "edited": message.edited,
        "editedAt": _iso(message.edited_at),
        "threadId": message.thread_id,
        "parentId": message.parent_id,
        "createdAt": _iso(message.created_at),
        "sender": {
            "id": sender.id,
            "email": sender.email,
            "displayName": sender.display_name,
        } if sender else None,
    }


def serialize_reaction(reaction: MessageReaction) -> dict:
    return {
        "id": reaction.id,
        "messageId": reaction.message_id,
        "userId": reaction.user_id,
        "emoji": reaction.emoji,
        "createdAt": _iso(reaction.created_at),
        "user": {
            "id": reaction.user.id,
            "displayName": reaction.user.display_name,
        } if reaction.user else None,
    }


def serialize_conversation(conversation: Conversation, participants) -> dict:
    return {
        "id": conversation.id,
        "name": conversation.name,
        "isGroup": conversation.is_group,
        "crossTenant": conversation.cross_tenant,
        "createdById": conversation.created_by_id,
        "createdAt": _iso(conversation.created_at),
        "updatedAt": _iso(conversation.updated_at),
        "participants": [
            {
                "id": user.id,
                "email": user.email,
                "displayName": user.display_name,
                "status": user.online_status.value,
            }
            for user in participants
        ],
    }


class ConversationService:
    """
    Transactional conversation/message writes followed by best-effort broadcast.

    Args:
        db: SQLAlchemy session for this unit of work
        broadcaster: Broadcast seam shared with the realtime gateway
        presence_notifier: Announces presence changes caused by activity
    """

    def __init__(
        self,
        db: Session,
        broadcaster: Broadcaster,
        presence_notifier: Optional[PresenceNotifier] = None
    ):
        self.db = db
        self.repository = Repository(db)
        self.membership = MembershipAuthority(db)
        self.presence = PresenceStore(db)
        self.broadcaster = broadcaster
        self.presence_notifier = presence_notifier

    async def _emit_safely(self, room: str, event: OutboundEvent, payload: dict) -> None:
        try:
            await self.broadcaster.emit(room, event.value, payload)
        except Exception as e:
            logger.error(f"Broadcast of {event.value} to room {room} failed: {e}")

    def _load_own_message(self, identity: Identity, message_id: str, action: str) -> Message:
        message = self.repository.get_message_by_id(message_id)
        if message is None:
            raise NotFoundError("Message not found")
        if message.sender_id != identity.user_id:
            raise AuthorizationError(f"You can only {action} your own messages")
        return message

    @staticmethod
    def _clean_text(text: Optional[str]) -> str:
        if text is None or not text.strip():
            raise ValidationError("Message text is required")
        return text.strip()

    # Conversations
    async def create_conversation(
        self,
        identity: Identity,
        name: Optional[str],
        participant_ids: List[str],
        is_group: bool = False,
        cross_tenant: bool = False
    ) -> dict:
        """
        Create a conversation with the creator plus ``participant_ids``.

        Raises:
            ValidationError: no other participant, unknown participants, or a
                participant from another tenant without ``cross_tenant``
        """
        other_ids = [pid for pid in dict.fromkeys(participant_ids) if pid != identity.user_id]
        if not other_ids:
            raise ValidationError("At least one other participant is required")

        users = self.repository.get_users_by_ids(other_ids)
        if len(users) != len(other_ids):
            raise ValidationError("One or more participants not found")
        if not cross_tenant and any(user.tenant_id != identity.tenant_id for user in users):
            raise ValidationError("Participants must belong to the same tenant")

        with self.repository.transaction():
            conversation = self.repository.add_conversation(
                tenant_id=identity.tenant_id,
                created_by_id=identity.user_id,
                name=name,
                is_group=is_group or len(other_ids) > 1,
                cross_tenant=cross_tenant
            )
            self.repository.add_participant(conversation.id, identity.user_id, role="admin")
            for user in users:
                self.repository.add_participant(conversation.id, user.id)
        self.db.refresh(conversation)

        participants = self.repository.get_conversation_participants(conversation.id)
        data = serialize_conversation(conversation, participants)
        logger.info(
            f"Conversation {conversation.id} created by {identity.user_id} "
            f"with {len(participants)} participants"
        )

        tenant_rooms = {identity.tenant_id} | {user.tenant_id for user in users}
        for room in sorted(tenant_rooms):
            await self._emit_safely(room, OutboundEvent.CONVERSATION_CREATED, {"conversation": data})
        return data

    async def list_conversations(self, identity: Identity, page: int = 1, limit: int = 20) -> List[dict]:
        conversations = self.repository.get_conversations_for_user(
            identity.user_id, limit=limit, offset=(page - 1) * limit
        )
        return [
            serialize_conversation(c, self.repository.get_conversation_participants(c.id))
            for c in conversations
        ]

    # Messages
    async def get_messages(
        self,
        identity: Identity,
        conversation_id: str,
        page: int = 1,
        limit: int = 50
    ) -> List[dict]:
        """Live messages of a conversation, oldest first within the page."""
        self.membership.require_participant(identity.user_id, conversation_id)
        messages = self.repository.get_conversation_messages(
            conversation_id, limit=limit, offset=(page - 1) * limit
        )
        return [serialize_message(m) for m in messages]

    async def send_message(
        self,
        identity: Identity,
        conversation_id: str,
        text: Optional[str],
        message_type: str = MessageType.TEXT.value,
        thread_id: Optional[str] = None,
        parent_id: Optional[str] = None
    ) -> dict:
        conversation = self.membership.require_participant(identity.user_id, conversation_id)
        try:
            kind = MessageType(message_type)
        except ValueError:
            raise ValidationError("Invalid message type")
        message_text = self._clean_text(text)

        if parent_id:
            parent = self.repository.get_message_by_id(parent_id)
            if parent is None or parent.conversation_id != conversation_id:
                raise NotFoundError("Parent message not found")
            thread_id = thread_id or parent.thread_id or parent.id

        message = self.repository.create_message(
            conversation,
            sender_id=identity.user_id,
            message_text=message_text,
            message_type=kind,
            thread_id=thread_id,
            parent_id=parent_id
        )
        data = serialize_message(message)
        logger.info(f"Message {message.id} sent in conversation {conversation_id}")

        await self._record_activity(identity)
        await self._emit_safely(conversation_id, OutboundEvent.NEW_MESSAGE, {"message": data})
        return data

    async def _record_activity(self, identity: Identity) -> None:
        """
        Sending counts as activity. The tenant always hears the new
        lastActiveAt; conversation rooms hear only a real status change.
        """
        try:
            snapshot = self.presence.touch(identity.user_id)
        except Exception as e:
            logger.error(f"Failed to record activity for user {identity.user_id}: {e}")
            return
        if self.presence_notifier is None:
            return
        try:
            if snapshot.changed:
                await self.presence_notifier.announce(snapshot, identity.tenant_id)
            else:
                await self.presence_notifier.announce_activity(snapshot, identity.tenant_id)
        except Exception as e:
            logger.error(f"Failed to announce presence of user {identity.user_id}: {e}")

    async def edit_message(self, identity: Identity, message_id: str, text: Optional[str]) -> dict:
        message = self._load_own_message(identity, message_id, "edit")
        message = self.repository.update_message_text(message, self._clean_text(text))

        await self._emit_safely(message.conversation_id, OutboundEvent.MESSAGE_UPDATED, {
            "message": {
                "id": message.id,
                "messageText": message.message_text,
                "edited": message.edited,
                "editedAt": _iso(message.edited_at),
            }
        })
        return serialize_message(message)

    async def delete_message(self, identity: Identity, message_id: str) -> dict:
        message = self._load_own_message(identity, message_id, "delete")
        conversation_id = message.conversation_id
        self.repository.soft_delete_message(message)
        logger.info(f"Message {message_id} deleted by {identity.user_id}")

        await self._emit_safely(conversation_id, OutboundEvent.MESSAGE_DELETED, {"messageId": message_id})
        return {"messageId": message_id}

    async def toggle_reaction(self, identity: Identity, message_id: str, emoji: str) -> dict:
        """
        Add the reaction, or remove it if the user already reacted with ``emoji``.

        Returns:
            ``{"action": "added", "reaction": ...}`` or ``{"action": "removed", ...}``
        """
        if not emoji or len(emoji) > MAX_EMOJI_LENGTH:
            raise ValidationError("Invalid emoji")
        message = self.repository.get_message_by_id(message_id)
        if message is None:
            raise NotFoundError("Message not found")
        self.membership.require_participant(identity.user_id, message.conversation_id)

        existing = self.repository.get_reaction(message_id, identity.user_id, emoji)
        if existing is not None:
            self.repository.remove_reaction(existing)
            await self._emit_safely(message.conversation_id, OutboundEvent.REACTION_REMOVED, {
                "messageId": message_id,
                "userId": identity.user_id,
                "emoji": emoji,
            })
            return {"action": "removed", "messageId": message_id, "emoji": emoji}

        reaction = self.repository.add_reaction(message_id, identity.user_id, emoji)
        data = serialize_reaction(reaction)
        await self._emit_safely(message.conversation_id, OutboundEvent.REACTION_ADDED, {
            "messageId": message_id,
            "reaction": data,
        })
        return {"action": "added", "reaction": data}

    # Read receipts and typing
    async def mark_messages_read(self, identity: Identity, conversation_id: str, message_ids: List[str]) -> dict:
        self.membership.require_participant(identity.user_id, conversation_id)
        if not message_ids:
            raise ValidationError("messageIds must not be empty")

        valid_ids = self.repository.get_message_ids_in_conversation(conversation_id, list(dict.fromkeys(message_ids)))
        read_at = datetime.now(timezone.utc)
        recorded = self.repository.record_reads(valid_ids, identity.user_id, read_at)

        if valid_ids:
            await self._emit_safely(conversation_id, OutboundEvent.MESSAGES_READ, {
                "userId": identity.user_id,
                "conversationId": conversation_id,
                "messageIds": valid_ids,
                "readAt": read_at.isoformat(),
            })
        return {"messageIds": valid_ids, "recorded": recorded, "readAt": read_at.isoformat()}

    async def set_typing(self, identity: Identity, conversation_id: str, is_typing: bool) -> dict:
        self.membership.require_participant(identity.user_id, conversation_id)
        self.repository.upsert_typing(conversation_id, identity.user_id, is_typing)

        payload = {
            "conversationId": conversation_id,
            "userId": identity.user_id,
            "displayName": identity.display_name,
            "isTyping": is_typing,
        }
        await self._emit_safely(conversation_id, OutboundEvent.TYPING_INDICATOR, payload)
        return payload
