"""
Repository layer for database operations.
Provides high-level methods for common database queries and operations.

Single-row helpers commit immediately. Multi-row writes run inside
``Repository.transaction()`` and use the ``flush``-only variants so the
whole unit commits or rolls back together.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Tuple
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from db.models import (
    Tenant, User, Conversation, ConversationParticipant, Message, MessageRead,
    MessageReaction, TypingIndicator, UserRole, PresenceStatus, MessageType
)
from core.exceptions import ConflictError

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Repository:
    """Repository class for database operations."""

    def __init__(self, db: Session):
        """
        Initialize repository with database session.

        Args:
            db: SQLAlchemy database session
        """
        self.db = db

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Unit of work: commit on success, roll back on any error.

        Unique constraint violations are re-raised as ConflictError.
        """
        try:
            yield self.db
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.warning(f"Integrity error rolled back: {e.orig}")
            raise ConflictError("Resource already exists")
        except Exception:
            self.db.rollback()
            raise

    # Tenant operations
    def create_tenant_with_admin(
        self,
        name: str,
        slug: str,
        domain: Optional[str],
        admin_email: str,
        admin_password_hash: str,
        admin_display_name: str
    ) -> Tuple[Tenant, User]:
        """Create a tenant and its first admin user in one transaction."""
        with self.transaction():
            tenant = Tenant(name=name, slug=slug, domain=domain)
            self.db.add(tenant)
            self.db.flush()
            admin = User(
                tenant_id=tenant.id,
                email=admin_email.lower(),
                password_hash=admin_password_hash,
                display_name=admin_display_name,
                role=UserRole.ADMIN
            )
            self.db.add(admin)
        self.db.refresh(tenant)
        self.db.refresh(admin)
        return tenant, admin

    def get_tenant_by_id(self, tenant_id: str) -> Optional[Tenant]:
        return self.db.query(Tenant).filter(Tenant.id == tenant_id).first()

    # User operations
    def create_user(
        self,
        tenant_id: str,
        email: str,
        password_hash: str,
        display_name: str,
        role: UserRole = UserRole.MEMBER
    ) -> User:
        """Create a new user."""
        with self.transaction():
            user = User(
                tenant_id=tenant_id,
                email=email.lower(),
                password_hash=password_hash,
                display_name=display_name,
                role=role
            )
            self.db.add(user)
        self.db.refresh(user)
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        """Get user by email."""
        return self.db.query(User).filter(User.email == email).first()

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        """Get user by ID."""
        return self.db.query(User).filter(User.id == user_id).first()

    def get_users_by_ids(self, user_ids: List[str]) -> List[User]:
        if not user_ids:
            return []
        return self.db.query(User).filter(User.id.in_(user_ids)).all()

    def set_user_status(self, user: User, status: PresenceStatus, seen_at: datetime) -> User:
        """Persist a presence transition for a user."""
        user.online_status = status
        user.last_seen_at = seen_at
        self.db.commit()
        self.db.refresh(user)
        return user

    def get_users_by_status(self, tenant_id: str, statuses: List[PresenceStatus]) -> List[User]:
        """Active users of a tenant whose stored status is one of ``statuses``."""
        return self.db.query(User).filter(
            User.tenant_id == tenant_id,
            User.is_active == True,  # noqa: E712
            User.online_status.in_(statuses)
        ).order_by(User.display_name).all()

    # Conversation operations
    def add_conversation(
        self,
        tenant_id: str,
        created_by_id: str,
        name: Optional[str],
        is_group: bool,
        cross_tenant: bool
    ) -> Conversation:
        """Stage a conversation row (caller controls the transaction)."""
        conversation = Conversation(
            tenant_id=tenant_id,
            created_by_id=created_by_id,
            name=name,
            is_group=is_group,
            cross_tenant=cross_tenant
        )
        self.db.add(conversation)
        self.db.flush()
        return conversation

    def add_participant(self, conversation_id: str, user_id: str, role: str = "member") -> ConversationParticipant:
        """Stage a participant row (caller controls the transaction)."""
        participant = ConversationParticipant(
            conversation_id=conversation_id,
            user_id=user_id,
            role=role
        )
        self.db.add(participant)
        return participant

    def get_conversation_by_id(self, conversation_id: str) -> Optional[Conversation]:
        """Get a conversation that has not been soft-deleted."""
        return self.db.query(Conversation).filter(
            Conversation.id == conversation_id,
            Conversation.deleted_at.is_(None)
        ).first()

    def get_live_participant(self, conversation_id: str, user_id: str) -> Optional[ConversationParticipant]:
        return self.db.query(ConversationParticipant).filter(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id == user_id,
            ConversationParticipant.deleted_at.is_(None)
        ).first()

    def get_conversation_ids_for_user(self, user_id: str) -> List[str]:
        """Ids of live conversations where the user holds a live participant row."""
        rows = self.db.query(Conversation.id).join(
            ConversationParticipant,
            ConversationParticipant.conversation_id == Conversation.id
        ).filter(
            ConversationParticipant.user_id == user_id,
            ConversationParticipant.deleted_at.is_(None),
            Conversation.deleted_at.is_(None)
        ).all()
        return [row[0] for row in rows]

    def get_conversations_for_user(self, user_id: str, limit: int = 20, offset: int = 0) -> List[Conversation]:
        """Live conversations of a user, most recently active first."""
        return self.db.query(Conversation).join(
            ConversationParticipant,
            ConversationParticipant.conversation_id == Conversation.id
        ).filter(
            ConversationParticipant.user_id == user_id,
            ConversationParticipant.deleted_at.is_(None),
            Conversation.deleted_at.is_(None)
        ).order_by(Conversation.updated_at.desc()).limit(limit).offset(offset).all()

    def get_conversation_participants(self, conversation_id: str) -> List[User]:
        """Users holding a live participant row in the conversation."""
        return self.db.query(User).join(
            ConversationParticipant,
            ConversationParticipant.user_id == User.id
        ).filter(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.deleted_at.is_(None)
        ).order_by(User.display_name).all()

    # Message operations
    def create_message(
        self,
        conversation: Conversation,
        sender_id: str,
        message_text: str,
        message_type: MessageType = MessageType.TEXT,
        thread_id: Optional[str] = None,
        parent_id: Optional[str] = None
    ) -> Message:
        """Create a message and bump the conversation's updated_at."""
        with self.transaction():
            message = Message(
                conversation_id=conversation.id,
                sender_id=sender_id,
                message_text=message_text,
                message_type=message_type,
                thread_id=thread_id,
                parent_id=parent_id
            )
            self.db.add(message)
            conversation.updated_at = _now()
        self.db.refresh(message)
        return message

    def get_message_by_id(self, message_id: str) -> Optional[Message]:
        """Get a message that has not been soft-deleted."""
        return self.db.query(Message).filter(
            Message.id == message_id,
            Message.deleted_at.is_(None)
        ).first()

    def get_conversation_messages(
        self,
        conversation_id: str,
        limit: int = 50,
        offset: int = 0
    ) -> List[Message]:
        """Newest page of live messages, returned oldest first."""
        messages = self.db.query(Message).filter(
            Message.conversation_id == conversation_id,
            Message.deleted_at.is_(None)
        ).order_by(Message.created_at.desc()).limit(limit).offset(offset).all()
        return list(reversed(messages))

    def get_message_ids_in_conversation(self, conversation_id: str, message_ids: List[str]) -> List[str]:
        """Subset of ``message_ids`` that belong to the conversation and are live."""
        if not message_ids:
            return []
        rows = self.db.query(Message.id).filter(
            Message.conversation_id == conversation_id,
            Message.id.in_(message_ids),
            Message.deleted_at.is_(None)
        ).all()
        return [row[0] for row in rows]

    def update_message_text(self, message: Message, message_text: str) -> Message:
        with self.transaction():
            message.message_text = message_text
            message.edited = True
            message.edited_at = _now()
        self.db.refresh(message)
        return message

    def soft_delete_message(self, message: Message) -> Message:
        with self.transaction():
            message.deleted_at = _now()
        self.db.refresh(message)
        return message

    # Reaction operations
    def get_reaction(self, message_id: str, user_id: str, emoji: str) -> Optional[MessageReaction]:
        return self.db.query(MessageReaction).filter(
            MessageReaction.message_id == message_id,
            MessageReaction.user_id == user_id,
            MessageReaction.emoji == emoji
        ).first()

    def add_reaction(self, message_id: str, user_id: str, emoji: str) -> MessageReaction:
        with self.transaction():
            reaction = MessageReaction(message_id=message_id, user_id=user_id, emoji=emoji)
            self.db.add(reaction)
        self.db.refresh(reaction)
        return reaction

    def remove_reaction(self, reaction: MessageReaction) -> None:
        with self.transaction():
            self.db.delete(reaction)

    # Read receipt operations
    def record_reads(self, message_ids: List[str], user_id: str, read_at: datetime) -> int:
        """
        Record read receipts, skipping messages the user already read.

        Returns:
            Number of new receipts written
        """
        if not message_ids:
            return 0
        already_read = {
            row[0] for row in self.db.query(MessageRead.message_id).filter(
                MessageRead.user_id == user_id,
                MessageRead.message_id.in_(message_ids)
            ).all()
        }
        new_ids = [message_id for message_id in message_ids if message_id not in already_read]
        with self.transaction():
            for message_id in new_ids:
                self.db.add(MessageRead(message_id=message_id, user_id=user_id, read_at=read_at))
        return len(new_ids)

    # Typing operations
    def upsert_typing(self, conversation_id: str, user_id: str, is_typing: bool) -> TypingIndicator:
        """Insert or update the typing row of a user in a conversation."""
        with self.transaction():
            indicator = self.db.query(TypingIndicator).filter(
                TypingIndicator.conversation_id == conversation_id,
                TypingIndicator.user_id == user_id
            ).first()
            if indicator is None:
                indicator = TypingIndicator(conversation_id=conversation_id, user_id=user_id)
                self.db.add(indicator)
            indicator.is_typing = is_typing
            indicator.updated_at = _now()
        self.db.refresh(indicator)
        return indicator
