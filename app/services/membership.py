"""
Room membership authority.

A user may read from and write to a conversation iff a live (non-deleted)
participant row links them. There is no role check on top of membership.
"""
import logging
from typing import List
from sqlalchemy.orm import Session
from core.audit_logger import audit_logger
from core.exceptions import AuthorizationError, NotFoundError
from db.models import Conversation
from db.repository import Repository

logger = logging.getLogger(__name__)


class MembershipAuthority:
    """Answers "is this user a participant of conversation X"."""

    def __init__(self, db: Session):
        self.repository = Repository(db)

    def is_participant(self, user_id: str, conversation_id: str) -> bool:
        if not conversation_id or not isinstance(conversation_id, str):
            return False
        return self.repository.get_live_participant(conversation_id, user_id) is not None

    def conversation_ids_for(self, user_id: str) -> List[str]:
        """Ids of live conversations the user participates in."""
        return self.repository.get_conversation_ids_for_user(user_id)

    def require_participant(self, user_id: str, conversation_id: str) -> Conversation:
        """
        Guard for HTTP operations on a conversation.

        Returns:
            The conversation

        Raises:
            NotFoundError: conversation absent or soft-deleted
            AuthorizationError: caller is not a participant
        """
        conversation = self.repository.get_conversation_by_id(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        if not self.is_participant(user_id, conversation_id):
            audit_logger.log_authorization_denied(
                user_id, f"conversation:{conversation_id}", "access", "Not a participant"
            )
            raise AuthorizationError("Not authorized to access this conversation")
        return conversation

    def participants_with_status(self, conversation_id: str) -> List[dict]:
        """Participants of a conversation with their stored presence."""
        return [
            {
                "userId": user.id,
                "displayName": user.display_name,
                "email": user.email,
                "status": user.online_status.value,
                "lastSeenAt": user.last_seen_at.isoformat() if user.last_seen_at else None,
            }
            for user in self.repository.get_conversation_participants(conversation_id)
        ]
