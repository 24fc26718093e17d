"""
Presence store.

Durable coarse status and last-seen timestamp per user. The stored value is
advisory: it is the last transition applied, and several concurrent
connections of one user collapse to that single value.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
from sqlalchemy.orm import Session
from core.exceptions import NotFoundError, ValidationError
from db.models import PresenceStatus, User
from db.repository import Repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PresenceSnapshot:
    """Presence of one user right after a read or a transition."""
    user_id: str
    display_name: str
    status: PresenceStatus
    last_seen_at: datetime
    changed: bool = True

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "displayName": self.display_name,
            "status": self.status.value,
            "lastSeenAt": self.last_seen_at.isoformat() if self.last_seen_at else None,
        }


def _snapshot(user: User, seen_at: Optional[datetime], changed: bool = True) -> PresenceSnapshot:
    return PresenceSnapshot(
        user_id=user.id,
        display_name=user.display_name,
        status=user.online_status,
        last_seen_at=seen_at if seen_at is not None else user.last_seen_at,
        changed=changed
    )


class PresenceStore:
    """Reads and writes user presence through the repository."""

    def __init__(self, db: Session):
        self.repository = Repository(db)

    def _load(self, user_id: str) -> User:
        user = self.repository.get_user_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def get(self, user_id: str, tenant_id: Optional[str] = None) -> PresenceSnapshot:
        """Current presence; users of another tenant than ``tenant_id`` are reported as not found."""
        user = self._load(user_id)
        if tenant_id is not None and user.tenant_id != tenant_id:
            raise NotFoundError("User not found")
        return _snapshot(user, None, changed=False)

    def transition(self, user_id: str, status: PresenceStatus) -> PresenceSnapshot:
        """Apply a status and refresh last_seen_at."""
        user = self._load(user_id)
        previous = user.online_status
        now = datetime.now(timezone.utc)
        self.repository.set_user_status(user, status, now)
        logger.debug(f"Presence of user {user_id}: {previous.value} -> {status.value}")
        return _snapshot(user, now, changed=previous != status)

    def mark_online(self, user_id: str) -> PresenceSnapshot:
        return self.transition(user_id, PresenceStatus.ONLINE)

    def mark_offline(self, user_id: str) -> PresenceSnapshot:
        return self.transition(user_id, PresenceStatus.OFFLINE)

    def touch(self, user_id: str) -> PresenceSnapshot:
        """
        Record activity (message send and the like).

        Activity always means online; ``changed`` tells the caller whether
        the stored status actually moved.
        """
        return self.transition(user_id, PresenceStatus.ONLINE)

    def update_status(self, user_id: str, raw_status) -> PresenceSnapshot:
        """
        Explicit status update requested over HTTP.

        Raises:
            ValidationError: ``raw_status`` is not one of the four states
        """
        status = PresenceStatus.parse(raw_status)
        if status is None:
            allowed = ", ".join(s.value for s in PresenceStatus)
            raise ValidationError(f"Invalid status. Must be one of: {allowed}")
        return self.transition(user_id, status)

    def online_users(self, tenant_id: str) -> List[PresenceSnapshot]:
        """Users of a tenant that are not offline."""
        users = self.repository.get_users_by_status(
            tenant_id, [PresenceStatus.ONLINE, PresenceStatus.AWAY, PresenceStatus.BUSY]
        )
        return [_snapshot(user, None, changed=False) for user in users]

    def users_by_status(self, tenant_id: str, raw_status) -> List[PresenceSnapshot]:
        status = PresenceStatus.parse(raw_status)
        if status is None:
            raise ValidationError("Invalid status")
        users = self.repository.get_users_by_status(tenant_id, [status])
        return [_snapshot(user, None, changed=False) for user in users]
