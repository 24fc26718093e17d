"""Services package initialization."""
from services.identity import Identity, IdentityResolver
from services.membership import MembershipAuthority
from services.presence import PresenceStore, PresenceSnapshot

__all__ = ["Identity", "IdentityResolver", "MembershipAuthority", "PresenceStore", "PresenceSnapshot"]
