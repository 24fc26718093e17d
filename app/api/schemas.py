"""
Pydantic schemas for request/response validation.
Defines all data transfer objects (DTOs) for the API.

Field names follow the camelCase wire format; Python code uses the
snake_case attribute names.
"""
from typing import Any, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# Authentication Schemas
class LoginRequest(CamelModel):
    """
    Email/password login.

    Example:
        ```json
        {"email": "admin@demo.local", "password": "password123"}
        ```
    """
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1)


class UserResponse(CamelModel):
    id: str
    tenant_id: str = Field(..., alias="tenantId")
    email: str
    display_name: str = Field(..., alias="displayName")
    role: str
    is_active: bool = Field(..., alias="isActive")
    online_status: str = Field(..., alias="onlineStatus")
    last_seen_at: Optional[str] = Field(None, alias="lastSeenAt")


class LoginResponse(CamelModel):
    """Issued access token and the logged-in user."""
    token: str
    token_type: str = Field("Bearer", alias="tokenType")
    expires_at: str = Field(..., alias="expiresAt")
    user: UserResponse


# Conversation Schemas
class ConversationCreate(CamelModel):
    """
    Create a conversation. The caller is always added as a participant.

    Example:
        ```json
        {"name": "Project Team", "participantIds": ["<user-id>"], "isGroup": true}
        ```
    """
    name: Optional[str] = Field(None, max_length=100)
    participant_ids: List[str] = Field(..., alias="participantIds", min_length=1)
    is_group: bool = Field(False, alias="isGroup")
    cross_tenant: bool = Field(False, alias="crossTenant")


class MessageCreate(CamelModel):
    message_text: str = Field(..., alias="messageText", min_length=1, max_length=10000)
    message_type: Literal["text", "file"] = Field("text", alias="messageType")
    thread_id: Optional[str] = Field(None, alias="threadId")
    parent_id: Optional[str] = Field(None, alias="parentId")


class MessageUpdate(CamelModel):
    message_text: str = Field(..., alias="messageText", min_length=1, max_length=10000)


class ReactionRequest(CamelModel):
    emoji: str = Field(..., min_length=1, max_length=10)


class MarkReadRequest(CamelModel):
    message_ids: List[str] = Field(..., alias="messageIds", min_length=1)


class TypingRequest(CamelModel):
    is_typing: bool = Field(..., alias="isTyping")


class StatusUpdateRequest(CamelModel):
    """Explicit presence update; validated against the four states by the presence store."""
    status: str


# Envelope
class ApiResponse(CamelModel):
    """Success envelope; errors use ``{"success": false, "message", "errorCode"}``."""
    success: bool = True
    message: Optional[str] = None
    data: Optional[Any] = None
