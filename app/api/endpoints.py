"""
API endpoints for conversations, messages, user status and the realtime socket.

Every HTTP write goes through ConversationService, which persists first and
then broadcasts through the same Broadcaster the WebSocket gateway uses.
"""
import json
import logging
from typing import Any
from fastapi import APIRouter, Depends, Query, WebSocket, status
from sqlalchemy.orm import Session

from api.dependencies import (
    client_ip, get_conversation_service, get_current_identity, get_db, get_gateway
)
from api.schemas import (
    ApiResponse, ConversationCreate, MarkReadRequest, MessageCreate, MessageUpdate,
    ReactionRequest, StatusUpdateRequest, TypingRequest
)
from core.audit_logger import audit_logger
from core.exceptions import AuthenticationError, AuthorizationError
from core.security import extract_bearer_token
from realtime.gateway import RealtimeGateway
from services.conversation_service import ConversationService
from services.identity import Identity
from services.membership import MembershipAuthority
from services.presence import PresenceStore

logger = logging.getLogger(__name__)

# Create routers
conversations_router = APIRouter()
messages_router = APIRouter()
users_router = APIRouter()
websocket_router = APIRouter()

# WebSocket close codes for refused handshakes
WS_CLOSE_AUTHENTICATION = 4001
WS_CLOSE_AUTHORIZATION = 4003


def decode_frame(message: dict) -> Any:
    """
    JSON payload of a received socket message.

    Binary and non-JSON text frames decode to None, which the gateway drops
    as malformed while the connection stays open.
    """
    text = message.get("text")
    if text is None:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


# Conversation Endpoints
@conversations_router.post("", response_model=ApiResponse, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    request: ConversationCreate,
    identity: Identity = Depends(get_current_identity),
    service: ConversationService = Depends(get_conversation_service)
):
    """
    Create a conversation. The caller is added as a participant.

    Participants must belong to the caller's tenant unless ``crossTenant`` is
    set. Emits ``conversation-created`` to the tenant room.
    """
    conversation = await service.create_conversation(
        identity,
        name=request.name,
        participant_ids=request.participant_ids,
        is_group=request.is_group,
        cross_tenant=request.cross_tenant
    )
    return ApiResponse(message="Conversation created successfully", data={"conversation": conversation})


@conversations_router.get("", response_model=ApiResponse)
async def list_conversations(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    identity: Identity = Depends(get_current_identity),
    service: ConversationService = Depends(get_conversation_service)
):
    conversations = await service.list_conversations(identity, page=page, limit=limit)
    return ApiResponse(data={"conversations": conversations, "page": page, "limit": limit})


@conversations_router.get("/{conversation_id}/messages", response_model=ApiResponse)
async def get_conversation_messages(
    conversation_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    identity: Identity = Depends(get_current_identity),
    service: ConversationService = Depends(get_conversation_service)
):
    """Messages of a conversation, oldest first within the page. Participants only."""
    messages = await service.get_messages(identity, conversation_id, page=page, limit=limit)
    return ApiResponse(data={"messages": messages, "page": page, "limit": limit})


@conversations_router.post(
    "/{conversation_id}/messages", response_model=ApiResponse, status_code=status.HTTP_201_CREATED
)
async def send_message(
    conversation_id: str,
    request: MessageCreate,
    identity: Identity = Depends(get_current_identity),
    service: ConversationService = Depends(get_conversation_service)
):
    """
    Send a message. Emits ``new-message`` to the conversation room, the
    sender's own connections included.
    """
    message = await service.send_message(
        identity,
        conversation_id,
        text=request.message_text,
        message_type=request.message_type,
        thread_id=request.thread_id,
        parent_id=request.parent_id
    )
    return ApiResponse(message="Message sent successfully", data={"message": message})


@conversations_router.post("/{conversation_id}/read", response_model=ApiResponse)
async def mark_messages_read(
    conversation_id: str,
    request: MarkReadRequest,
    identity: Identity = Depends(get_current_identity),
    service: ConversationService = Depends(get_conversation_service)
):
    """Record read receipts and emit ``messages-read``."""
    result = await service.mark_messages_read(identity, conversation_id, request.message_ids)
    return ApiResponse(data=result)


@conversations_router.post("/{conversation_id}/typing", response_model=ApiResponse)
async def set_typing(
    conversation_id: str,
    request: TypingRequest,
    identity: Identity = Depends(get_current_identity),
    service: ConversationService = Depends(get_conversation_service)
):
    result = await service.set_typing(identity, conversation_id, request.is_typing)
    return ApiResponse(data=result)


@conversations_router.get("/{conversation_id}/participants", response_model=ApiResponse)
def get_participants(
    conversation_id: str,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db)
):
    """Participants of a conversation with their presence."""
    membership = MembershipAuthority(db)
    membership.require_participant(identity.user_id, conversation_id)
    return ApiResponse(data={"participants": membership.participants_with_status(conversation_id)})


# Message Endpoints
@messages_router.put("/{message_id}", response_model=ApiResponse)
async def edit_message(
    message_id: str,
    request: MessageUpdate,
    identity: Identity = Depends(get_current_identity),
    service: ConversationService = Depends(get_conversation_service)
):
    """Edit own message. Emits ``message-updated``."""
    message = await service.edit_message(identity, message_id, request.message_text)
    return ApiResponse(message="Message updated successfully", data={"message": message})


@messages_router.delete("/{message_id}", response_model=ApiResponse)
async def delete_message(
    message_id: str,
    identity: Identity = Depends(get_current_identity),
    service: ConversationService = Depends(get_conversation_service)
):
    """Soft-delete own message. Emits ``message-deleted``."""
    result = await service.delete_message(identity, message_id)
    return ApiResponse(message="Message deleted successfully", data=result)


@messages_router.post("/{message_id}/reactions", response_model=ApiResponse)
async def toggle_reaction(
    message_id: str,
    request: ReactionRequest,
    identity: Identity = Depends(get_current_identity),
    service: ConversationService = Depends(get_conversation_service)
):
    """Add the reaction, or remove it when the caller already reacted with that emoji."""
    result = await service.toggle_reaction(identity, message_id, request.emoji)
    message = "Reaction added successfully" if result["action"] == "added" else "Reaction removed"
    return ApiResponse(message=message, data=result)


# User Status Endpoints
@users_router.get("/online", response_model=ApiResponse)
def get_online_users(identity: Identity = Depends(get_current_identity), db: Session = Depends(get_db)):
    """Users of the caller's tenant that are not offline."""
    users = PresenceStore(db).online_users(identity.tenant_id)
    return ApiResponse(data={"users": [u.to_dict() for u in users]})


@users_router.put("/me/status", response_model=ApiResponse)
async def update_my_status(
    request: StatusUpdateRequest,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    gateway: RealtimeGateway = Depends(get_gateway)
):
    """
    Explicit presence update.

    Raises:
        ValidationError: 400 when ``status`` is not online/away/busy/offline
    """
    snapshot = PresenceStore(db).update_status(identity.user_id, request.status)
    try:
        await gateway.presence_notifier.announce(snapshot, identity.tenant_id)
    except Exception as e:
        logger.error(f"Failed to announce status of user {identity.user_id}: {e}")
    return ApiResponse(message="Status updated successfully", data=snapshot.to_dict())


@users_router.get("/{user_id}/status", response_model=ApiResponse)
def get_user_status(
    user_id: str,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db)
):
    """Presence of a user of the caller's tenant."""
    user = PresenceStore(db).get(user_id, tenant_id=identity.tenant_id)
    return ApiResponse(data=user.to_dict())


# WebSocket Endpoint
@websocket_router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, gateway: RealtimeGateway = Depends(get_gateway)):
    """
    Realtime endpoint.

    The bearer credential is read from the ``Authorization`` header of the
    handshake. Frames are ``{"event": <name>, "data": <payload>}`` both ways.

    Close codes:
        - 4001: Authentication failed (missing, invalid or expired token)
        - 4003: Authorization failed (deactivated account)
        - 1000: Normal closure
    """
    token = extract_bearer_token(websocket.headers.get("authorization"))
    try:
        connection = await gateway.connect(websocket, token)
    except AuthenticationError as e:
        logger.warning(f"WebSocket authentication failed: {e.message}")
        audit_logger.log_credential_rejected("websocket", client_ip(websocket), e.message)
        await websocket.close(code=WS_CLOSE_AUTHENTICATION, reason=e.message)
        return
    except AuthorizationError as e:
        logger.warning(f"WebSocket authorization failed: {e.message}")
        audit_logger.log_credential_rejected("websocket", client_ip(websocket), e.message, deactivated=True)
        await websocket.close(code=WS_CLOSE_AUTHORIZATION, reason=e.message)
        return

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.debug(f"WebSocket closed by client for user {connection.user_id}")
                break
            await gateway.dispatch(connection, decode_frame(message))
    finally:
        await gateway.disconnect(connection)
