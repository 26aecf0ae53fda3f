"""Chat router providing the support WebSocket channel and HTTP helpers.

This module provides:
    - WebSocket /ws/chat: Real-time support chat
    - GET /chat/rooms/{room_id}/messages: Paginated message history
    - GET /chat/presence/{user_id}: Online status of a user (agents only)

Handshake:
    The bearer token is taken from the ``token`` query parameter or the
    ``Authorization: Bearer`` header of the upgrade request. Authentication
    completes before the socket is accepted; on failure the socket is closed
    with code 1008 and the reason as close reason, and nothing else is sent.

Protocol Message Types (client -> server, JSON objects):
    - join-chat:    {roomId?}                      -> ack {success, roomId | error}
    - send-message: {roomId, content, attachments?} -> ack {success, message | error}
    - message-read: {roomId, messageIds}            -> no ack
    - get-rooms:    {}                              -> ack {success, rooms | error}

    Any frame may carry a ``requestId`` which is echoed in its ack:
    {type: "ack", event, requestId, success, ...}

Server pushes:
    - connected:    {userId, role} once, right after accept
    - chat-history: {roomId, messages} to the joining connection only
    - new-message:  {message} to every connection in the room
    - error:        {error} for frames that are not a known event
"""
import json
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ValidationError

from chatdesk.auth.service import AuthenticationError

from .access import ChatIdentity
from .gateway import ChatConnection, ChatGateway, get_gateway
from .schemas import Failure, JoinChatRequest, MessageReadRequest, SendMessageRequest

logger = logging.getLogger(__name__)

router = APIRouter()

# WebSocket close code for policy violations (RFC 6455)
POLICY_VIOLATION = 1008

INVALID_PAYLOAD = "Invalid request payload"

bearer_scheme = HTTPBearer(auto_error=False)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credential = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credential.strip():
        return None
    return credential.strip()


async def _ack(conn: ChatConnection, event: str, request_id, result: BaseModel) -> None:
    await conn.send_json({
        "type": "ack",
        "event": event,
        "requestId": request_id,
        **result.model_dump(mode="json"),
    })


async def _dispatch(gateway: ChatGateway, conn: ChatConnection, data: dict) -> None:
    """Handle one client frame. Expected failures become acks, never raise."""
    event = data.get("type")
    request_id = data.get("requestId")

    if event == "join-chat":
        try:
            request = JoinChatRequest.model_validate(data)
        except ValidationError:
            await _ack(conn, event, request_id, Failure(error=INVALID_PAYLOAD))
            return
        await _ack(conn, event, request_id, await gateway.join_chat(conn, request))
        return

    if event == "send-message":
        try:
            request = SendMessageRequest.model_validate(data)
        except ValidationError:
            await _ack(conn, event, request_id, Failure(error=INVALID_PAYLOAD))
            return
        await _ack(conn, event, request_id, await gateway.send_message(conn, request))
        return

    if event == "message-read":
        # Fire-and-forget: no ack, malformed receipts are ignored
        try:
            request = MessageReadRequest.model_validate(data)
        except ValidationError:
            logger.debug(f"[WS] Ignoring malformed message-read from {conn.identity.user_id}")
            return
        await gateway.mark_read(conn, request)
        return

    if event == "get-rooms":
        await _ack(conn, event, request_id, await gateway.get_rooms(conn))
        return

    await conn.send_json({"type": "error", "error": f"Unknown event type: {event}"})


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer token (alternative to Authorization header)"),
) -> None:
    """WebSocket endpoint for real-time support chat.

    Protocol Flow:
        1. Client connects with a token -> server verifies before accepting
           -> Server sends: {type: "connected", userId, role}
        2. Client sends: {type: "join-chat"} (customer) or
           {type: "join-chat", roomId} (agent)
           -> Server sends: {type: "chat-history", roomId, messages}
           -> Server sends: {type: "ack", success, roomId}
        3. Client sends: {type: "send-message", roomId, content}
           -> Server broadcasts: {type: "new-message", message}
           -> Server sends: {type: "ack", success, message}
        4. On disconnect -> connection removed from presence and room group
    """
    gateway = get_gateway()
    credential = token or _bearer_token(websocket.headers.get("authorization"))

    try:
        identity = await gateway.authenticate(credential)
    except AuthenticationError as e:
        logger.info(f"[WS] Connection refused: {e}")
        await websocket.close(code=POLICY_VIOLATION, reason=str(e))
        return
    except Exception:
        logger.exception("[WS] Authentication lookup failed")
        await websocket.close(code=POLICY_VIOLATION, reason="Authentication failed")
        return

    await websocket.accept()
    conn = gateway.open_connection(websocket, identity)

    try:
        await websocket.send_json({
            "type": "connected",
            "userId": identity.user_id,
            "role": identity.role.value,
        })

        # Main message loop
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                data = None
            if not isinstance(data, dict):
                await websocket.send_json({"type": "error", "error": "Invalid message format"})
                continue

            logger.debug("[WS] %s received: type=%s", identity.user_id, data.get("type", "?"))
            await _dispatch(gateway, conn, data)

    except WebSocketDisconnect:
        pass
    finally:
        gateway.close_connection(conn)


# =============================================================================
# HTTP endpoints
# =============================================================================


async def require_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> ChatIdentity:
    """Dependency resolving the bearer token to a chat identity."""
    token = credentials.credentials if credentials else None
    try:
        return await get_gateway().authenticate(token)
    except AuthenticationError as e:
        raise HTTPException(status_code=401, detail=str(e))


@router.get("/chat/rooms/{room_id}/messages")
async def get_message_history(
    room_id: str,
    before: Optional[datetime] = Query(None, description="Cursor: only messages created before this time"),
    limit: int = Query(50, ge=1, le=100, description="Number of messages to return"),
    identity: ChatIdentity = Depends(require_identity),
) -> dict:
    """Get paginated message history for a room.

    Clients fetch older messages by passing the ``createdAt`` of the oldest
    message they currently have as ``before``. Same access rule as sending.

    Returns:
        JSON with messages (oldest first) and hasMore boolean.
    """
    store = get_gateway().store
    room = await store.get_room(room_id)
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    if not identity.can_send_to(room):
        raise HTTPException(status_code=403, detail="Access denied")

    messages = await store.messages_page(room_id, before, limit)

    # Check if there are more messages before the oldest returned
    has_more = False
    if messages:
        older = await store.messages_page(room_id, messages[0].createdAt, 1)
        has_more = len(older) > 0

    return {
        "messages": [m.model_dump(mode="json") for m in messages],
        "hasMore": has_more,
    }


@router.get("/chat/presence/{user_id}")
async def get_presence(
    user_id: str,
    identity: ChatIdentity = Depends(require_identity),
) -> dict:
    """Report whether a user currently has a live chat connection."""
    if not identity.can_list_rooms:
        raise HTTPException(status_code=403, detail="Access denied: agents only")
    registry = get_gateway().registry
    return {
        "userId": user_id,
        "online": registry.is_online(user_id),
        "connections": len(registry.list_connections(user_id)),
    }
