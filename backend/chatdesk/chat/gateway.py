"""Support chat gateway: the state machine behind the /ws/chat channel.

The gateway owns everything a live connection touches:
    - Handshake authentication (token -> active directory user -> identity)
    - Room resolution on join-chat, with first-responder agent assignment
    - Room-scoped broadcast groups
    - Message validation, persistence and fan-out
    - Read receipts and the agent room list
    - Presence bookkeeping through the ConnectionRegistry

Every client operation returns a result model (success or Failure) instead of
raising: validation, authorization and not-found outcomes are expected, and
unexpected store errors are logged and reported as a generic failure so no
internal detail reaches the client.

Ordering:
    Sends into one room are serialized by a per-room lock held across
    persist + broadcast, so every subscriber sees messages in stored order.
    Joins take the same lock around history snapshot + subscription.
    Different rooms never wait on each other.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

from fastapi import WebSocket

from chatdesk.auth.service import AuthenticationError, TokenService
from chatdesk.config import AppSettings, get_config
from chatdesk.users.service import UserDirectory, UserRecord

from .access import ChatIdentity, identity_for
from .registry import ConnectionRegistry
from .schemas import (
    Failure,
    JoinChatRequest,
    JoinResult,
    JoinSuccess,
    Message,
    MessageReadRequest,
    RoomListing,
    RoomsResult,
    RoomsSuccess,
    SendMessageRequest,
    SendResult,
    SendSuccess,
    UserSummary,
    utcnow,
)
from .store import ChatStore
from .validation import (
    ALLOWED_URL_SCHEMES,
    MAX_ATTACHMENTS,
    MAX_CONTENT_LENGTH,
    filter_attachments,
    validate_content,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

# Messages replayed to a connection when it joins a room
HISTORY_LIMIT = 50

AUTH_REQUIRED = "Authentication required"
USER_UNAVAILABLE = "User not found or inactive"
ROOM_NOT_FOUND = "Room not found"
ACCESS_DENIED = "Access denied"
AGENTS_ONLY = "Access denied: agents only"
JOIN_UNRESOLVED = "Unable to join chat room"
JOIN_FAILED = "Failed to join chat"
SEND_FAILED = "Failed to send message"
ROOMS_FAILED = "Failed to get rooms"


class ChatConnection:
    """One accepted WebSocket plus the identity it authenticated as.

    Attributes:
        id: Server-generated connection id (registry member).
        identity: Verified identity, fixed for the connection's lifetime.
        room_id: Broadcast group the connection is subscribed to, if any.
    """

    def __init__(self, websocket: WebSocket, identity: ChatIdentity) -> None:
        self.id = str(uuid.uuid4())
        self.websocket = websocket
        self.identity = identity
        self.room_id: Optional[str] = None

    async def send_json(self, message: dict) -> None:
        await self.websocket.send_json(message)


class ChatGateway:
    """Connection lifecycle and event handling for support chat.

    Collaborators are injected so tests can run against in-memory DuckDB.
    """

    def __init__(
        self,
        store: ChatStore,
        users: UserDirectory,
        tokens: TokenService,
        registry: Optional[ConnectionRegistry] = None,
        *,
        history_limit: int = HISTORY_LIMIT,
        max_content_length: int = MAX_CONTENT_LENGTH,
        max_attachments: int = MAX_ATTACHMENTS,
        allowed_url_schemes: tuple = ALLOWED_URL_SCHEMES,
    ) -> None:
        self.store = store
        self.users = users
        self.tokens = tokens
        self.registry = registry or ConnectionRegistry()
        self.history_limit = history_limit
        self.max_content_length = max_content_length
        self.max_attachments = max_attachments
        self.allowed_url_schemes = tuple(allowed_url_schemes)

        # room_id -> connections subscribed to that room's broadcasts
        self._groups: Dict[str, List[ChatConnection]] = {}

        # room_id -> lock serializing persist + broadcast for that room, and
        # the number of tasks holding or waiting on it. Entries exist only
        # while in use.
        self._room_locks: Dict[str, asyncio.Lock] = {}
        self._room_lock_users: Dict[str, int] = {}

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def authenticate(self, token: Optional[str]) -> ChatIdentity:
        """Resolve a handshake credential to a chat identity.

        Raises:
            AuthenticationError: Missing token, invalid/expired token, unknown
                or inactive user, or a role that may not use chat.
        """
        if not token:
            raise AuthenticationError(AUTH_REQUIRED)

        verified = self.tokens.verify(token)
        user = await self.users.find_by_id(verified.user_id)
        if user is None or not user.is_active:
            logger.info(f"[Gateway] Refused connection for user {verified.user_id}: not found or inactive")
            raise AuthenticationError(USER_UNAVAILABLE)

        identity = identity_for(user.id, user.role, user.name)
        if identity is None:
            logger.warning(f"[Gateway] Refused connection for user {user.id}: role {user.role!r}")
            raise AuthenticationError(USER_UNAVAILABLE)
        return identity

    def open_connection(self, websocket: WebSocket, identity: ChatIdentity) -> ChatConnection:
        conn = ChatConnection(websocket, identity)
        self.registry.add(identity.user_id, conn.id)
        logger.info(f"[Gateway] User connected: {identity.user_id} ({identity.role.value}) conn={conn.id}")
        return conn

    def close_connection(self, conn: ChatConnection) -> None:
        """Forget a connection. Store state is never touched here."""
        self._leave_group(conn)
        self.registry.remove(conn.identity.user_id, conn.id)
        logger.info(f"[Gateway] User disconnected: {conn.identity.user_id} conn={conn.id}")

    # =========================================================================
    # join-chat
    # =========================================================================

    async def join_chat(self, conn: ChatConnection, request: JoinChatRequest) -> JoinResult:
        """Subscribe *conn* to its room and replay recent history to it alone.

        Snapshot, subscription and replay happen under the room lock, so every
        message is either in the replayed history or broadcast to *conn*
        after it, never both and never neither.
        """
        try:
            room = await conn.identity.resolve_room(self.store, request.roomId)
            if room is None:
                return Failure(error=JOIN_UNRESOLVED)

            async with self._room_lock(room.id):
                history = await self.store.recent_messages(room.id, self.history_limit)
                self._join_group(conn, room.id)
                await self._safe_send(conn, {
                    "type": "chat-history",
                    "roomId": room.id,
                    "messages": [m.model_dump(mode="json") for m in history],
                })
        except Exception:
            logger.exception(f"[Gateway] join-chat failed for {conn.identity.user_id}")
            return Failure(error=JOIN_FAILED)

        logger.info(f"[Gateway] {conn.identity.user_id} joined room {room.id} ({len(history)} messages replayed)")
        return JoinSuccess(roomId=room.id)

    # =========================================================================
    # send-message
    # =========================================================================

    async def send_message(self, conn: ChatConnection, request: SendMessageRequest) -> SendResult:
        """Validate, persist and broadcast one message."""
        identity = conn.identity

        error = validate_content(request.content, self.max_content_length)
        if error:
            return Failure(error=error)

        try:
            room = await self.store.get_room(request.roomId) if request.roomId else None
            if room is None:
                return Failure(error=ROOM_NOT_FOUND)
            if not identity.can_send_to(room):
                logger.warning(f"[Gateway] {identity.user_id} denied send to room {room.id}")
                return Failure(error=ACCESS_DENIED)

            # First responder claims the room before writing, so a losing
            # agent is denied instead of posting into someone else's room.
            if identity.claims_rooms and room.agentId is None:
                room = await self.store.assign_agent_if_unassigned(room.id, identity.user_id)
                if room is None:
                    return Failure(error=ROOM_NOT_FOUND)
                if not identity.can_send_to(room):
                    return Failure(error=ACCESS_DENIED)

            attachments = filter_attachments(
                request.attachments, self.max_attachments, self.allowed_url_schemes
            )

            async with self._room_lock(room.id):
                # Stamped under the lock so created_at order matches send order.
                message = Message(
                    roomId=room.id,
                    senderId=identity.user_id,
                    senderRole=identity.role,
                    content=request.content.strip(),
                    attachments=attachments,
                )
                await self.store.insert_message(message)
                try:
                    await self.store.touch_room(room.id, message.createdAt)
                except Exception:
                    logger.exception(f"[Gateway] Message {message.id} stored but room {room.id} activity not updated")
                await self.broadcast(
                    {"type": "new-message", "message": message.model_dump(mode="json")},
                    room.id,
                )
        except Exception:
            logger.exception(f"[Gateway] send-message failed for {identity.user_id}")
            return Failure(error=SEND_FAILED)

        logger.info(f"[Gateway] Message sent in room {room.id}: {message.content[:50]!r}")
        return SendSuccess(message=message)

    # =========================================================================
    # message-read
    # =========================================================================

    async def mark_read(self, conn: ChatConnection, request: MessageReadRequest) -> int:
        """Mark messages read on behalf of *conn*'s user. Never raises.

        Receipts for rooms the user may not send to are ignored.
        """
        if not request.roomId or not request.messageIds:
            return 0
        try:
            room = await self.store.get_room(request.roomId)
            if room is None or not conn.identity.can_send_to(room):
                logger.warning(f"[Gateway] {conn.identity.user_id} denied read receipt for room {request.roomId}")
                return 0
            updated = await self.store.mark_read(
                request.roomId, request.messageIds, conn.identity.user_id, utcnow()
            )
        except Exception:
            logger.exception(f"[Gateway] message-read failed for {conn.identity.user_id}")
            return 0
        logger.debug(f"[Gateway] {conn.identity.user_id} read {updated} message(s) in room {request.roomId}")
        return updated

    # =========================================================================
    # get-rooms
    # =========================================================================

    async def get_rooms(self, conn: ChatConnection) -> RoomsResult:
        """Open rooms with customer and agent display identity (agents only)."""
        if not conn.identity.can_list_rooms:
            return Failure(error=AGENTS_ONLY)
        try:
            rooms = await self.store.list_open_rooms()
            people = await self.users.get_many(
                [r.customerId for r in rooms] + [r.agentId for r in rooms if r.agentId]
            )
        except Exception:
            logger.exception(f"[Gateway] get-rooms failed for {conn.identity.user_id}")
            return Failure(error=ROOMS_FAILED)

        return RoomsSuccess(rooms=[
            RoomListing(
                **room.model_dump(),
                customer=_summary(people.get(room.customerId)),
                agent=_summary(people.get(room.agentId)) if room.agentId else None,
            )
            for room in rooms
        ])

    # =========================================================================
    # Broadcast groups
    # =========================================================================

    def group_size(self, room_id: str) -> int:
        return len(self._groups.get(room_id, []))

    def _join_group(self, conn: ChatConnection, room_id: str) -> None:
        if conn.room_id == room_id:
            return
        self._leave_group(conn)
        self._groups.setdefault(room_id, []).append(conn)
        conn.room_id = room_id

    def _leave_group(self, conn: ChatConnection) -> None:
        room_id = conn.room_id
        if room_id is None:
            return
        group = self._groups.get(room_id, [])
        if conn in group:
            group.remove(conn)
        if not group:
            self._groups.pop(room_id, None)
        conn.room_id = None

    @asynccontextmanager
    async def _room_lock(self, room_id: str) -> AsyncIterator[None]:
        """Hold the room's lock; the entry is dropped once nobody uses it."""
        lock = self._room_locks.get(room_id)
        if lock is None:
            lock = self._room_locks[room_id] = asyncio.Lock()
        self._room_lock_users[room_id] = self._room_lock_users.get(room_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._room_lock_users[room_id] - 1
            if remaining:
                self._room_lock_users[room_id] = remaining
            else:
                del self._room_lock_users[room_id]
                del self._room_locks[room_id]

    def active_room_locks(self) -> int:
        return len(self._room_locks)

    async def broadcast(self, message: dict, room_id: str) -> None:
        """Send *message* to every connection subscribed to *room_id*.

        Connections that fail are removed from the group.
        """
        connections = list(self._groups.get(room_id, []))
        if not connections:
            return

        results = await asyncio.gather(
            *[self._safe_send(conn, message) for conn in connections],
            return_exceptions=True
        )

        for conn, success in zip(connections, results):
            if success is False and conn.room_id == room_id:
                self._leave_group(conn)
                logger.debug(f"Removed dead connection {conn.id} from room {room_id}")

    async def _safe_send(self, conn: ChatConnection, message: dict) -> bool:
        try:
            await conn.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection {conn.id}: {e}")
            return False


def _summary(user: Optional[UserRecord]) -> Optional[UserSummary]:
    if user is None:
        return None
    return UserSummary(id=user.id, name=user.name, email=user.email)


def build_gateway(config: AppSettings) -> ChatGateway:
    """Create a gateway wired to the configured database and JWT secret."""
    chat = config.chat
    return ChatGateway(
        store=ChatStore(db_path=config.database.path),
        users=UserDirectory(db_path=config.database.path),
        tokens=TokenService(
            secret_key=config.secrets.jwt.secret_key,
            algorithm=config.secrets.jwt.algorithm,
            expire_minutes=config.auth.token_expire_minutes,
        ),
        history_limit=chat.history_limit,
        max_content_length=chat.max_content_length,
        max_attachments=chat.max_attachments,
        allowed_url_schemes=tuple(chat.allowed_url_schemes),
    )


_gateway: Optional[ChatGateway] = None


def get_gateway() -> ChatGateway:
    """Return the process gateway, building it from config on first use."""
    global _gateway
    if _gateway is None:
        _gateway = build_gateway(get_config())
    return _gateway


def set_gateway(gateway: Optional[ChatGateway]) -> None:
    global _gateway
    _gateway = gateway
