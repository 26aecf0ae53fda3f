"""DuckDB-backed Room Store and Message Store for support chat.

Database Schema:
    chat_rooms table:
        - id: Room identifier (UUID string)
        - customer_id: Owning customer
        - agent_id: Assigned agent, NULL until the first agent responds
        - status: 'open' or 'closed'
        - open_customer_id: customer_id while open, NULL otherwise (UNIQUE)
        - last_message_at / created_at / updated_at: UTC timestamps

    chat_messages table:
        - id: Message identifier (UUID string)
        - seq: Global insertion counter, breaks created_at ties
        - room_id, sender_id, sender_role, content
        - attachments: JSON array of {type, url}
        - status: 'sent', 'delivered' or 'read'
        - created_at / delivered_at / read_at: UTC timestamps

The UNIQUE constraint on open_customer_id is what guarantees one open room
per customer; callers treat OpenRoomExistsError as "someone else created it".
Agent assignment is a conditional UPDATE so the first writer wins.

Concurrency:
    Every call runs in the default executor on its own cursor (a DuckDB
    connection duplicate), so store calls are genuine suspension points for
    the event loop. Single statements are atomic; nothing spans two tables.
    Repeatable room updates retry once when DuckDB reports a write conflict.

Usage:
    store = ChatStore(db_path=":memory:")
    room = await store.create_room("customer-1")
    await store.insert_message(message)
"""
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Sequence, TypeVar

import duckdb

from .schemas import Attachment, Message, MessageStatus, Room, RoomStatus, UserRole, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CREATE_ROOMS = """
CREATE TABLE IF NOT EXISTS chat_rooms (
    id               VARCHAR PRIMARY KEY,
    customer_id      VARCHAR NOT NULL,
    agent_id         VARCHAR,
    status           VARCHAR NOT NULL DEFAULT 'open',
    open_customer_id VARCHAR UNIQUE,
    last_message_at  TIMESTAMP,
    created_at       TIMESTAMP NOT NULL,
    updated_at       TIMESTAMP NOT NULL
)
"""

_CREATE_MESSAGES_SEQ = "CREATE SEQUENCE IF NOT EXISTS chat_messages_seq START 1"

_CREATE_MESSAGES = """
CREATE TABLE IF NOT EXISTS chat_messages (
    id           VARCHAR PRIMARY KEY,
    seq          BIGINT NOT NULL DEFAULT nextval('chat_messages_seq'),
    room_id      VARCHAR NOT NULL,
    sender_id    VARCHAR NOT NULL,
    sender_role  VARCHAR NOT NULL,
    content      VARCHAR NOT NULL,
    attachments  VARCHAR NOT NULL DEFAULT '[]',
    status       VARCHAR NOT NULL DEFAULT 'sent',
    created_at   TIMESTAMP NOT NULL,
    delivered_at TIMESTAMP,
    read_at      TIMESTAMP
)
"""

_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_chat_rooms_status ON chat_rooms(status)",
    "CREATE INDEX IF NOT EXISTS idx_chat_messages_room ON chat_messages(room_id, created_at)",
)

_ROOM_COLUMNS = "id, customer_id, agent_id, status, last_message_at, created_at"
_MESSAGE_COLUMNS = (
    "id, room_id, sender_id, sender_role, content, attachments, status, "
    "created_at, delivered_at, read_at"
)


class StoreError(Exception):
    """Raised when the chat database cannot complete an operation."""


class OpenRoomExistsError(StoreError):
    """Raised when a customer already has an open room."""

    def __init__(self, customer_id: str) -> None:
        super().__init__(f"Customer {customer_id} already has an open room")
        self.customer_id = customer_id


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    """DuckDB TIMESTAMP is naive; store everything as naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def _row_to_room(row: Sequence[Any]) -> Room:
    return Room(
        id=row[0],
        customerId=row[1],
        agentId=row[2],
        status=RoomStatus(row[3]),
        lastMessageAt=_from_db(row[4]),
        createdAt=_from_db(row[5]),
    )


def _row_to_message(row: Sequence[Any]) -> Message:
    return Message(
        id=row[0],
        roomId=row[1],
        senderId=row[2],
        senderRole=UserRole(row[3]),
        content=row[4],
        attachments=[Attachment(**a) for a in json.loads(row[5] or "[]")],
        status=MessageStatus(row[6]),
        createdAt=_from_db(row[7]),
        deliveredAt=_from_db(row[8]),
        readAt=_from_db(row[9]),
    )


class ChatStore:
    """Persistent rooms and messages in a single DuckDB database.

    Attributes:
        db_path: DuckDB file path, or ":memory:" for a private in-memory DB.
    """

    def __init__(self, db_path: str = "chatdesk.duckdb") -> None:
        self.db_path = db_path
        self._conn = duckdb.connect(db_path)
        self._initialize_db()
        logger.info("[ChatStore] Initialized with db=%s", db_path)

    def _initialize_db(self) -> None:
        """Create tables, sequence and indexes. Idempotent."""
        self._conn.execute(_CREATE_ROOMS)
        self._conn.execute(_CREATE_MESSAGES_SEQ)
        self._conn.execute(_CREATE_MESSAGES)
        for statement in _INDEXES:
            self._conn.execute(statement)

    def close(self) -> None:
        self._conn.close()

    async def _run(self, fn: Callable[[duckdb.DuckDBPyConnection], T]) -> T:
        """Run *fn* with a private cursor in the default executor."""

        def call() -> T:
            cursor = self._conn.cursor()
            try:
                return fn(cursor)
            finally:
                cursor.close()

        return await asyncio.get_running_loop().run_in_executor(None, call)

    async def _run_retrying(self, fn: Callable[[duckdb.DuckDBPyConnection], T]) -> T:
        """Like _run, retrying once when a concurrent write to the same row conflicts.

        Only for statements that are safe to repeat.
        """
        try:
            return await self._run(fn)
        except duckdb.TransactionException as exc:
            logger.info("[ChatStore] Write conflict, retrying once: %s", exc)
            return await self._run(fn)

    # =========================================================================
    # Rooms
    # =========================================================================

    async def get_room(self, room_id: str) -> Optional[Room]:
        def query(cur: duckdb.DuckDBPyConnection) -> Optional[Room]:
            row = cur.execute(
                f"SELECT {_ROOM_COLUMNS} FROM chat_rooms WHERE id = ?", [room_id]
            ).fetchone()
            return _row_to_room(row) if row else None

        return await self._run(query)

    async def find_open_room(self, customer_id: str) -> Optional[Room]:
        def query(cur: duckdb.DuckDBPyConnection) -> Optional[Room]:
            row = cur.execute(
                f"SELECT {_ROOM_COLUMNS} FROM chat_rooms "
                "WHERE customer_id = ? AND status = 'open'",
                [customer_id],
            ).fetchone()
            return _row_to_room(row) if row else None

        return await self._run(query)

    async def create_room(self, customer_id: str) -> Room:
        """Insert a new open, unassigned room for *customer_id*.

        Raises:
            OpenRoomExistsError: The customer already has an open room.
        """
        room = Room(customerId=customer_id)

        def insert(cur: duckdb.DuckDBPyConnection) -> None:
            cur.execute(
                """
                INSERT INTO chat_rooms
                  (id, customer_id, agent_id, status, open_customer_id,
                   last_message_at, created_at, updated_at)
                VALUES (?, ?, NULL, 'open', ?, NULL, ?, ?)
                """,
                [room.id, customer_id, customer_id,
                 _to_db(room.createdAt), _to_db(room.createdAt)],
            )

        try:
            await self._run(insert)
        except (duckdb.ConstraintException, duckdb.TransactionException) as exc:
            # Constraint violation or commit conflict: another writer holds the open room.
            logger.info("[ChatStore] Open room already exists for %s: %s", customer_id, exc)
            raise OpenRoomExistsError(customer_id) from exc
        logger.info("[ChatStore] Created room %s for customer %s", room.id, customer_id)
        return room

    async def assign_agent_if_unassigned(self, room_id: str, agent_id: str) -> Optional[Room]:
        """Set agent_id only when the room has none; return the room as stored.

        Returns None if the room does not exist. The returned agentId may
        belong to a different agent who got there first.
        """
        now = _to_db(utcnow())

        def update(cur: duckdb.DuckDBPyConnection) -> Optional[Room]:
            changed = cur.execute(
                "UPDATE chat_rooms SET agent_id = ?, updated_at = ? "
                "WHERE id = ? AND agent_id IS NULL RETURNING id",
                [agent_id, now, room_id],
            ).fetchall()
            if changed:
                logger.info("[ChatStore] Agent %s assigned to room %s", agent_id, room_id)
            row = cur.execute(
                f"SELECT {_ROOM_COLUMNS} FROM chat_rooms WHERE id = ?", [room_id]
            ).fetchone()
            return _row_to_room(row) if row else None

        return await self._run_retrying(update)

    async def touch_room(self, room_id: str, at: datetime) -> None:
        """Record *at* as the room's last message time."""
        stamp = _to_db(at)

        def update(cur: duckdb.DuckDBPyConnection) -> None:
            cur.execute(
                "UPDATE chat_rooms SET last_message_at = ?, updated_at = ? WHERE id = ?",
                [stamp, stamp, room_id],
            )

        await self._run_retrying(update)

    async def list_open_rooms(self) -> List[Room]:
        """Open rooms, most recent activity first; silent rooms last."""

        def query(cur: duckdb.DuckDBPyConnection) -> List[Room]:
            rows = cur.execute(
                f"SELECT {_ROOM_COLUMNS} FROM chat_rooms WHERE status = 'open' "
                "ORDER BY last_message_at DESC NULLS LAST, created_at DESC"
            ).fetchall()
            return [_row_to_room(r) for r in rows]

        return await self._run(query)

    # =========================================================================
    # Messages
    # =========================================================================

    async def insert_message(self, message: Message) -> Message:
        attachments = json.dumps([a.model_dump() for a in message.attachments])

        def insert(cur: duckdb.DuckDBPyConnection) -> None:
            cur.execute(
                """
                INSERT INTO chat_messages
                  (id, room_id, sender_id, sender_role, content, attachments,
                   status, created_at, delivered_at, read_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    message.id, message.roomId, message.senderId,
                    message.senderRole.value, message.content, attachments,
                    message.status.value, _to_db(message.createdAt),
                    _to_db(message.deliveredAt), _to_db(message.readAt),
                ],
            )

        await self._run(insert)
        return message

    async def get_message(self, message_id: str) -> Optional[Message]:
        def query(cur: duckdb.DuckDBPyConnection) -> Optional[Message]:
            row = cur.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM chat_messages WHERE id = ?", [message_id]
            ).fetchone()
            return _row_to_message(row) if row else None

        return await self._run(query)

    async def recent_messages(self, room_id: str, limit: int = 50) -> List[Message]:
        """The newest *limit* messages of a room, oldest first."""
        return await self.messages_page(room_id, before=None, limit=limit)

    async def messages_page(
        self, room_id: str, before: Optional[datetime], limit: int
    ) -> List[Message]:
        """Messages older than *before* (or the newest ones), oldest first.

        Fetched newest-first so the limit keeps the most recent messages,
        then reversed into chronological order.
        """
        params: List[Any] = [room_id]
        cursor_clause = ""
        if before is not None:
            cursor_clause = "AND created_at < ? "
            params.append(_to_db(before))
        params.append(limit)

        def query(cur: duckdb.DuckDBPyConnection) -> List[Message]:
            rows = cur.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM chat_messages "
                f"WHERE room_id = ? {cursor_clause}"
                "ORDER BY created_at DESC, seq DESC LIMIT ?",
                params,
            ).fetchall()
            return [_row_to_message(r) for r in reversed(rows)]

        return await self._run(query)

    async def mark_read(
        self, room_id: str, message_ids: Sequence[str], reader_id: str, at: datetime
    ) -> int:
        """Mark messages in *room_id* not sent by *reader_id* as read.

        Already-read messages keep their original read_at. Returns the number
        of messages updated.
        """
        ids = list(dict.fromkeys(message_ids))
        if not ids:
            return 0
        placeholders = ", ".join("?" for _ in ids)
        stamp = _to_db(at)

        def update(cur: duckdb.DuckDBPyConnection) -> int:
            rows = cur.execute(
                f"UPDATE chat_messages SET status = 'read', read_at = ? "
                f"WHERE room_id = ? AND sender_id <> ? AND status <> 'read' "
                f"AND id IN ({placeholders}) RETURNING id",
                [stamp, room_id, reader_id, *ids],
            ).fetchall()
            return len(rows)

        return await self._run(update)
