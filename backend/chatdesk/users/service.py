"""User directory consulted by the chat gateway.

The storefront owns user accounts; the chat service only needs to know whether
a token subject exists, whether it is active, its role, and a display name for
agent dashboards. This service keeps that projection in DuckDB.
"""
import asyncio
import logging
from typing import Dict, Iterable, Optional

import duckdb
from pydantic import BaseModel

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS users (
    id        VARCHAR PRIMARY KEY,
    name      VARCHAR NOT NULL,
    email     VARCHAR NOT NULL DEFAULT '',
    role      VARCHAR NOT NULL DEFAULT 'customer',
    is_active BOOLEAN NOT NULL DEFAULT TRUE
)
"""


class UserRecord(BaseModel):
    id: str
    name: str
    email: str = ""
    role: str = "customer"
    is_active: bool = True


class UserDirectory:
    """Lookup of storefront users by id."""

    def __init__(self, db_path: str = "chatdesk.duckdb") -> None:
        self._db_path = db_path
        self._conn = duckdb.connect(db_path)
        self._conn.execute(_CREATE_TABLE)
        logger.info("[UserDirectory] Initialized with db=%s", db_path)

    def close(self) -> None:
        self._conn.close()

    def upsert_user(self, user: UserRecord) -> UserRecord:
        self._conn.execute(
            """
            INSERT OR REPLACE INTO users (id, name, email, role, is_active)
            VALUES (?, ?, ?, ?, ?)
            """,
            [user.id, user.name, user.email, user.role, user.is_active],
        )
        return user

    def _fetch(self, ids: list) -> Dict[str, UserRecord]:
        cursor = self._conn.cursor()
        try:
            placeholders = ", ".join("?" for _ in ids)
            rows = cursor.execute(
                f"SELECT id, name, email, role, is_active FROM users WHERE id IN ({placeholders})",
                ids,
            ).fetchall()
        finally:
            cursor.close()
        return {
            row[0]: UserRecord(id=row[0], name=row[1], email=row[2], role=row[3], is_active=row[4])
            for row in rows
        }

    async def find_by_id(self, user_id: str) -> Optional[UserRecord]:
        users = await self.get_many([user_id])
        return users.get(user_id)

    async def get_many(self, user_ids: Iterable[str]) -> Dict[str, UserRecord]:
        ids = [uid for uid in dict.fromkeys(user_ids) if uid]
        if not ids:
            return {}
        return await asyncio.get_running_loop().run_in_executor(None, self._fetch, ids)
