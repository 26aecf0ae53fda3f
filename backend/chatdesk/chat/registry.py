"""Process-local presence tracking for chat connections.

Maps a user id to the set of live connection ids for that user, so a user
with several devices stays online until the last one disconnects. Nothing
here is persisted.
"""
import logging
import threading
from typing import Dict, List, Set

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Thread-safe user id -> connection ids map.

    Each mutation holds the lock for the whole read-modify-write on a user's
    set, and queries return copies so callers never iterate live state.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: Dict[str, Set[str]] = {}

    def add(self, user_id: str, conn_id: str) -> None:
        with self._lock:
            self._connections.setdefault(user_id, set()).add(conn_id)
            count = len(self._connections[user_id])
        logger.debug("[Registry] %s connected (%s), %d live", user_id, conn_id, count)

    def remove(self, user_id: str, conn_id: str) -> None:
        """Drop one connection; the user's entry goes away with its last one."""
        with self._lock:
            conns = self._connections.get(user_id)
            if conns is None:
                return
            conns.discard(conn_id)
            if not conns:
                del self._connections[user_id]
        logger.debug("[Registry] %s disconnected (%s)", user_id, conn_id)

    def is_online(self, user_id: str) -> bool:
        with self._lock:
            return bool(self._connections.get(user_id))

    def list_connections(self, user_id: str) -> Set[str]:
        with self._lock:
            return set(self._connections.get(user_id, ()))

    def online_users(self) -> List[str]:
        with self._lock:
            return list(self._connections)
