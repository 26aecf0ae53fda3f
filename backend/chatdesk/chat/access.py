"""Per-role chat capabilities.

Every authenticated connection carries exactly one ChatIdentity subclass.
Role-specific behaviour lives on the subclasses, so the gateway never compares
role strings.
"""
from typing import Optional

from .schemas import Room, UserRole
from .store import ChatStore, OpenRoomExistsError

# Lookup-then-create attempts before a customer join gives up.
OPEN_ROOM_ATTEMPTS = 3

# Directory roles accepted at the handshake. "admin" is the storefront's name
# for support staff.
_DIRECTORY_ROLES = {
    "customer": UserRole.CUSTOMER,
    "agent": UserRole.AGENT,
    "admin": UserRole.AGENT,
}


class ChatIdentity:
    """Verified identity bound to a connection for its lifetime."""

    role: UserRole

    def __init__(self, user_id: str, name: str = "") -> None:
        self.user_id = user_id
        self.name = name

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.user_id!r})"

    @property
    def can_list_rooms(self) -> bool:
        return False

    @property
    def claims_rooms(self) -> bool:
        """Whether interacting with an unassigned room makes this user its agent."""
        return False

    def can_send_to(self, room: Room) -> bool:
        raise NotImplementedError

    async def resolve_room(self, store: ChatStore, room_id: Optional[str]) -> Optional[Room]:
        """Find (or create) the room a join-chat request refers to."""
        raise NotImplementedError


class Customer(ChatIdentity):
    role = UserRole.CUSTOMER

    def can_send_to(self, room: Room) -> bool:
        return room.customerId == self.user_id

    async def resolve_room(self, store: ChatStore, room_id: Optional[str]) -> Optional[Room]:
        # Customers always land in their own open room; room_id is ignored.
        for _ in range(OPEN_ROOM_ATTEMPTS):
            room = await store.find_open_room(self.user_id)
            if room is not None:
                return room
            try:
                return await store.create_room(self.user_id)
            except OpenRoomExistsError:
                continue
        return None


class Agent(ChatIdentity):
    role = UserRole.AGENT

    @property
    def can_list_rooms(self) -> bool:
        return True

    @property
    def claims_rooms(self) -> bool:
        return True

    def can_send_to(self, room: Room) -> bool:
        return room.agentId is None or room.agentId == self.user_id

    async def resolve_room(self, store: ChatStore, room_id: Optional[str]) -> Optional[Room]:
        if not room_id:
            return None
        room = await store.get_room(room_id)
        if room is None or room.agentId is not None:
            return room
        return await store.assign_agent_if_unassigned(room.id, self.user_id)


def identity_for(user_id: str, directory_role: str, name: str = "") -> Optional[ChatIdentity]:
    """Build the identity for a directory role, or None if it may not chat."""
    role = _DIRECTORY_ROLES.get(directory_role)
    if role is UserRole.CUSTOMER:
        return Customer(user_id, name)
    if role is UserRole.AGENT:
        return Agent(user_id, name)
    return None
