"""Pydantic models for support chat rooms, messages and gateway results.

Field names use the camelCase of the wire protocol, like the rest of the
chat models, so ``model_dump(mode="json")`` is exactly what clients receive.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    """Role of an authenticated chat participant.

    Attributes:
        CUSTOMER: Shopper who owns at most one open support room.
        AGENT: Support staff member who answers customer rooms.
    """
    CUSTOMER = "customer"
    AGENT = "agent"


class RoomStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class MessageStatus(str, Enum):
    """Delivery status; only ever advances sent -> delivered -> read."""
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class Attachment(BaseModel):
    type: Literal["image"] = "image"
    url: str


class Room(BaseModel):
    """A support conversation between one customer and at most one agent."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    customerId: str
    agentId: Optional[str] = None
    status: RoomStatus = RoomStatus.OPEN
    lastMessageAt: Optional[datetime] = None
    createdAt: datetime = Field(default_factory=utcnow)


class Message(BaseModel):
    """A persisted chat message as stored, replayed and broadcast."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    roomId: str
    senderId: str
    senderRole: UserRole
    content: str
    attachments: List[Attachment] = Field(default_factory=list)
    status: MessageStatus = MessageStatus.SENT
    createdAt: datetime = Field(default_factory=utcnow)
    deliveredAt: Optional[datetime] = None
    readAt: Optional[datetime] = None


class UserSummary(BaseModel):
    """Display identity attached to rooms in the agent room list."""
    id: str
    name: str
    email: str = ""


class RoomListing(Room):
    customer: Optional[UserSummary] = None
    agent: Optional[UserSummary] = None


# =============================================================================
# Client requests
# =============================================================================


class JoinChatRequest(BaseModel):
    roomId: Optional[str] = None


class SendMessageRequest(BaseModel):
    roomId: Optional[str] = None
    content: Any = None
    # Entries are filtered by the gateway, never rejected here.
    attachments: Optional[list] = None


class MessageReadRequest(BaseModel):
    roomId: Optional[str] = None
    messageIds: List[str] = Field(default_factory=list)


# =============================================================================
# Results (acknowledgement payloads)
# =============================================================================


class Failure(BaseModel):
    success: Literal[False] = False
    error: str


class JoinSuccess(BaseModel):
    success: Literal[True] = True
    roomId: str


class SendSuccess(BaseModel):
    success: Literal[True] = True
    message: Message


class RoomsSuccess(BaseModel):
    success: Literal[True] = True
    rooms: List[RoomListing]


JoinResult = Union[JoinSuccess, Failure]
SendResult = Union[SendSuccess, Failure]
RoomsResult = Union[RoomsSuccess, Failure]
