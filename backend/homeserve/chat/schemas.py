"""Pydantic schemas for the messaging relay.

Two groups live here:
    - Stored records (``ChatMessage``, ``Conversation``) in the JSON shape
      sent to clients.
    - Inbound WebSocket events, one model per ``EventType``. The
      dispatcher validates each frame against the model registered for
      its type before invoking the handler.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator

from homeserve.users.schemas import ParticipantInfo, SenderInfo


# =============================================================================
# Stored records
# =============================================================================


class ChatMessage(BaseModel):
    """A single 1:1 message, enriched with sender display info.

    Attributes:
        id: Unique message identifier.
        conversationId: Owning conversation.
        sender: Sender id plus display fields.
        receiverId: User the message is addressed to.
        content: Message text (never empty).
        read: True once the receiver fetched the conversation.
        createdAt: Creation time (UTC); ascending order within a conversation.
    """
    id: str
    conversationId: str
    sender: SenderInfo
    receiverId: str
    content: str
    read: bool = False
    createdAt: datetime


class Conversation(BaseModel):
    """A conversation between exactly two participants."""
    id: str
    participants: List[ParticipantInfo]
    lastMessage: Optional[ChatMessage] = None
    createdAt: datetime
    updatedAt: datetime


def pair_key(user_a: str, user_b: str) -> str:
    """Normalized key for an unordered participant pair."""
    first, second = sorted((user_a, user_b))
    return f"{first}:{second}"


# =============================================================================
# Event types
# =============================================================================


class EventType(str, Enum):
    """Inbound event kinds accepted by the relay."""
    AUTH = "auth"
    PING = "ping"
    GET_CONVERSATIONS = "get_conversations"
    GET_MESSAGES = "get_messages"
    GET_CONVERSATION = "get_conversation"
    SEND_MESSAGE = "send_message"
    START_CONVERSATION = "start_conversation"
    GET_USERS = "get_users"
    SET_STATUS = "set_status"


class OutboundType(str, Enum):
    """Outbound event kinds emitted by the relay."""
    WELCOME = "welcome"
    AUTH_SUCCESS = "auth_success"
    AUTH_ERROR = "auth_error"
    PONG = "pong"
    CONVERSATIONS = "conversations"
    MESSAGES = "messages"
    MESSAGE_SENT = "message_sent"
    NEW_MESSAGE = "new_message"
    USERS = "users"
    CONVERSATION_STARTED = "conversation_started"
    STATUS_UPDATED = "status_updated"
    USER_STATUS_CHANGE = "user_status_change"
    ERROR = "error"


# Events that an unauthenticated connection may send.
PUBLIC_EVENTS = frozenset({EventType.AUTH, EventType.PING})


def new_message_id(kind: OutboundType) -> str:
    """Correlation token attached to every outbound event."""
    return f"{kind.value}-{uuid.uuid4().hex}"


def outbound(kind: OutboundType, **fields) -> dict:
    """Build a JSON-ready outbound payload with ``type`` and ``messageId``."""
    return {"type": kind.value, **fields, "messageId": new_message_id(kind)}


# =============================================================================
# Inbound events
# =============================================================================


class InboundEvent(BaseModel):
    """Base for inbound frames. Unknown extra fields are ignored."""
    model_config = ConfigDict(extra="ignore")


class AuthEvent(InboundEvent):
    token: str = Field(..., min_length=1)


class PingEvent(InboundEvent):
    pass


class GetConversationsEvent(InboundEvent):
    pass


class GetMessagesEvent(InboundEvent):
    conversationId: str = Field(..., min_length=1)


class GetConversationEvent(InboundEvent):
    otherUserId: str = Field(..., min_length=1)


class SendMessageEvent(InboundEvent):
    receiverId: str = Field(..., min_length=1)
    content: str

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Message content is required")
        return value


class StartConversationEvent(InboundEvent):
    receiverId: str = Field(..., min_length=1)


class GetUsersEvent(InboundEvent):
    pass


class SetStatusEvent(InboundEvent):
    isOnline: bool


EVENT_MODELS: Dict[EventType, Type[InboundEvent]] = {
    EventType.AUTH: AuthEvent,
    EventType.PING: PingEvent,
    EventType.GET_CONVERSATIONS: GetConversationsEvent,
    EventType.GET_MESSAGES: GetMessagesEvent,
    EventType.GET_CONVERSATION: GetConversationEvent,
    EventType.SEND_MESSAGE: SendMessageEvent,
    EventType.START_CONVERSATION: StartConversationEvent,
    EventType.GET_USERS: GetUsersEvent,
    EventType.SET_STATUS: SetStatusEvent,
}
