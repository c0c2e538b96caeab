"""Pydantic schemas for chat messages and realtime event payloads.

Field names are camelCase because they are serialized to browser clients
as-is, both over the REST API and in WebSocket frames.

These schemas are used by:
    - MessageStore: rows are hydrated into ``Message``
    - SessionHandler: incoming event payloads are parsed with the
      ``*Payload`` models and outgoing messages use ``EnrichedMessage``
    - REST router: request bodies and responses
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class Message(BaseModel):
    """A single persisted chat message.

    Attributes:
        id: Store-assigned id, monotonic with creation.
        sender: User id of the author.
        receiver: User id of the addressee.
        message: Trimmed, non-empty body.
        replyTo: Id of the message this one replies to, if any.
        delivered: True once the receiver's connection acknowledged it.
        read: True once the receiver opened the conversation.
        edited: True after any successful body edit.
        createdAt: Creation time (UTC); drives ordering and retention.
    """
    id: int = Field(..., description="Store-assigned message id")
    sender: str = Field(..., description="Sender user id")
    receiver: str = Field(..., description="Receiver user id")
    message: str = Field(..., description="Message body")
    replyTo: Optional[int] = Field(default=None, description="Replied-to message id")
    delivered: bool = False
    deliveredAt: Optional[datetime] = None
    read: bool = False
    readAt: Optional[datetime] = None
    edited: bool = False
    createdAt: datetime = Field(..., description="Creation time (UTC)")


class UserSummary(BaseModel):
    """Display data for a user, as shown next to a message."""
    id: str
    username: Optional[str] = None
    profilePic: Optional[str] = None


class ReplyPreview(BaseModel):
    """Compact view of the message being replied to."""
    id: int
    message: str
    sender: UserSummary


class EnrichedMessage(BaseModel):
    """A message with participant display data resolved.

    This is what clients receive in ``new-message`` events and from the
    REST send endpoint.
    """
    id: int
    sender: UserSummary
    receiver: UserSummary
    message: str
    replyTo: Optional[ReplyPreview] = None
    delivered: bool = False
    deliveredAt: Optional[datetime] = None
    read: bool = False
    readAt: Optional[datetime] = None
    edited: bool = False
    createdAt: datetime


class ConversationSummary(BaseModel):
    """One row of the conversation list: the latest message with a peer."""
    user: UserSummary
    lastMessage: str
    lastTime: datetime
    unread: bool = Field(..., description="Latest message is unread and addressed to the caller")
    unreadCount: int = 0


# =============================================================================
# REST request bodies
# =============================================================================


class SendMessageRequest(BaseModel):
    receiverId: str
    message: str
    replyTo: Optional[int] = None


class EditMessageRequest(BaseModel):
    message: str


# =============================================================================
# Realtime event payloads (client -> server)
# =============================================================================


class AuthenticatePayload(BaseModel):
    token: str


class JoinConversationPayload(BaseModel):
    partnerId: str


class SendMessagePayload(BaseModel):
    receiverId: str
    message: str
    replyTo: Optional[int] = None
    # Echoed back in message-ack so the client can correlate retries
    requestId: Optional[str] = None


class TypingPayload(BaseModel):
    partnerId: str
    isTyping: bool = True


class MessageDeliveredPayload(BaseModel):
    messageId: int


class MarkReadPayload(BaseModel):
    partnerId: str
