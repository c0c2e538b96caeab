"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws/chat: Realtime messaging (see ``session.py`` for the protocol)
    - GET    /api/chat/conversation/{peer_id}: Conversation history
    - POST   /api/chat/message: Send a message without a realtime connection
    - GET    /api/chat/conversations: One summary per peer
    - PUT    /api/chat/read/{peer_id}: Mark the peer's messages read
    - PUT    /api/chat/message/{message_id}: Edit own message (5 minute window)
    - DELETE /api/chat/message/{message_id}: Delete own message
    - DELETE /api/chat/conversation/{peer_id}: Delete a whole conversation

The REST endpoints are stateless: they read and write the message store
directly and do not notify realtime subscribers.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, WebSocket

from .dependencies import (
    get_current_user_id,
    get_message_store,
    get_session_handler,
    get_user_directory,
)
from .enrich import enrich_message, enrich_messages
from .schemas import (
    ConversationSummary,
    EditMessageRequest,
    EnrichedMessage,
    SendMessageRequest,
)
from .store import MAX_PAGE_SIZE, MessageStore
from .users import UserDirectory

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])

API_PREFIX = "/api/chat"


@router.get(f"{API_PREFIX}/conversation/{{peer_id}}", response_model=List[EnrichedMessage])
async def get_conversation(
    peer_id: str,
    limit: Optional[int] = Query(None, ge=1, le=MAX_PAGE_SIZE, description="Only the most recent N messages"),
    user_id: str = Depends(get_current_user_id),
    store: MessageStore = Depends(get_message_store),
    users: UserDirectory = Depends(get_user_directory),
) -> List[EnrichedMessage]:
    """Get the conversation with a peer, oldest first.

    Args:
        peer_id: The other participant.
        limit: If given, only the most recent ``limit`` messages are returned
               (still oldest first).

    Example:
        GET /api/chat/conversation/u2
        GET /api/chat/conversation/u2?limit=10
    """
    users.require(peer_id)
    if limit is None:
        messages = store.history(user_id, peer_id)
    else:
        messages = list(reversed(store.recent(user_id, peer_id, limit)))
    return enrich_messages(messages, store, users)


@router.post(f"{API_PREFIX}/message", response_model=EnrichedMessage)
async def send_message(
    request: SendMessageRequest,
    user_id: str = Depends(get_current_user_id),
    store: MessageStore = Depends(get_message_store),
    users: UserDirectory = Depends(get_user_directory),
) -> EnrichedMessage:
    """Send a message through the stateless path."""
    users.require(request.receiverId)
    message = store.append(user_id, request.receiverId, request.message, request.replyTo)
    logger.info(f"[REST] Message {message.id} sent {user_id} -> {request.receiverId}")
    return enrich_message(message, store, users)


@router.get(f"{API_PREFIX}/conversations", response_model=List[ConversationSummary])
async def list_conversations(
    user_id: str = Depends(get_current_user_id),
    store: MessageStore = Depends(get_message_store),
    users: UserDirectory = Depends(get_user_directory),
) -> List[ConversationSummary]:
    """List every peer the caller has messages with, most recent first."""
    summaries = store.conversations(user_id)
    profiles = users.summaries(s.user.id for s in summaries)
    for summary in summaries:
        summary.user = profiles[summary.user.id]
    return summaries


@router.put(f"{API_PREFIX}/read/{{peer_id}}")
async def mark_read(
    peer_id: str,
    user_id: str = Depends(get_current_user_id),
    store: MessageStore = Depends(get_message_store),
) -> dict:
    """Mark every message the peer sent to the caller as read."""
    updated = store.mark_read(peer_id, user_id)
    return {"success": True, "updated": updated}


@router.put(f"{API_PREFIX}/message/{{message_id}}", response_model=EnrichedMessage)
async def edit_message(
    message_id: int,
    request: EditMessageRequest,
    user_id: str = Depends(get_current_user_id),
    store: MessageStore = Depends(get_message_store),
    users: UserDirectory = Depends(get_user_directory),
) -> EnrichedMessage:
    """Edit one of the caller's messages within the edit window."""
    message = store.edit(message_id, user_id, request.message)
    return enrich_message(message, store, users)


@router.delete(f"{API_PREFIX}/message/{{message_id}}")
async def delete_message(
    message_id: int,
    user_id: str = Depends(get_current_user_id),
    store: MessageStore = Depends(get_message_store),
) -> dict:
    """Delete one of the caller's messages."""
    store.delete(message_id, user_id)
    return {"success": True}


@router.delete(f"{API_PREFIX}/conversation/{{peer_id}}")
async def delete_conversation(
    peer_id: str,
    user_id: str = Depends(get_current_user_id),
    store: MessageStore = Depends(get_message_store),
) -> dict:
    """Delete every message between the caller and a peer."""
    deleted = store.delete_conversation(user_id, peer_id)
    return {"success": True, "deleted": deleted}


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for realtime chat.

    Authentication happens at connection time via ``?token=``, an
    ``Authorization: Bearer`` header, or an ``authenticate`` first frame.
    """
    logger.info("[WS] New connection")
    await get_session_handler().run(websocket)
