"""
Chat API: conversations and messages (REST). WebSocket gateway endpoint in same module.
"""
import logging
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from sqlalchemy.orm import Session

from materoom.chat import events
from materoom.chat.gateway import chat_gateway
from materoom.core.database import get_db
from materoom.core.dependencies import get_current_user_id
from materoom.schema.chat import (
    ConversationCreateBody,
    ConversationResponse,
    ConversationSummary,
    MessageCreateBody,
    MessageResponse,
)
from materoom.service.message_store import MessageStore
from materoom.session import extract_token

router = APIRouter()
logger = logging.getLogger(__name__)


# --- REST: Conversations ---

@router.get("/conversations", response_model=List[ConversationSummary])
async def list_conversations(
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Conversations the current user is part of, most recent first."""
    return MessageStore(db).list_conversations(user_id)


@router.post("/conversations", response_model=ConversationResponse)
async def create_or_get_conversation(
    body: ConversationCreateBody,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Create or get the direct conversation with other_user_id. Idempotent per pair."""
    return MessageStore(db).create_or_get_conversation(user_id, body.other_user_id)


# --- REST: Messages ---

@router.get("/conversations/{conversation_id}/messages", response_model=List[MessageResponse])
async def list_messages(
    conversation_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    mark_read: bool = True,
):
    """Full history, oldest first. Marks the caller's incoming messages read unless mark_read=false."""
    store = MessageStore(db)
    messages = store.list_messages(conversation_id, user_id)
    if mark_read and any(not m.read and m.sender_id != user_id for m in messages):
        changed = set(await chat_gateway.mark_read(user_id, conversation_id))
        for m in messages:
            if m.id in changed:
                m.read = True
    return messages


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_message(
    conversation_id: uuid.UUID,
    body: MessageCreateBody,
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    """Create a message (degraded-mode path). Persisted first, then relayed to realtime subscribers."""
    return await chat_gateway.send_message(user_id, conversation_id, body.content)


# --- WebSocket ---

@router.websocket("/ws")
async def websocket_chat(
    websocket: WebSocket,
    token: Optional[str] = None,
):
    """Realtime gateway. Auth via ?token= or Authorization: Bearer header."""
    await websocket.accept()
    credential = token or extract_token(websocket.headers.get("authorization"))
    session = await chat_gateway.connect(websocket, credential)
    if session is None:
        await websocket.close(code=events.CLOSE_AUTH_FAILED)
        return
    try:
        while True:
            data = await websocket.receive_text()
            await chat_gateway.handle(session, data)
    except WebSocketDisconnect:
        logger.debug("WebSocket closed by client for user %s", session.user_id)
    finally:
        await chat_gateway.disconnect(session)
