"""
Chat schemas: conversations and messages.
"""
from datetime import datetime
from typing import Optional
import uuid
from pydantic import BaseModel, Field

from materoom.schema.user import UserSummary


# --- Conversation ---

class ConversationCreateBody(BaseModel):
    """Body for POST /chat/conversations (create or get)."""
    other_user_id: str = Field("", description="Id of the user to chat with.")


class LastMessagePreview(BaseModel):
    """Last message snippet for the conversation list."""
    id: uuid.UUID
    content: str
    sender_id: uuid.UUID
    created_at: datetime


class ConversationSummary(BaseModel):
    """Conversation as seen by one participant."""
    id: uuid.UUID
    other_user: UserSummary
    last_message: Optional[LastMessagePreview] = None
    unread_count: int = 0
    updated_at: Optional[datetime] = None


class ConversationResponse(BaseModel):
    """Result of create-or-get."""
    id: uuid.UUID
    other_user: UserSummary


# --- Message ---

class MessageCreateBody(BaseModel):
    """Body for POST /chat/conversations/{conversation_id}/messages."""
    content: str = Field(..., min_length=1, max_length=10_000)


class MessageResponse(BaseModel):
    """Single message with resolved sender."""
    id: uuid.UUID
    conversation_id: uuid.UUID
    sender_id: uuid.UUID
    sender: UserSummary
    content: str
    read: bool
    created_at: datetime
