"""
Realtime event taxonomy and inbound payload models.

Frames on the wire are JSON objects: {"event": <name>, "payload": {...}}.
"""
from typing import List, Optional
import uuid
from pydantic import BaseModel

# Client -> server
CONVERSATION_JOIN = "conversation:join"
CONVERSATION_LEAVE = "conversation:leave"
MESSAGE_SEND = "message:send"
TYPING_START = "typing:start"
TYPING_STOP = "typing:stop"
MESSAGES_READ = "messages:read"

# Server -> client
MESSAGE_NEW = "message:new"
CONVERSATION_NEW_MESSAGE = "conversation:new-message"
USER_ONLINE = "user:online"
USER_OFFLINE = "user:offline"
ERROR = "error"

# Close code sent when the bearer credential is missing or invalid
CLOSE_AUTH_FAILED = 4001


class ConversationRef(BaseModel):
    """Payload of conversation:join/leave and typing:start/stop."""
    conversation_id: uuid.UUID


class SendMessage(BaseModel):
    conversation_id: uuid.UUID
    content: str = ""


class ReadMessages(BaseModel):
    conversation_id: uuid.UUID
    message_ids: Optional[List[uuid.UUID]] = None


def frame(event: str, payload) -> dict:
    return {"event": event, "payload": payload}
