"""
User directory schemas.
"""
from datetime import datetime
from typing import Optional
import uuid
from pydantic import BaseModel


class UserSummary(BaseModel):
    """Public identity shown next to messages and conversations."""
    id: uuid.UUID
    name: str
    email: str


class UserProfile(UserSummary):
    is_active: bool
    created_at: Optional[datetime] = None
