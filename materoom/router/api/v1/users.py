"""
User router - read-only user directory (protected).
"""
import uuid
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from materoom.core.database import get_db
from materoom.core.dependencies import get_current_user_id
from materoom.core.exceptions import NotFound
from materoom.crud import user_crud
from materoom.schema.user import UserProfile, UserSummary
from materoom.service.message_store import user_summary
import logging

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/me", response_model=UserProfile)
async def get_me(
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Current user profile."""
    user = user_crud.get(db, user_id)
    if not user:
        raise NotFound("User")
    return UserProfile(
        id=user.id,
        name=user.display_name,
        email=user.email,
        is_active=bool(user.is_active),
        created_at=user.created_at,
    )


@router.get("/{other_user_id}", response_model=UserSummary)
async def get_user(
    other_user_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Public summary of another user (name shown in chat headers)."""
    user = user_crud.get(db, other_user_id)
    if not user or not user.is_active:
        raise NotFound("User")
    return user_summary(user)
