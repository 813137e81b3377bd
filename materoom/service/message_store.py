"""
Message store service: conversation and message persistence for both the
REST API and the realtime gateway.

Every write is validated here (participant checks, content rules) so both
entry points enforce the same invariants.
"""
from datetime import datetime, timezone
from typing import List, Optional
import uuid

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
import logging

from materoom.core.config import settings
from materoom.core.exceptions import (
    EmptyContent,
    Forbidden,
    InvalidTarget,
    NotFound,
    PersistenceFailed,
)
from materoom.crud import conversation_crud, message_crud, user_crud
from materoom.model.conversation import Conversation
from materoom.model.message import Message
from materoom.model.user import User
from materoom.schema.chat import (
    ConversationResponse,
    ConversationSummary,
    LastMessagePreview,
    MessageResponse,
)
from materoom.schema.user import UserSummary

logger = logging.getLogger(__name__)


def user_summary(user: User) -> UserSummary:
    return UserSummary(id=user.id, name=user.display_name, email=user.email)


def serialize_message(msg: Message) -> MessageResponse:
    """Message with resolved sender, as returned by REST and relayed over the gateway."""
    return MessageResponse(
        id=msg.id,
        conversation_id=msg.conversation_id,
        sender_id=msg.sender_id,
        sender=user_summary(msg.sender),
        content=msg.content,
        read=bool(msg.read),
        created_at=msg.created_at,
    )


def parse_uuid(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        return None


class MessageStore:
    """Conversation/message persistence bound to one DB session."""

    def __init__(self, db: Session):
        self.db = db

    # --- Conversations ---

    def get_conversation_for_participant(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID
    ) -> Conversation:
        conversation = conversation_crud.get_by_id(self.db, conversation_id=conversation_id)
        if not conversation:
            raise NotFound("Conversation")
        if not conversation.has_participant(user_id):
            raise Forbidden()
        return conversation

    def is_participant(self, conversation_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        conversation = conversation_crud.get_by_id(self.db, conversation_id=conversation_id)
        return bool(conversation and conversation.has_participant(user_id))

    def participant_ids(self, conversation_id: uuid.UUID) -> List[uuid.UUID]:
        conversation = conversation_crud.get_by_id(self.db, conversation_id=conversation_id)
        if not conversation:
            return []
        return [conversation.user1_id, conversation.user2_id]

    def list_conversations(self, user_id: uuid.UUID) -> List[ConversationSummary]:
        """Conversation list for the caller: other user, last message preview, unread count."""
        conversations = conversation_crud.list_for_user(self.db, user_id=user_id)
        unread = message_crud.count_unread_by_conversation(
            self.db,
            conversation_ids=[c.id for c in conversations],
            reader_id=user_id,
        )
        limit = settings.CHAT_PREVIEW_LENGTH
        items: List[ConversationSummary] = []
        for conv in conversations:
            last = message_crud.get_last(self.db, conversation_id=conv.id)
            preview = None
            if last:
                preview = LastMessagePreview(
                    id=last.id,
                    content=last.content[:limit] + ("..." if len(last.content) > limit else ""),
                    sender_id=last.sender_id,
                    created_at=last.created_at,
                )
            items.append(
                ConversationSummary(
                    id=conv.id,
                    other_user=user_summary(conv.other_participant(user_id)),
                    last_message=preview,
                    unread_count=unread.get(conv.id, 0),
                    updated_at=conv.updated_at,
                )
            )
        return items

    def create_or_get_conversation(
        self, user_id: uuid.UUID, other_user_id
    ) -> ConversationResponse:
        """
        Return the conversation between user_id and other_user_id, creating it
        on first use. Idempotent per unordered pair: (A, B) and (B, A) yield
        the same row.

        Raises:
            InvalidTarget: other_user_id empty or the caller's own id
            NotFound: other user does not exist
        """
        if other_user_id is None or not str(other_user_id).strip():
            raise InvalidTarget(message="other_user_id is required.")
        other_id = parse_uuid(str(other_user_id).strip())
        if other_id == user_id:
            raise InvalidTarget(message="Cannot create a conversation with yourself.")
        other_user = user_crud.get(self.db, other_id) if other_id else None
        if not other_user:
            raise NotFound("User")

        conversation = conversation_crud.get_by_pair(self.db, user_a=user_id, user_b=other_id)
        if not conversation:
            user1_id, user2_id = Conversation.ordered_pair(user_id, other_id)
            try:
                conversation = conversation_crud.create_from_dict(
                    self.db,
                    obj_in={"id": uuid.uuid4(), "user1_id": user1_id, "user2_id": user2_id},
                )
                logger.info("Conversation %s created for %s/%s", conversation.id, user1_id, user2_id)
            except IntegrityError:
                # Lost a create race on the pair constraint; the winner's row is the answer.
                self.db.rollback()
                conversation = conversation_crud.get_by_pair(self.db, user_a=user_id, user_b=other_id)
                if not conversation:
                    raise PersistenceFailed(message="Failed to create or retrieve conversation.")

        return ConversationResponse(id=conversation.id, other_user=user_summary(other_user))

    def peer_ids(self, user_id: uuid.UUID) -> List[uuid.UUID]:
        """Users who share at least one conversation with user_id."""
        return conversation_crud.list_peer_ids(self.db, user_id=user_id)

    # --- Messages ---

    def list_messages(self, conversation_id: uuid.UUID, user_id: uuid.UUID) -> List[MessageResponse]:
        self.get_conversation_for_participant(conversation_id, user_id)
        messages = message_crud.list_by_conversation(self.db, conversation_id=conversation_id)
        return [serialize_message(m) for m in messages]

    def create_message(
        self, conversation_id: uuid.UUID, sender_id: uuid.UUID, content
    ) -> MessageResponse:
        """
        Persist a message and bump the conversation's last activity in one commit.

        Raises:
            EmptyContent: content missing, blank or too long
            NotFound / Forbidden: unknown conversation or sender not a participant
            PersistenceFailed: database error (rolled back)
        """
        text = content.strip() if isinstance(content, str) else ""
        if not text:
            raise EmptyContent()
        if len(text) > settings.CHAT_MESSAGE_MAX_LENGTH:
            raise EmptyContent(
                code="CONTENT_TOO_LONG",
                message=f"Message content exceeds {settings.CHAT_MESSAGE_MAX_LENGTH} characters.",
            )
        conversation = self.get_conversation_for_participant(conversation_id, sender_id)

        try:
            msg = message_crud.create_from_dict(
                self.db,
                obj_in={
                    "id": uuid.uuid4(),
                    "conversation_id": conversation.id,
                    "sender_id": sender_id,
                    "content": text,
                    "read": False,
                },
                commit=False,
            )
            conversation.updated_at = datetime.now(timezone.utc)
            self.db.add(conversation)
            self.db.commit()
            self.db.refresh(msg)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("Failed to save chat message: %s", e)
            raise PersistenceFailed(message="Failed to save message. Please try again.")
        return serialize_message(msg)

    def mark_read(
        self,
        conversation_id: uuid.UUID,
        reader_id: uuid.UUID,
        message_ids: Optional[List[uuid.UUID]] = None,
    ) -> List[uuid.UUID]:
        """
        Mark messages addressed to reader_id as read: the listed ones, or all
        unread ones when message_ids is None. Returns only the ids that changed.
        """
        self.get_conversation_for_participant(conversation_id, reader_id)
        if message_ids is not None and not message_ids:
            return []
        unread = message_crud.list_unread_for_reader(
            self.db,
            conversation_id=conversation_id,
            reader_id=reader_id,
            message_ids=message_ids,
        )
        if not unread:
            return []
        try:
            for msg in unread:
                msg.read = True
                self.db.add(msg)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("Failed to mark messages read: %s", e)
            raise PersistenceFailed(message="Failed to update read state.")
        return [m.id for m in unread]
