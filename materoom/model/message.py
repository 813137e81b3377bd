"""
Message model. One message in a conversation; only the read flag ever changes.
"""
from sqlalchemy import Column, Text, Boolean, DateTime, ForeignKey, Index, Uuid
from sqlalchemy.orm import relationship
import uuid
from materoom.core.database import Base
from materoom.model.conversation import _utcnow


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    read = Column(Boolean, nullable=False, default=False)
    # Application-assigned so history order has sub-second resolution on every backend
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    conversation = relationship("Conversation", back_populates="messages")
    sender = relationship("User")
