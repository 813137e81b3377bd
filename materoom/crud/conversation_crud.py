"""
Conversation CRUD.
"""
from typing import List, Optional
import uuid
from sqlalchemy.orm import Session, joinedload
from sqlalchemy import desc, or_

from materoom.model.conversation import Conversation
from materoom.crud.base import CRUDBase


class CRUDConversation(CRUDBase[Conversation, dict, dict]):
    def get_by_id(self, db: Session, *, conversation_id: uuid.UUID) -> Optional[Conversation]:
        return db.query(self.model).filter(self.model.id == conversation_id).first()

    def get_by_pair(
        self, db: Session, *, user_a: uuid.UUID, user_b: uuid.UUID
    ) -> Optional[Conversation]:
        """Look up the conversation for an unordered pair of users."""
        user1_id, user2_id = Conversation.ordered_pair(user_a, user_b)
        return (
            db.query(self.model)
            .options(joinedload(self.model.user1), joinedload(self.model.user2))
            .filter(self.model.user1_id == user1_id, self.model.user2_id == user2_id)
            .first()
        )

    def list_for_user(self, db: Session, *, user_id: uuid.UUID) -> List[Conversation]:
        """Conversations the user is part of, most recently active first."""
        return (
            db.query(self.model)
            .options(joinedload(self.model.user1), joinedload(self.model.user2))
            .filter(or_(self.model.user1_id == user_id, self.model.user2_id == user_id))
            .order_by(desc(self.model.updated_at))
            .all()
        )

    def list_peer_ids(self, db: Session, *, user_id: uuid.UUID) -> List[uuid.UUID]:
        rows = (
            db.query(self.model.user1_id, self.model.user2_id)
            .filter(or_(self.model.user1_id == user_id, self.model.user2_id == user_id))
            .all()
        )
        return [u2 if u1 == user_id else u1 for u1, u2 in rows]


conversation_crud = CRUDConversation(Conversation)
