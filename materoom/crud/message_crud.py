"""
Message CRUD.
"""
from typing import Dict, List, Optional
import uuid
from sqlalchemy.orm import Session, joinedload
from sqlalchemy import desc, func

from materoom.model.message import Message
from materoom.crud.base import CRUDBase


class CRUDMessage(CRUDBase[Message, dict, dict]):
    def list_by_conversation(self, db: Session, *, conversation_id: uuid.UUID) -> List[Message]:
        """Full history, oldest first. Same order the gateway relays in."""
        return (
            db.query(self.model)
            .options(joinedload(self.model.sender))
            .filter(self.model.conversation_id == conversation_id)
            .order_by(self.model.created_at, self.model.id)
            .all()
        )

    def get_last(self, db: Session, *, conversation_id: uuid.UUID) -> Optional[Message]:
        return (
            db.query(self.model)
            .filter(self.model.conversation_id == conversation_id)
            .order_by(desc(self.model.created_at), desc(self.model.id))
            .first()
        )

    def count_unread_by_conversation(
        self, db: Session, *, conversation_ids: List[uuid.UUID], reader_id: uuid.UUID
    ) -> Dict[uuid.UUID, int]:
        """Unread messages addressed to reader, per conversation."""
        if not conversation_ids:
            return {}
        rows = (
            db.query(self.model.conversation_id, func.count(self.model.id))
            .filter(
                self.model.conversation_id.in_(conversation_ids),
                self.model.sender_id != reader_id,
                self.model.read.is_(False),
            )
            .group_by(self.model.conversation_id)
            .all()
        )
        return {cid: count for cid, count in rows}

    def list_unread_for_reader(
        self,
        db: Session,
        *,
        conversation_id: uuid.UUID,
        reader_id: uuid.UUID,
        message_ids: Optional[List[uuid.UUID]] = None,
    ) -> List[Message]:
        query = db.query(self.model).filter(
            self.model.conversation_id == conversation_id,
            self.model.sender_id != reader_id,
            self.model.read.is_(False),
        )
        if message_ids is not None:
            query = query.filter(self.model.id.in_(message_ids))
        return query.order_by(self.model.created_at, self.model.id).all()


message_crud = CRUDMessage(Message)
