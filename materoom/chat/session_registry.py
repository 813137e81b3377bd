"""
In-memory registry of live chat sessions: user -> sessions, room -> sessions.

Process-local and synchronous; only the gateway mutates it. Presence is
derived from it: a user is online while at least one session exists.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ChatSession:
    """One live realtime connection for one user."""
    user_id: uuid.UUID
    connection: Any
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    rooms: Set[uuid.UUID] = field(default_factory=set)

    def in_room(self, conversation_id: uuid.UUID) -> bool:
        return conversation_id in self.rooms


class SessionRegistry:
    """Tracks sessions per user and per conversation room."""

    def __init__(self) -> None:
        self._sessions: Dict[str, ChatSession] = {}
        # user_id -> session ids
        self._by_user: Dict[uuid.UUID, Set[str]] = {}
        # conversation_id -> session ids
        self._rooms: Dict[uuid.UUID, Set[str]] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def add(self, session: ChatSession) -> bool:
        """Register a session. Returns True if this is the user's first session."""
        self._sessions[session.id] = session
        user_sessions = self._by_user.setdefault(session.user_id, set())
        first = not user_sessions
        user_sessions.add(session.id)
        logger.debug("Session %s added for user %s", session.id, session.user_id)
        return first

    def remove(self, session: ChatSession) -> bool:
        """Drop a session and its room memberships. Returns True if the user is now offline."""
        if self._sessions.pop(session.id, None) is None:
            return False
        for room_id in list(session.rooms):
            self._discard_from_room(room_id, session.id)
        session.rooms.clear()
        user_sessions = self._by_user.get(session.user_id)
        if user_sessions is not None:
            user_sessions.discard(session.id)
            if not user_sessions:
                del self._by_user[session.user_id]
                return True
        return False

    def get(self, session_id: str) -> Optional[ChatSession]:
        return self._sessions.get(session_id)

    def sessions_for_user(self, user_id: uuid.UUID) -> List[ChatSession]:
        return [self._sessions[sid] for sid in self._by_user.get(user_id, ())]

    def sessions_in_room(self, conversation_id: uuid.UUID) -> List[ChatSession]:
        return [self._sessions[sid] for sid in self._rooms.get(conversation_id, ())]

    def join(self, session: ChatSession, conversation_id: uuid.UUID) -> bool:
        """Add session to a room. Returns False if it was already there."""
        if session.id not in self._sessions or session.in_room(conversation_id):
            return False
        self._rooms.setdefault(conversation_id, set()).add(session.id)
        session.rooms.add(conversation_id)
        return True

    def leave(self, session: ChatSession, conversation_id: uuid.UUID) -> bool:
        if not session.in_room(conversation_id):
            return False
        session.rooms.discard(conversation_id)
        self._discard_from_room(conversation_id, session.id)
        return True

    def is_online(self, user_id: uuid.UUID) -> bool:
        return user_id in self._by_user

    def online_user_ids(self) -> Set[uuid.UUID]:
        return set(self._by_user)

    def clear(self) -> None:
        for session in self._sessions.values():
            session.rooms.clear()
        self._sessions.clear()
        self._by_user.clear()
        self._rooms.clear()

    def _discard_from_room(self, conversation_id: uuid.UUID, session_id: str) -> None:
        members = self._rooms.get(conversation_id)
        if members is None:
            return
        members.discard(session_id)
        if not members:
            del self._rooms[conversation_id]
