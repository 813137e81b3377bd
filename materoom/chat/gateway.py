"""
Realtime chat gateway: authenticates WebSocket sessions, manages conversation
rooms and relays message, typing, presence and read-receipt events.

Persistence always completes before relay. Sends to one conversation are
serialized by a per-conversation lock, so every observer sees messages in the
same order as the stored history.
"""
import asyncio
import json
import logging
import uuid
import weakref
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from materoom.chat import events
from materoom.chat.session_registry import ChatSession, SessionRegistry
from materoom.core.database import SessionLocal
from materoom.core.exceptions import AppException, EmptyContent, Forbidden, NotFound
from materoom.schema.chat import MessageResponse
from materoom.service.message_store import MessageStore
from materoom.session import resolve_user_id

logger = logging.getLogger(__name__)


class ChatGateway:
    """Event router between live sessions and the message store."""

    def __init__(
        self,
        registry: Optional[SessionRegistry] = None,
        session_factory: Callable = SessionLocal,
        credential_resolver: Callable[[Optional[str]], Optional[uuid.UUID]] = resolve_user_id,
    ) -> None:
        self.registry = registry or SessionRegistry()
        self.session_factory = session_factory
        self.credential_resolver = credential_resolver
        self._locks: "weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._handlers = {
            events.CONVERSATION_JOIN: self._on_join,
            events.CONVERSATION_LEAVE: self._on_leave,
            events.MESSAGE_SEND: self._on_send,
            events.TYPING_START: self._on_typing,
            events.TYPING_STOP: self._on_typing,
            events.MESSAGES_READ: self._on_read,
        }

    # --- Store access ---

    async def _call_store(self, fn: Callable[[MessageStore], Any]) -> Any:
        """Run fn against a fresh MessageStore off the event loop."""
        def run():
            db = self.session_factory()
            try:
                return fn(MessageStore(db))
            finally:
                db.close()
        return await run_in_threadpool(run)

    def _lock_for(self, conversation_id: uuid.UUID) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    # --- Lifecycle ---

    async def connect(self, connection: Any, token: Optional[str]) -> Optional[ChatSession]:
        """Authenticate and register a session. Returns None if the credential is rejected."""
        user_id = await run_in_threadpool(self.credential_resolver, token)
        if user_id is None:
            logger.info("Realtime connection rejected: invalid credential")
            return None
        session = ChatSession(user_id=user_id, connection=connection)
        first = self.registry.add(session)
        logger.info("User %s connected (session %s)", user_id, session.id)

        peers = await self._peer_ids(user_id)
        if self.registry.get(session.id) is None:
            # closed while peers were being looked up
            return session
        if first:
            await self._emit_to_users(peers, events.USER_ONLINE, {"user_id": str(user_id)})
        for peer_id in peers:
            if self.registry.is_online(peer_id):
                await self.send(session, events.USER_ONLINE, {"user_id": str(peer_id)})
        return session

    async def disconnect(self, session: ChatSession) -> None:
        went_offline = self.registry.remove(session)
        logger.info("User %s disconnected (session %s)", session.user_id, session.id)
        if went_offline:
            peers = await self._peer_ids(session.user_id)
            if self.registry.is_online(session.user_id):
                # reconnected while peers were being looked up
                return
            await self._emit_to_users(peers, events.USER_OFFLINE, {"user_id": str(session.user_id)})

    def clear(self) -> None:
        """Forget every session and room. Called on shutdown."""
        self.registry.clear()
        self._locks.clear()

    async def _peer_ids(self, user_id: uuid.UUID) -> List[uuid.UUID]:
        try:
            return await self._call_store(lambda store: store.peer_ids(user_id))
        except SQLAlchemyError as e:
            logger.warning("Presence lookup failed for %s: %s", user_id, e)
            return []

    # --- Inbound ---

    async def handle(self, session: ChatSession, raw: str) -> None:
        """Dispatch one inbound frame. Errors go back to this session only."""
        try:
            obj = json.loads(raw)
        except json.JSONDecodeError:
            await self.send_error(session, "INVALID_JSON", "Frame must be valid JSON.")
            return
        if not isinstance(obj, dict):
            await self.send_error(session, "INVALID_FRAME", "Frame must be a JSON object.")
            return

        event = obj.get("event")
        payload = obj.get("payload") or {}
        handler = self._handlers.get(event)
        if handler is None:
            await self.send_error(session, "UNKNOWN_EVENT", f"Unknown event: {event}.", event)
            return
        if not isinstance(payload, dict):
            await self.send_error(session, "INVALID_PAYLOAD", "Payload must be a JSON object.", event)
            return

        try:
            await handler(session, event, payload)
        except ValidationError as e:
            await self.send_error(session, "INVALID_PAYLOAD", _first_error(e), event)
        except AppException as e:
            logger.warning("Event %s from user %s rejected: %s", event, session.user_id, e.code)
            await self.send_error(session, e.code, e.message, event)
        except SQLAlchemyError:
            logger.exception("Store failure handling %s", event)
            await self.send_error(session, "SERVICE_ERROR", "Temporary failure. Please try again.", event)

    async def _on_join(self, session: ChatSession, event: str, payload: Dict[str, Any]) -> None:
        ref = events.ConversationRef.model_validate(payload)
        if session.in_room(ref.conversation_id):
            return
        allowed = await self._call_store(
            lambda store: store.is_participant(ref.conversation_id, session.user_id)
        )
        if not allowed:
            logger.info("User %s denied join to %s", session.user_id, ref.conversation_id)
            return
        if self.registry.join(session, ref.conversation_id):
            logger.debug("User %s joined %s", session.user_id, ref.conversation_id)

    async def _on_leave(self, session: ChatSession, event: str, payload: Dict[str, Any]) -> None:
        ref = events.ConversationRef.model_validate(payload)
        self.registry.leave(session, ref.conversation_id)

    async def _on_send(self, session: ChatSession, event: str, payload: Dict[str, Any]) -> None:
        data = events.SendMessage.model_validate(payload)
        await self.send_message(session.user_id, data.conversation_id, data.content, origin=session)

    async def _on_typing(self, session: ChatSession, event: str, payload: Dict[str, Any]) -> None:
        ref = events.ConversationRef.model_validate(payload)
        if not session.in_room(ref.conversation_id):
            return
        body = {"conversation_id": str(ref.conversation_id), "user_id": str(session.user_id)}
        for other in self.registry.sessions_in_room(ref.conversation_id):
            if other is not session:
                await self.send(other, event, body)

    async def _on_read(self, session: ChatSession, event: str, payload: Dict[str, Any]) -> None:
        data = events.ReadMessages.model_validate(payload)
        try:
            await self.mark_read(session.user_id, data.conversation_id, data.message_ids)
        except (Forbidden, NotFound):
            logger.info("User %s denied read on %s", session.user_id, data.conversation_id)

    # --- Operations shared with REST ---

    async def send_message(
        self,
        sender_id: uuid.UUID,
        conversation_id: uuid.UUID,
        content: str,
        origin: Optional[ChatSession] = None,
    ) -> MessageResponse:
        """Persist a message, then relay it. Raises AppException without relaying on failure."""
        if not isinstance(content, str) or not content.strip():
            raise EmptyContent()

        def persist(store: MessageStore):
            message = store.create_message(conversation_id, sender_id, content)
            return message, store.participant_ids(conversation_id)

        async with self._lock_for(conversation_id):
            message, participants = await self._call_store(persist)
            await self._relay_new_message(conversation_id, participants, message, origin)
        return message

    async def mark_read(
        self,
        reader_id: uuid.UUID,
        conversation_id: uuid.UUID,
        message_ids: Optional[List[uuid.UUID]] = None,
    ) -> List[uuid.UUID]:
        changed = await self._call_store(
            lambda store: store.mark_read(conversation_id, reader_id, message_ids)
        )
        if changed:
            body = {
                "conversation_id": str(conversation_id),
                "user_id": str(reader_id),
                "message_ids": [str(mid) for mid in changed],
            }
            for other in self.registry.sessions_in_room(conversation_id):
                if other.user_id != reader_id:
                    await self.send(other, events.MESSAGES_READ, body)
        return changed

    async def _relay_new_message(
        self,
        conversation_id: uuid.UUID,
        participants: Iterable[uuid.UUID],
        message: MessageResponse,
        origin: Optional[ChatSession],
    ) -> None:
        payload = message.model_dump(mode="json")
        for member in self.registry.sessions_in_room(conversation_id):
            await self.send(member, events.MESSAGE_NEW, payload)
        if origin is not None and not origin.in_room(conversation_id):
            await self.send(origin, events.MESSAGE_NEW, payload)

        summary = {"conversation_id": str(conversation_id), "message": payload}
        for user_id in participants:
            for other in self.registry.sessions_for_user(user_id):
                if other is origin or other.in_room(conversation_id):
                    continue
                await self.send(other, events.CONVERSATION_NEW_MESSAGE, summary)

    # --- Outbound ---

    async def send(self, session: ChatSession, event: str, payload: Any) -> bool:
        """Send one frame to a session. A dead socket is logged, not raised."""
        text = json.dumps(events.frame(event, payload), default=str)
        try:
            await session.connection.send_text(text)
            return True
        except Exception as e:
            logger.warning("Send of %s to session %s failed: %s", event, session.id, e)
            return False

    async def send_error(
        self, session: ChatSession, code: str, message: str, event: Optional[str] = None
    ) -> None:
        payload = {"code": code, "message": message}
        if event:
            payload["event"] = event
        await self.send(session, events.ERROR, payload)

    async def _emit_to_users(self, user_ids: Iterable[uuid.UUID], event: str, payload: Any) -> None:
        for user_id in user_ids:
            for session in self.registry.sessions_for_user(user_id):
                await self.send(session, event, payload)


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    where = ".".join(str(p) for p in err.get("loc", ()))
    return f"{where}: {err.get('msg')}" if where else err.get("msg", "Invalid payload.")


chat_gateway = ChatGateway()
