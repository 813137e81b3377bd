"""
Client sync controller: keeps one participant's view of conversations and
messages consistent across the realtime gateway and REST polling.

Connection lifecycle: disconnected -> connecting -> connected, with automatic
reconnection and capped exponential backoff. Once the attempt budget is spent
the controller flags itself degraded (user-visible "offline") but keeps
retrying in the background. While not connected it polls the REST API and
sends through it.
"""
import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from materoom.chat import events
from materoom.client.rest import ChatClientError, ChatRestClient
from materoom.client.state import MessageLog
from materoom.client.transport import TransportError

logger = logging.getLogger(__name__)


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class SyncSettings:
    reconnect_attempts: int = 5
    reconnect_delay: float = 1.0
    reconnect_delay_max: float = 5.0
    handshake_timeout: float = 10.0
    poll_interval: float = 3.0
    typing_idle_timeout: float = 2.0

    def backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        return min(self.reconnect_delay * (2 ** max(attempt - 1, 0)), self.reconnect_delay_max)


class ChatSyncController:
    def __init__(
        self,
        user_id: str,
        rest: ChatRestClient,
        transport_factory: Callable[[], Any],
        settings: Optional[SyncSettings] = None,
    ):
        self.user_id = str(user_id)
        self.rest = rest
        self.transport_factory = transport_factory
        self.settings = settings or SyncSettings()

        self.state = ConnectionState.DISCONNECTED
        self.degraded = False
        self.auth_failed = False
        self.last_error: Optional[Dict[str, Any]] = None

        self.conversations: Dict[str, Dict[str, Any]] = {}
        self.messages: Dict[str, MessageLog] = {}
        self.typing: Dict[str, Set[str]] = {}
        self.online_users: Set[str] = set()
        self.active_conversation: Optional[str] = None

        self._transport = None
        self._connected = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._typing_task: Optional[asyncio.Task] = None
        self._typing_sent = False
        self._closed = False

    # --- Lifecycle ---

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    async def start(self) -> None:
        self._closed = False
        await self.refresh_conversations()
        self._tasks = [
            asyncio.create_task(self._connection_loop()),
            asyncio.create_task(self._poll_loop()),
        ]

    async def stop(self) -> None:
        self._closed = True
        self._cancel_typing_timer()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        await self._drop_transport()
        self.state = ConnectionState.DISCONNECTED

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _connection_loop(self) -> None:
        attempt = 0
        while not self._closed:
            self.state = ConnectionState.CONNECTING
            transport = self.transport_factory()
            try:
                await asyncio.wait_for(transport.connect(), self.settings.handshake_timeout)
            except (asyncio.TimeoutError, TransportError, OSError) as e:
                attempt += 1
                self.state = ConnectionState.DISCONNECTED
                if attempt >= self.settings.reconnect_attempts and not self.degraded:
                    logger.info("Realtime unavailable after %d attempts, using REST fallback", attempt)
                    self.degraded = True
                else:
                    logger.debug("Connect attempt %d failed: %s", attempt, e)
                await asyncio.sleep(self.settings.backoff(attempt))
                continue

            attempt = 0
            self._transport = transport
            self.state = ConnectionState.CONNECTED
            self.degraded = False
            self._connected.set()
            logger.info("Connected to chat gateway")
            try:
                await self._on_connected()
                while True:
                    event, payload = await transport.receive()
                    try:
                        await self._dispatch(event, payload)
                    except (KeyError, TypeError, ValueError) as e:
                        logger.warning("Dropping malformed %s frame: %r", event, e)
            except TransportError as e:
                if e.code == events.CLOSE_AUTH_FAILED:
                    logger.warning("Gateway rejected credential; not reconnecting")
                    self.auth_failed = True
                    self.degraded = True
                    self.last_error = {"code": "NOT_AUTHENTICATED", "message": str(e)}
                    await self._drop_transport()
                    self.state = ConnectionState.DISCONNECTED
                    return
                logger.info("Disconnected from chat gateway: %s", e)
            finally:
                self._connected.clear()
                self._typing_sent = False
                self.typing.clear()
                # peers that left while disconnected are never announced
                self.online_users.clear()
                if self._transport is transport:
                    await self._drop_transport()
                if self.state is ConnectionState.CONNECTED:
                    self.state = ConnectionState.DISCONNECTED
            attempt = 1
            await asyncio.sleep(self.settings.backoff(attempt))

    async def _drop_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close()
            except (TransportError, OSError) as e:
                logger.debug("Transport close failed: %s", e)

    async def _on_connected(self) -> None:
        """Rejoin the active room and reconcile anything missed while offline."""
        if self.active_conversation:
            await self._emit(events.CONVERSATION_JOIN, {"conversation_id": self.active_conversation})
            await self._emit(events.MESSAGES_READ, {"conversation_id": self.active_conversation})
            await self.sync_messages(self.active_conversation)
        await self.refresh_conversations()

    async def _poll_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.settings.poll_interval)
            if self.connected:
                continue
            await self.refresh_conversations()
            if self.active_conversation:
                await self.sync_messages(self.active_conversation)

    async def _emit(self, event: str, payload: Dict[str, Any]) -> bool:
        """Send over the gateway if connected. Returns False when it could not be sent."""
        transport = self._transport
        if transport is None or not self.connected:
            return False
        try:
            await transport.send(event, payload)
            return True
        except TransportError as e:
            logger.info("Realtime send of %s failed: %s", event, e)
            return False

    # --- REST reconciliation ---

    async def refresh_conversations(self) -> bool:
        try:
            items = await self.rest.list_conversations()
        except ChatClientError as e:
            logger.warning("Conversation refresh failed: %s", e)
            return False
        try:
            fresh = {str(c["id"]): c for c in items}
        except (KeyError, TypeError) as e:
            logger.warning("Malformed conversation list: %r", e)
            return False
        if self.active_conversation in fresh:
            fresh[self.active_conversation]["unread_count"] = 0
        self.conversations = fresh
        return True

    async def sync_messages(self, conversation_id: str) -> bool:
        try:
            items = await self.rest.list_messages(conversation_id)
        except ChatClientError as e:
            logger.warning("Message sync for %s failed: %s", conversation_id, e)
            return False
        try:
            self.log_for(conversation_id).merge(items)
        except (KeyError, TypeError) as e:
            logger.warning("Malformed message list for %s: %r", conversation_id, e)
            return False
        return True

    # --- Conversations ---

    def log_for(self, conversation_id: str) -> MessageLog:
        return self.messages.setdefault(str(conversation_id), MessageLog())

    def messages_for(self, conversation_id: str) -> List[Dict[str, Any]]:
        return self.log_for(conversation_id).items()

    def find_conversation_with(self, other_user_id: str) -> Optional[str]:
        for cid, conv in self.conversations.items():
            if str(conv.get("other_user", {}).get("id")) == str(other_user_id):
                return cid
        return None

    async def open_conversation(self, conversation_id: str) -> None:
        conversation_id = str(conversation_id)
        if self.active_conversation and self.active_conversation != conversation_id:
            await self.close_conversation()
        self.active_conversation = conversation_id
        await self.sync_messages(conversation_id)
        if conversation_id in self.conversations:
            self.conversations[conversation_id]["unread_count"] = 0
        await self._emit(events.CONVERSATION_JOIN, {"conversation_id": conversation_id})
        await self._emit(events.MESSAGES_READ, {"conversation_id": conversation_id})

    async def close_conversation(self) -> None:
        conversation_id, self.active_conversation = self.active_conversation, None
        if conversation_id is None:
            return
        await self._stop_typing(conversation_id)
        self.typing.pop(conversation_id, None)
        await self._emit(events.CONVERSATION_LEAVE, {"conversation_id": conversation_id})

    async def start_conversation(self, other_user_id: str) -> str:
        """
        Open the conversation with other_user_id, creating it if needed.
        Uses the local list first; the server call is idempotent per pair.

        Raises:
            ValueError: empty id or own id
            ChatClientError: server rejected the target (e.g. unknown user)
        """
        other_user_id = (other_user_id or "").strip()
        if not other_user_id:
            raise ValueError("Invalid user id.")
        if other_user_id == self.user_id:
            raise ValueError("Cannot start a conversation with yourself.")

        conversation_id = self.find_conversation_with(other_user_id)
        if conversation_id is None:
            created = await self.rest.create_or_get_conversation(other_user_id)
            conversation_id = str(created["id"])
            if conversation_id not in self.conversations:
                self.conversations[conversation_id] = {
                    "id": conversation_id,
                    "other_user": created["other_user"],
                    "last_message": None,
                    "unread_count": 0,
                    "updated_at": None,
                }
            await self.refresh_conversations()
        await self.open_conversation(conversation_id)
        return conversation_id

    # --- Sending ---

    async def send_message(self, content: str) -> Optional[Dict[str, Any]]:
        """
        Send to the active conversation. Goes through the gateway when connected
        (the message arrives back as message:new); otherwise, or if the gateway
        send fails, through REST, merging the server-confirmed message at once.

        Raises:
            ValueError: no active conversation or empty content
            ChatClientError: REST send failed (caller offers retry)
        """
        conversation_id = self.active_conversation
        if conversation_id is None:
            raise ValueError("No conversation selected.")
        text = (content or "").strip()
        if not text:
            raise ValueError("Message content cannot be empty.")

        if await self._emit(events.MESSAGE_SEND, {"conversation_id": conversation_id, "content": text}):
            await self._stop_typing(conversation_id)
            return None

        message = await self.rest.send_message(conversation_id, text)
        self.log_for(conversation_id).merge([message])
        self._touch_conversation(conversation_id, message, unread=False)
        return message

    async def mark_read(self, message_ids: Optional[List[str]] = None) -> None:
        if self.active_conversation is None:
            return
        payload: Dict[str, Any] = {"conversation_id": self.active_conversation}
        if message_ids is not None:
            payload["message_ids"] = [str(m) for m in message_ids]
        await self._emit(events.MESSAGES_READ, payload)

    # --- Typing ---

    async def notify_typing(self) -> None:
        """Call on each input change. Sends typing:start once, typing:stop after input goes idle."""
        conversation_id = self.active_conversation
        if conversation_id is None or not self.connected:
            return
        if not self._typing_sent:
            self._typing_sent = await self._emit(events.TYPING_START, {"conversation_id": conversation_id})
        self._cancel_typing_timer()
        self._typing_task = asyncio.create_task(self._typing_timeout(conversation_id))

    async def _typing_timeout(self, conversation_id: str) -> None:
        await asyncio.sleep(self.settings.typing_idle_timeout)
        self._typing_task = None
        await self._stop_typing(conversation_id)

    async def _stop_typing(self, conversation_id: str) -> None:
        self._cancel_typing_timer()
        if self._typing_sent:
            self._typing_sent = False
            await self._emit(events.TYPING_STOP, {"conversation_id": conversation_id})

    def _cancel_typing_timer(self) -> None:
        task, self._typing_task = self._typing_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def typing_users(self, conversation_id: str) -> Set[str]:
        return set(self.typing.get(str(conversation_id), ()))

    def is_online(self, user_id: str) -> bool:
        return str(user_id) in self.online_users

    # --- Inbound events ---

    async def _dispatch(self, event: str, payload: Any) -> None:
        handler = {
            events.MESSAGE_NEW: self._on_message_new,
            events.CONVERSATION_NEW_MESSAGE: self._on_conversation_new_message,
            events.TYPING_START: self._on_typing,
            events.TYPING_STOP: self._on_typing,
            events.USER_ONLINE: self._on_presence,
            events.USER_OFFLINE: self._on_presence,
            events.MESSAGES_READ: self._on_messages_read,
            events.ERROR: self._on_error,
        }.get(event)
        if handler is None:
            logger.debug("Ignoring event %s", event)
            return
        if not isinstance(payload, dict):
            logger.warning("Malformed %s payload", event)
            return
        await handler(event, payload)

    async def _on_message_new(self, event: str, message: Dict[str, Any]) -> None:
        if not message.get("conversation_id") or not message.get("id"):
            logger.warning("message:new without conversation_id or id")
            return
        conversation_id = str(message["conversation_id"])
        self.log_for(conversation_id).merge([message])
        from_other = str(message.get("sender_id")) != self.user_id
        if from_other:
            self.typing.get(conversation_id, set()).discard(str(message.get("sender_id")))
        viewing = conversation_id == self.active_conversation
        if not self._touch_conversation(conversation_id, message, unread=from_other and not viewing):
            await self.refresh_conversations()
        if viewing and from_other:
            await self._emit(
                events.MESSAGES_READ,
                {"conversation_id": conversation_id, "message_ids": [str(message["id"])]},
            )

    async def _on_conversation_new_message(self, event: str, payload: Dict[str, Any]) -> None:
        if not payload.get("conversation_id"):
            logger.warning("conversation:new-message without conversation_id")
            return
        conversation_id = str(payload["conversation_id"])
        message = payload.get("message") or {}
        if conversation_id in self.messages and message.get("id"):
            self.log_for(conversation_id).merge([message])
        from_other = str(message.get("sender_id")) != self.user_id
        if not self._touch_conversation(conversation_id, message, unread=from_other):
            await self.refresh_conversations()

    async def _on_typing(self, event: str, payload: Dict[str, Any]) -> None:
        conversation_id = str(payload.get("conversation_id"))
        user_id = str(payload.get("user_id"))
        if user_id == self.user_id:
            return
        if event == events.TYPING_START:
            self.typing.setdefault(conversation_id, set()).add(user_id)
        else:
            self.typing.get(conversation_id, set()).discard(user_id)

    async def _on_presence(self, event: str, payload: Dict[str, Any]) -> None:
        user_id = str(payload.get("user_id"))
        if event == events.USER_ONLINE:
            self.online_users.add(user_id)
        else:
            self.online_users.discard(user_id)

    async def _on_messages_read(self, event: str, payload: Dict[str, Any]) -> None:
        conversation_id = str(payload.get("conversation_id"))
        message_ids = payload.get("message_ids") or []
        self.log_for(conversation_id).mark_read(message_ids)

    async def _on_error(self, event: str, payload: Dict[str, Any]) -> None:
        logger.warning("Gateway error: %s", payload.get("message"))
        self.last_error = payload

    def _touch_conversation(self, conversation_id: str, message: Dict[str, Any], unread: bool) -> bool:
        """Update the local summary from a message. Returns False if the conversation is unknown."""
        conv = self.conversations.get(conversation_id)
        if conv is None:
            return False
        if message.get("id"):
            conv["last_message"] = {
                "id": message["id"],
                "content": message.get("content"),
                "sender_id": message.get("sender_id"),
                "created_at": message.get("created_at"),
            }
            conv["updated_at"] = message.get("created_at")
        if unread:
            conv["unread_count"] = int(conv.get("unread_count") or 0) + 1
        return True
