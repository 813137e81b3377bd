import asyncio
import uuid
from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from materoom.chat import events
from materoom.client.rest import ChatClientError
from materoom.client.sync_controller import ChatSyncController, ConnectionState, SyncSettings
from materoom.client.transport import TransportError

FAST = SyncSettings(
    reconnect_attempts=2,
    reconnect_delay=0.01,
    reconnect_delay_max=0.02,
    handshake_timeout=0.5,
    poll_interval=0.02,
    typing_idle_timeout=0.05,
)

ALICE, BOB, CAROL = "alice-id", "bob-id", "carol-id"


class FakeBackend:
    """Server-side state shared by every participant's REST view."""

    def __init__(self):
        self.pairs = {}
        self.messages = {}
        self.down = False
        self._clock = datetime(2026, 1, 1, 12, 0, 0)

    def add_conversation(self, a, b):
        cid = str(uuid.uuid4())
        self.pairs[cid] = (a, b)
        self.messages[cid] = []
        return cid

    def add_message(self, cid, sender, content):
        self._clock += timedelta(seconds=1)
        msg = {
            "id": str(uuid.uuid4()),
            "conversation_id": cid,
            "sender_id": sender,
            "sender": {"id": sender, "name": sender, "email": f"{sender}@example.com"},
            "content": content,
            "read": False,
            "created_at": self._clock.isoformat(),
        }
        self.messages[cid].append(msg)
        return dict(msg)


class FakeRest:
    def __init__(self, backend, user_id):
        self.backend = backend
        self.user_id = user_id
        self.created = []
        self.sent = []

    def _check(self):
        if self.backend.down:
            raise ChatClientError("GET conversations failed: connection refused")

    async def list_conversations(self):
        self._check()
        items = []
        for cid, pair in self.backend.pairs.items():
            if self.user_id not in pair:
                continue
            other = pair[1] if pair[0] == self.user_id else pair[0]
            msgs = self.backend.messages[cid]
            items.append({
                "id": cid,
                "other_user": {"id": other, "name": other, "email": f"{other}@example.com"},
                "last_message": msgs[-1] if msgs else None,
                "unread_count": sum(1 for m in msgs if m["sender_id"] != self.user_id and not m["read"]),
                "updated_at": msgs[-1]["created_at"] if msgs else None,
            })
        return items

    async def create_or_get_conversation(self, other_user_id):
        self._check()
        self.created.append(other_user_id)
        for cid, pair in self.backend.pairs.items():
            if set(pair) == {self.user_id, other_user_id}:
                break
        else:
            cid = self.backend.add_conversation(self.user_id, other_user_id)
        return {"id": cid, "other_user": {"id": other_user_id, "name": other_user_id, "email": None}}

    async def list_messages(self, conversation_id, mark_read=True):
        self._check()
        return [dict(m) for m in self.backend.messages[conversation_id]]

    async def send_message(self, conversation_id, content):
        self._check()
        self.sent.append(content)
        return self.backend.add_message(conversation_id, self.user_id, content)


class FakeHub:
    """Hands out transports and records what the controller sent."""

    def __init__(self, refuse=0):
        self.refuse = refuse
        self.fail_sends = False
        self.transports = []
        self.outbound = []

    def factory(self):
        transport = FakeTransport(self)
        self.transports.append(transport)
        return transport

    @property
    def current(self):
        return self.transports[-1]

    def sent(self, event):
        return [p for e, p in self.outbound if e == event]


class FakeTransport:
    def __init__(self, hub):
        self.hub = hub
        self.inbox = asyncio.Queue()
        self.closed = False

    async def connect(self):
        if self.hub.refuse > 0:
            self.hub.refuse -= 1
            raise TransportError("connection refused")

    async def send(self, event, payload):
        if self.closed or self.hub.fail_sends:
            raise TransportError("connection closed", code=1006)
        self.hub.outbound.append((event, payload))

    async def receive(self):
        item = await self.inbox.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True

    def push(self, event, payload):
        self.inbox.put_nowait((event, payload))

    def drop(self, code=1006):
        self.inbox.put_nowait(TransportError("connection closed", code=code))


async def eventually(condition, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest_asyncio.fixture
async def make_controller(backend):
    """Build controllers on the shared backend; stopped at teardown."""
    made = []

    def build(user_id, hub=None):
        hub = hub or FakeHub()
        controller = ChatSyncController(user_id, FakeRest(backend, user_id), hub.factory, settings=FAST)
        made.append(controller)
        return controller, hub

    yield build
    for controller in made:
        await controller.stop()


class TestSyncSettings:
    def test_backoff_doubles_up_to_cap(self):
        settings = SyncSettings()

        assert [settings.backoff(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


class TestConnectionLifecycle:
    """Reconnect, backoff and degraded mode."""

    @pytest.mark.asyncio
    async def test_connects_after_transient_failures(self, make_controller):
        controller, hub = make_controller(ALICE, FakeHub(refuse=1))

        await controller.start()

        assert await controller.wait_connected(timeout=1.0)
        assert controller.state is ConnectionState.CONNECTED
        assert controller.degraded is False
        assert len(hub.transports) == 2

    @pytest.mark.asyncio
    async def test_degraded_after_attempts_exhausted_then_recovers(self, make_controller):
        controller, hub = make_controller(ALICE, FakeHub(refuse=4))

        await controller.start()
        await eventually(lambda: controller.degraded)
        assert controller.state is not ConnectionState.CONNECTED

        await eventually(lambda: controller.connected)
        assert controller.degraded is False

    @pytest.mark.asyncio
    async def test_drop_reconnects_and_rejoins_active_conversation(self, backend, make_controller):
        cid = backend.add_conversation(ALICE, BOB)
        controller, hub = make_controller(ALICE)
        await controller.start()
        await controller.wait_connected(timeout=1.0)
        await controller.open_conversation(cid)

        hub.current.drop()

        await eventually(lambda: len(hub.sent(events.CONVERSATION_JOIN)) == 2)
        assert hub.sent(events.CONVERSATION_JOIN) == [{"conversation_id": cid}] * 2
        assert len(hub.transports) == 2
        assert hub.transports[0].closed

    @pytest.mark.asyncio
    async def test_auth_rejection_stops_reconnecting(self, make_controller):
        controller, hub = make_controller(ALICE)
        await controller.start()
        await controller.wait_connected(timeout=1.0)

        hub.current.drop(code=events.CLOSE_AUTH_FAILED)

        await eventually(lambda: controller.auth_failed)
        await asyncio.sleep(0.05)
        assert len(hub.transports) == 1
        assert controller.state is ConnectionState.DISCONNECTED
        assert controller.last_error["code"] == "NOT_AUTHENTICATED"

    @pytest.mark.asyncio
    async def test_presence_is_forgotten_across_reconnect(self, make_controller):
        controller, hub = make_controller(ALICE)
        await controller.start()
        await controller.wait_connected(timeout=1.0)
        hub.current.push(events.USER_ONLINE, {"user_id": BOB})
        await eventually(lambda: controller.is_online(BOB))

        hub.current.drop()

        await eventually(lambda: len(hub.transports) == 2 and controller.connected)
        assert not controller.is_online(BOB)


class TestSending:
    """Realtime send when connected, REST fallback otherwise."""

    @pytest.mark.asyncio
    async def test_connected_send_goes_over_gateway(self, backend, make_controller):
        cid = backend.add_conversation(ALICE, BOB)
        controller, hub = make_controller(ALICE)
        await controller.start()
        await controller.wait_connected(timeout=1.0)
        await controller.open_conversation(cid)

        assert await controller.send_message("  hi bob ") is None

        assert hub.sent(events.MESSAGE_SEND) == [{"conversation_id": cid, "content": "hi bob"}]
        assert controller.rest.sent == []

    @pytest.mark.asyncio
    async def test_degraded_send_reaches_polling_peer(self, backend, make_controller):
        cid = backend.add_conversation(ALICE, BOB)
        alice, _ = make_controller(ALICE, FakeHub(refuse=float("inf")))
        bob, _ = make_controller(BOB, FakeHub(refuse=float("inf")))
        for controller in (alice, bob):
            await controller.start()
            await controller.open_conversation(cid)
        await eventually(lambda: alice.degraded)

        sent = await alice.send_message("offline hello")

        assert [m["id"] for m in alice.messages_for(cid)] == [sent["id"]]
        await eventually(lambda: [m["content"] for m in bob.messages_for(cid)] == ["offline hello"])

    @pytest.mark.asyncio
    async def test_same_message_from_every_path_shows_once(self, backend, make_controller):
        cid = backend.add_conversation(ALICE, BOB)
        controller, hub = make_controller(ALICE)
        await controller.start()
        await controller.wait_connected(timeout=1.0)
        await controller.open_conversation(cid)
        hub.fail_sends = True

        sent = await controller.send_message("three ways")
        hub.current.push(events.MESSAGE_NEW, sent)
        await eventually(lambda: hub.current.inbox.empty())
        await controller.sync_messages(cid)

        assert [m["id"] for m in controller.messages_for(cid)] == [sent["id"]]

    @pytest.mark.asyncio
    async def test_rest_failure_surfaces_to_caller(self, backend, make_controller):
        cid = backend.add_conversation(ALICE, BOB)
        controller, _ = make_controller(ALICE)
        await controller.open_conversation(cid)
        backend.down = True

        with pytest.raises(ChatClientError):
            await controller.send_message("hello?")
        assert controller.messages_for(cid) == []

    @pytest.mark.asyncio
    async def test_invalid_sends(self, backend, make_controller):
        controller, _ = make_controller(ALICE)

        with pytest.raises(ValueError):
            await controller.send_message("no conversation open")

        await controller.open_conversation(backend.add_conversation(ALICE, BOB))
        with pytest.raises(ValueError):
            await controller.send_message("   ")


class TestInboundEvents:
    """Gateway events applied to local state."""

    @pytest.mark.asyncio
    async def test_incoming_message_in_open_conversation_is_acknowledged(self, backend, make_controller):
        cid = backend.add_conversation(ALICE, BOB)
        controller, hub = make_controller(ALICE)
        await controller.start()
        await controller.wait_connected(timeout=1.0)
        await controller.open_conversation(cid)

        incoming = backend.add_message(cid, BOB, "hey")
        own = backend.add_message(cid, ALICE, "hi")
        hub.current.push(events.MESSAGE_NEW, incoming)
        hub.current.push(events.MESSAGE_NEW, own)

        await eventually(lambda: len(controller.messages_for(cid)) == 2)
        acks = [p for p in hub.sent(events.MESSAGES_READ) if "message_ids" in p]
        assert acks == [{"conversation_id": cid, "message_ids": [incoming["id"]]}]
        assert controller.conversations[cid]["unread_count"] == 0

    @pytest.mark.asyncio
    async def test_read_receipt_marks_exactly_listed_messages(self, backend, make_controller):
        cid = backend.add_conversation(ALICE, BOB)
        controller, hub = make_controller(ALICE)
        await controller.start()
        await controller.wait_connected(timeout=1.0)
        first = backend.add_message(cid, ALICE, "one")
        second = backend.add_message(cid, ALICE, "two")
        await controller.open_conversation(cid)

        hub.current.push(events.MESSAGES_READ, {
            "conversation_id": cid, "user_id": BOB, "message_ids": [first["id"]],
        })

        await eventually(lambda: controller.messages_for(cid)[0]["read"])
        assert [m["read"] for m in controller.messages_for(cid)] == [True, False]
        assert second["id"] in controller.log_for(cid)

    @pytest.mark.asyncio
    async def test_notification_bumps_unread_for_other_conversation(self, backend, make_controller):
        with_bob = backend.add_conversation(ALICE, BOB)
        with_carol = backend.add_conversation(ALICE, CAROL)
        controller, hub = make_controller(ALICE)
        await controller.start()
        await controller.wait_connected(timeout=1.0)
        await controller.open_conversation(with_bob)

        note = backend.add_message(with_carol, CAROL, "psst")
        hub.current.push(events.CONVERSATION_NEW_MESSAGE, {"conversation_id": with_carol, "message": note})

        await eventually(lambda: controller.conversations[with_carol]["unread_count"] == 1)
        assert controller.conversations[with_carol]["last_message"]["content"] == "psst"
        assert controller.conversations[with_bob]["unread_count"] == 0

    @pytest.mark.asyncio
    async def test_presence_and_typing(self, backend, make_controller):
        cid = backend.add_conversation(ALICE, BOB)
        controller, hub = make_controller(ALICE)
        await controller.start()
        await controller.wait_connected(timeout=1.0)
        await controller.open_conversation(cid)

        hub.current.push(events.USER_ONLINE, {"user_id": BOB})
        hub.current.push(events.TYPING_START, {"conversation_id": cid, "user_id": BOB})
        await eventually(lambda: controller.typing_users(cid) == {BOB})
        assert controller.is_online(BOB)

        hub.current.push(events.TYPING_STOP, {"conversation_id": cid, "user_id": BOB})
        hub.current.push(events.USER_OFFLINE, {"user_id": BOB})
        await eventually(lambda: not controller.is_online(BOB))
        assert controller.typing_users(cid) == set()

    @pytest.mark.asyncio
    async def test_error_event_is_kept(self, make_controller):
        controller, hub = make_controller(ALICE)
        await controller.start()
        await controller.wait_connected(timeout=1.0)

        hub.current.push(events.ERROR, {"code": "EMPTY_CONTENT", "message": "empty"})

        await eventually(lambda: controller.last_error is not None)
        assert controller.last_error["code"] == "EMPTY_CONTENT"

    @pytest.mark.asyncio
    async def test_malformed_frame_is_dropped_and_connection_survives(self, backend, make_controller):
        cid = backend.add_conversation(ALICE, BOB)
        controller, hub = make_controller(ALICE)
        await controller.start()
        await controller.wait_connected(timeout=1.0)
        await controller.open_conversation(cid)

        hub.current.push(events.MESSAGE_NEW, {"id": "no-conversation"})
        hub.current.push(events.CONVERSATION_NEW_MESSAGE, {"message": {"id": "x"}})
        hub.current.push(events.MESSAGES_READ, {"conversation_id": cid, "user_id": BOB, "message_ids": 7})
        incoming = backend.add_message(cid, BOB, "still here")
        hub.current.push(events.MESSAGE_NEW, incoming)

        await eventually(lambda: incoming["id"] in controller.log_for(cid))
        assert controller.connected
        assert len(hub.transports) == 1
        assert "no-conversation" not in controller.log_for(cid)

    @pytest.mark.asyncio
    async def test_malformed_rest_listing_does_not_raise(self, backend, make_controller):
        cid = backend.add_conversation(ALICE, BOB)
        controller, _ = make_controller(ALICE)
        backend.messages[cid].append({"content": "no id", "sender_id": BOB, "read": False})

        assert await controller.sync_messages(cid) is False


class TestTypingIndicator:
    @pytest.mark.asyncio
    async def test_start_once_then_stop_after_idle(self, backend, make_controller):
        cid = backend.add_conversation(ALICE, BOB)
        controller, hub = make_controller(ALICE)
        await controller.start()
        await controller.wait_connected(timeout=1.0)
        await controller.open_conversation(cid)

        for _ in range(3):
            await controller.notify_typing()
            await asyncio.sleep(0.01)

        assert hub.sent(events.TYPING_START) == [{"conversation_id": cid}]
        await eventually(lambda: hub.sent(events.TYPING_STOP) == [{"conversation_id": cid}])

    @pytest.mark.asyncio
    async def test_sending_stops_typing(self, backend, make_controller):
        cid = backend.add_conversation(ALICE, BOB)
        controller, hub = make_controller(ALICE)
        await controller.start()
        await controller.wait_connected(timeout=1.0)
        await controller.open_conversation(cid)

        await controller.notify_typing()
        await controller.send_message("done")

        assert hub.sent(events.TYPING_STOP) == [{"conversation_id": cid}]
        await asyncio.sleep(0.1)
        assert len(hub.sent(events.TYPING_STOP)) == 1


class TestStartConversation:
    @pytest.mark.asyncio
    async def test_existing_conversation_is_found_locally(self, backend, make_controller):
        cid = backend.add_conversation(ALICE, BOB)
        controller, _ = make_controller(ALICE)
        await controller.refresh_conversations()

        assert await controller.start_conversation(BOB) == cid
        assert controller.rest.created == []
        assert controller.active_conversation == cid

    @pytest.mark.asyncio
    async def test_new_conversation_is_created_once(self, backend, make_controller):
        controller, _ = make_controller(ALICE)
        await controller.refresh_conversations()

        cid = await controller.start_conversation(CAROL)
        again = await controller.start_conversation(CAROL)

        assert cid == again
        assert controller.rest.created == [CAROL]
        assert controller.conversations[cid]["other_user"]["id"] == CAROL

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target", ["", "   ", ALICE])
    async def test_invalid_targets(self, make_controller, target):
        controller, _ = make_controller(ALICE)

        with pytest.raises(ValueError):
            await controller.start_conversation(target)
        assert controller.rest.created == []
