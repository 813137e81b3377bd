from materoom.client.rest import ChatRestClient, ChatClientError
from materoom.client.state import MessageLog
from materoom.client.sync_controller import ChatSyncController, ConnectionState, SyncSettings
from materoom.client.transport import TransportError, WebSocketTransport

__all__ = [
    "ChatRestClient",
    "ChatClientError",
    "MessageLog",
    "ChatSyncController",
    "ConnectionState",
    "SyncSettings",
    "TransportError",
    "WebSocketTransport",
]
