"""
WebSocket transport for the realtime gateway.
"""
import json
import logging
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Connection could not be opened, or dropped. code is the WebSocket close code if known."""

    def __init__(self, message: str, code: Optional[int] = None):
        self.code = code
        super().__init__(message)


class WebSocketTransport:
    """One realtime connection. Create a fresh instance per connection attempt."""

    def __init__(self, url: str, token: str):
        self.url = url
        self.token = token
        self._ws = None

    async def connect(self) -> None:
        target = f"{self.url}?{urlencode({'token': self.token})}"
        try:
            self._ws = await websockets.connect(target)
        except (OSError, InvalidHandshake) as e:
            raise TransportError(f"Connect failed: {e}") from e

    async def send(self, event: str, payload: Dict[str, Any]) -> None:
        if self._ws is None:
            raise TransportError("Not connected")
        try:
            await self._ws.send(json.dumps({"event": event, "payload": payload}))
        except ConnectionClosed as e:
            raise TransportError("Connection closed", code=_close_code(e)) from e

    async def receive(self) -> Tuple[str, Any]:
        if self._ws is None:
            raise TransportError("Not connected")
        while True:
            try:
                raw = await self._ws.recv()
            except ConnectionClosed as e:
                raise TransportError("Connection closed", code=_close_code(e)) from e
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Dropping non-JSON frame from gateway")
                continue
            if isinstance(frame, dict) and frame.get("event"):
                return frame["event"], frame.get("payload")

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None


def _close_code(exc: ConnectionClosed) -> Optional[int]:
    return exc.rcvd.code if exc.rcvd is not None else None
