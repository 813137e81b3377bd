"""
Async REST client for the chat message store.
Used by the sync controller for listing, create-or-get and the degraded-mode send path.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)


class ChatClientError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[Any] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class ChatRestClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
        }

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api/v1/chat/{path.lstrip('/')}"

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Any:
        try:
            r = await self._client.request(method, self._url(path), headers=self._headers(), json=json)
        except httpx.HTTPError as e:
            raise ChatClientError(f"{method} {path} failed: {e}") from e
        if r.is_error:
            try:
                body = r.json()
            except ValueError:
                body = r.text[:500] if r.text else None
            detail = body.get("detail") if isinstance(body, dict) else None
            message = detail.get("message") if isinstance(detail, dict) else (detail or r.reason_phrase)
            logger.warning("Chat API %s %s -> %s", method, path, r.status_code)
            raise ChatClientError(message or "Request failed", status_code=r.status_code, body=body)
        return r.json()

    async def list_conversations(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "conversations")

    async def create_or_get_conversation(self, other_user_id: str) -> Dict[str, Any]:
        return await self._request("POST", "conversations", json={"other_user_id": other_user_id})

    async def list_messages(self, conversation_id: str, mark_read: bool = True) -> List[Dict[str, Any]]:
        suffix = "" if mark_read else "?mark_read=false"
        return await self._request("GET", f"conversations/{conversation_id}/messages{suffix}")

    async def send_message(self, conversation_id: str, content: str) -> Dict[str, Any]:
        return await self._request(
            "POST", f"conversations/{conversation_id}/messages", json={"content": content}
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
