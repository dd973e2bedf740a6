"""
WAHA (WhatsApp HTTP API) transport client.

ChatTransport is what the Sender Loop talks to. WahaClient implements it
over WAHA's REST API with requests; calls run in a worker thread so they
never block the event loop.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import requests

from clone_agent.core.errors import StructuralError, TransportError
from clone_agent.core.models import ConversationKey

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15

def chat_id_for(key: ConversationKey) -> str:
    """WhatsApp chat id for a conversation ("5511...@c.us", groups unchanged)."""
    if "@" in key.counterpart:
        return key.counterpart
    return f"{key.counterpart}@c.us"

class ChatTransport(ABC):
    """Outbound operations used during delivery."""

    @abstractmethod
    async def send_chunk(self, key: ConversationKey, text: str) -> None:
        """Send one text message."""

    @abstractmethod
    async def start_composing(self, key: ConversationKey) -> None:
        """Show the "typing..." indicator."""

    @abstractmethod
    async def stop_composing(self, key: ConversationKey) -> None:
        """Hide the "typing..." indicator."""

    @abstractmethod
    async def send_seen(self, key: ConversationKey) -> None:
        """Mark the counterpart's messages as read."""

class WahaClient(ChatTransport):
    """
    ChatTransport over the WAHA REST API.

    The conversation's endpoint id is used as the WAHA session name.

    Example:
        >>> client = WahaClient("http://localhost:3000", api_key="secret")
        >>> await client.send_chunk(key, "Oi! Tudo bem?")
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        if not base_url:
            raise StructuralError("WAHA_URL is not configured")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._http = session or requests.Session()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-Api-Key"] = self.api_key
        return headers

    def _post_sync(self, path: str, body: dict) -> Any:
        try:
            response = self._http.post(
                f"{self.base_url}{path}",
                headers=self._headers(),
                json=body,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"WAHA request to {path} failed: {e}") from e

        if response.status_code in (401, 403):
            raise StructuralError(f"WAHA rejected credentials ({response.status_code})")
        if not response.ok:
            raise TransportError(
                f"WAHA API error ({response.status_code}) on {path}: {response.text[:300]}"
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    async def _post(self, path: str, key: ConversationKey, **extra) -> Any:
        body = {"session": key.endpoint_id, "chatId": chat_id_for(key), **extra}
        return await asyncio.to_thread(self._post_sync, path, body)

    async def send_chunk(self, key: ConversationKey, text: str) -> None:
        await self._post("/api/sendText", key, text=text)
        logger.debug(f"Sent {len(text)} chars to {key.as_string()}")

    async def start_composing(self, key: ConversationKey) -> None:
        await self._post("/api/startTyping", key)

    async def stop_composing(self, key: ConversationKey) -> None:
        await self._post("/api/stopTyping", key)

    async def send_seen(self, key: ConversationKey) -> None:
        await self._post("/api/sendSeen", key)

    def close(self) -> None:
        self._http.close()
