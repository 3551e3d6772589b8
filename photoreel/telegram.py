"""
Notifier implementations.

TelegramNotifier talks to the Bot API over httpx:
  send          → sendMessage, returns the message_id as the message ref
  edit_progress → editMessageText on a previously sent message

LoggingNotifier is used when no bot token is configured.
"""

import logging
from typing import Optional, Protocol

import httpx

from .retry import request_with_backoff

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"


class NotifierError(Exception):
    """The messaging backend refused or failed a request."""


class Notifier(Protocol):
    async def send(self, owner_ref: str, text: str) -> Optional[str]: ...

    async def edit_progress(self, owner_ref: str, message_ref: str, text: str) -> None: ...


class TelegramNotifier:
    def __init__(
        self,
        bot_token: str,
        base_url: str = TELEGRAM_API_BASE,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.bot_token = bot_token
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=15)

    async def _call(self, method: str, payload: dict) -> dict:
        url = f"{self.base_url}/bot{self.bot_token}/{method}"
        response = await request_with_backoff(self._client, "POST", url, json=payload)
        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code >= 400 or not data.get("ok", False):
            raise NotifierError(f"{method} failed: HTTP {response.status_code} {data.get('description', '')}".strip())
        return data

    async def send(self, owner_ref: str, text: str) -> Optional[str]:
        data = await self._call("sendMessage", {"chat_id": owner_ref, "text": text})
        message_id = (data.get("result") or {}).get("message_id")
        return str(message_id) if message_id is not None else None

    async def edit_progress(self, owner_ref: str, message_ref: str, text: str) -> None:
        await self._call(
            "editMessageText",
            {"chat_id": owner_ref, "message_id": int(message_ref), "text": text},
        )

    async def aclose(self):
        await self._client.aclose()


class LoggingNotifier:
    """Writes user-facing messages to the log instead of delivering them."""

    def __init__(self):
        self._next_id = 0

    async def send(self, owner_ref: str, text: str) -> Optional[str]:
        self._next_id += 1
        logger.info(f"[notify → {owner_ref}] {text}")
        return str(self._next_id)

    async def edit_progress(self, owner_ref: str, message_ref: str, text: str) -> None:
        logger.info(f"[notify → {owner_ref} #{message_ref}] {text}")

    async def aclose(self):
        pass
