"""
Per-owner conversation state with explicit expiry.

Each owner is in at most one wizard step, stored as a tagged variant:

    AwaitingPhoto
    AwaitingPrompt(photo_ref)
    AwaitingSecondPhoto(first_ref)
    AwaitingAnimationPrompt(photo_refs)

Backed by Redis (`session:{owner_ref}` with a TTL) when REDIS_URL is set,
otherwise by an in-process table that expires entries lazily and on
purge_expired(). The orchestrator clears an owner's entry once their order
reaches a terminal state.
"""

import asyncio
import logging
import time
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600
KEY_PREFIX = "session:"


# ── Variants ─────────────────────────────────────────────────────────────────

class AwaitingPhoto(BaseModel):
    kind: Literal["awaiting_photo"] = "awaiting_photo"


class AwaitingPrompt(BaseModel):
    kind: Literal["awaiting_prompt"] = "awaiting_prompt"
    photo_ref: str


class AwaitingSecondPhoto(BaseModel):
    kind: Literal["awaiting_second_photo"] = "awaiting_second_photo"
    first_ref: str


class AwaitingAnimationPrompt(BaseModel):
    kind: Literal["awaiting_animation_prompt"] = "awaiting_animation_prompt"
    photo_refs: list[str]


SessionData = Annotated[
    Union[AwaitingPhoto, AwaitingPrompt, AwaitingSecondPhoto, AwaitingAnimationPrompt],
    Field(discriminator="kind"),
]
_session_adapter = TypeAdapter(SessionData)


# ── Backends ─────────────────────────────────────────────────────────────────

class InMemorySessionBackend:
    """Process-local fallback when Redis is not configured."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[float, str]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, raw = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return raw

    async def set(self, key: str, raw: str, ttl: int):
        async with self._lock:
            self._entries[key] = (self._clock() + ttl, raw)

    async def delete(self, key: str):
        async with self._lock:
            self._entries.pop(key, None)

    async def purge_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)


class RedisSessionBackend:
    """Redis keys with native expiry; purge is a no-op."""

    def __init__(self, client):
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisSessionBackend":
        import redis.asyncio as aioredis

        return cls(aioredis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Optional[str]:
        return await self._redis.get(key)

    async def set(self, key: str, raw: str, ttl: int):
        await self._redis.set(key, raw, ex=ttl)

    async def delete(self, key: str):
        await self._redis.delete(key)

    async def purge_expired(self) -> int:
        return 0

    async def aclose(self):
        await self._redis.aclose()


# ── Table ────────────────────────────────────────────────────────────────────

class SessionTable:
    def __init__(self, backend=None, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.backend = backend or InMemorySessionBackend()
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(owner_ref: str) -> str:
        return f"{KEY_PREFIX}{owner_ref}"

    async def get(self, owner_ref: str) -> Optional[SessionData]:
        raw = await self.backend.get(self._key(owner_ref))
        if raw is None:
            return None
        try:
            return _session_adapter.validate_json(raw)
        except ValidationError:
            logger.warning(f"Dropping unreadable session for owner {owner_ref}")
            await self.backend.delete(self._key(owner_ref))
            return None

    async def set(self, owner_ref: str, state: SessionData, ttl_seconds: Optional[int] = None):
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        await self.backend.set(self._key(owner_ref), state.model_dump_json(), ttl)

    async def clear(self, owner_ref: str):
        await self.backend.delete(self._key(owner_ref))

    async def purge_expired(self) -> int:
        purged = await self.backend.purge_expired()
        if purged:
            logger.info(f"Purged {purged} expired session(s)")
        return purged

    async def aclose(self):
        close = getattr(self.backend, "aclose", None)
        if close is not None:
            await close()
