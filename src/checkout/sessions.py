"""Per-chat checkout sessions.

A session is the ephemeral progress of one chat through the checkout. It is
kept in an aiogram FSM storage under its own destiny, so the in-memory store
can be swapped for Redis when more than one bot process serves the same
chats. Events of one chat are serialized by ChatSequencer.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from aiogram.fsm.storage.base import BaseStorage, StorageKey
from aiogram.fsm.storage.memory import MemoryStorage

from config import CFG


logger = logging.getLogger(__name__)

SESSION_DESTINY = "checkout"


class Stage(str, Enum):
    IDLE = "idle"
    PLAN_SELECTED = "plan_selected"
    NETWORK_CHOICE = "network_choice"
    FIAT_REDIRECT = "fiat_redirect"
    AWAITING_WHATSAPP = "awaiting_whatsapp"
    AWAITING_PAYMENT = "awaiting_payment"
    AWAITING_FULL_NAME = "awaiting_full_name"
    AWAITING_EMAIL = "awaiting_email"
    FINALIZING = "finalizing"
    COMPLETE = "complete"


@dataclass
class Session:
    chat_id: int
    handle: str
    stage: Stage = Stage.IDLE
    plan_id: int | None = None
    payment_network: str | None = None
    order_id: str | None = None
    whatsapp: str | None = None
    full_name: str | None = None
    email: str | None = None
    updated_at: float = 0.0

    def to_data(self) -> dict[str, Any]:
        data = asdict(self)
        data["stage"] = self.stage.value
        return data

    @classmethod
    def from_data(cls, data: dict[str, Any]) -> "Session":
        return cls(
            chat_id=int(data["chat_id"]),
            handle=str(data["handle"]),
            stage=Stage(data.get("stage") or Stage.IDLE.value),
            plan_id=int(data["plan_id"]) if data.get("plan_id") is not None else None,
            payment_network=data.get("payment_network"),
            order_id=data.get("order_id"),
            whatsapp=data.get("whatsapp"),
            full_name=data.get("full_name"),
            email=data.get("email"),
            updated_at=float(data.get("updated_at") or 0.0),
        )


def build_session_storage() -> BaseStorage:
    """Memory storage by default; Redis when SESSION_REDIS_URL is set."""
    if CFG.session_redis_url:
        from aiogram.fsm.storage.redis import RedisStorage

        logger.info("Checkout sessions stored in Redis")
        return RedisStorage.from_url(CFG.session_redis_url)
    return MemoryStorage()


class SessionStore:
    """Create/read/update/delete for checkout sessions keyed by chat id."""

    def __init__(self, storage: BaseStorage, *, bot_id: int = 0, ttl_sec: int | None = None) -> None:
        self.storage = storage
        self.bot_id = int(bot_id)
        ttl = CFG.session_ttl_min * 60 if ttl_sec is None else ttl_sec
        self.ttl_sec = max(0, int(ttl))

    def _key(self, chat_id: int) -> StorageKey:
        return StorageKey(
            bot_id=self.bot_id,
            chat_id=int(chat_id),
            user_id=int(chat_id),
            destiny=SESSION_DESTINY,
        )

    async def get(self, chat_id: int) -> Session | None:
        """Return the live session; an idle-expired one is discarded and None returned."""
        data = await self.storage.get_data(self._key(chat_id))
        if not data:
            return None
        session = Session.from_data(data)
        if self.ttl_sec and time.time() - session.updated_at > self.ttl_sec:
            logger.info("Session for chat %s expired at stage %s", chat_id, session.stage.value)
            await self.discard(chat_id)
            return None
        return session

    async def save(self, session: Session) -> None:
        session.updated_at = time.time()
        key = self._key(session.chat_id)
        await self.storage.set_state(key, f"{SESSION_DESTINY}:{session.stage.value}")
        await self.storage.set_data(key, session.to_data())

    async def discard(self, chat_id: int) -> None:
        key = self._key(chat_id)
        await self.storage.set_state(key, None)
        await self.storage.set_data(key, {})

    async def close(self) -> None:
        await self.storage.close()


class ChatSequencer:
    """One logical worker per chat: events of a chat run strictly one at a time.

    asyncio.Lock wakes waiters in FIFO order, which keeps arrival order.
    Locks of idle chats are dropped.
    """

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}
        self._holders: dict[int, int] = {}

    @asynccontextmanager
    async def hold(self, chat_id: int) -> AsyncIterator[None]:
        key = int(chat_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                self._locks.pop(key, None)

    def active_chats(self) -> int:
        return len(self._locks)
