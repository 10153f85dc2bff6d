from __future__ import annotations

import enum
import logging
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Protocol

from coupon_actions.core.config import settings
from coupon_actions.core.redis_client import get_redis, json_dumps, json_loads

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class RedemptionStep(str, enum.Enum):
    idle = "idle"
    awaiting_coupon = "awaiting_coupon"
    awaiting_wallet = "awaiting_wallet"
    awaiting_signature = "awaiting_signature"


@dataclass
class RedemptionState:
    step: RedemptionStep = RedemptionStep.idle
    code: str | None = None
    wallet: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["step"] = self.step.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RedemptionState":
        return cls(
            step=RedemptionStep(data.get("step") or RedemptionStep.idle.value),
            code=data.get("code"),
            wallet=data.get("wallet"),
        )


class SessionStore(Protocol):
    async def get(self, chat_id: int) -> RedemptionState | None: ...

    async def put(self, chat_id: int, state: RedemptionState) -> None: ...

    async def delete(self, chat_id: int) -> None: ...


class InMemorySessionStore:
    """Process-local store; sessions vanish on restart and users send /start again."""

    def __init__(self) -> None:
        self._states: dict[int, dict[str, Any]] = {}

    async def get(self, chat_id: int) -> RedemptionState | None:
        data = self._states.get(chat_id)
        return RedemptionState.from_dict(data) if data is not None else None

    async def put(self, chat_id: int, state: RedemptionState) -> None:
        self._states[chat_id] = state.to_dict()

    async def delete(self, chat_id: int) -> None:
        self._states.pop(chat_id, None)

    def clear(self) -> None:
        self._states.clear()


class RedisSessionStore:
    def __init__(self, client: "Redis", *, ttl_seconds: int | None = None, prefix: str = "redemption") -> None:
        self._client = client
        self._ttl = int(ttl_seconds if ttl_seconds is not None else settings.redemption_session_ttl_seconds)
        self._prefix = prefix

    def _key(self, chat_id: int) -> str:
        return f"{self._prefix}:{chat_id}"

    async def get(self, chat_id: int) -> RedemptionState | None:
        raw = await self._client.get(self._key(chat_id))
        if not raw:
            return None
        try:
            return RedemptionState.from_dict(json_loads(raw))
        except (ValueError, TypeError):
            logger.warning("redemption_session_corrupt", extra={"chat_id": chat_id})
            await self.delete(chat_id)
            return None

    async def put(self, chat_id: int, state: RedemptionState) -> None:
        ttl = self._ttl if self._ttl > 0 else None
        await self._client.set(self._key(chat_id), json_dumps(state.to_dict()), ex=ttl)

    async def delete(self, chat_id: int) -> None:
        await self._client.delete(self._key(chat_id))


_default_store: SessionStore | None = None


def get_session_store() -> SessionStore:
    """Redis-backed when REDIS_URL is configured, otherwise a process-wide in-memory store."""
    global _default_store
    if _default_store is None:
        client = get_redis()
        _default_store = RedisSessionStore(client) if client is not None else InMemorySessionStore()
    return _default_store
