from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from telegram import Bot, Update
from telegram.error import TelegramError

from coupon_actions.core.config import settings
from coupon_actions.services.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IncomingMessage:
    chat_id: int
    text: str


class Messenger(Protocol):
    async def send_text(self, chat_id: int, text: str) -> None: ...


def parse_update(payload: Any, bot: Bot | None = None) -> IncomingMessage | None:
    """Return the text message carried by a Telegram update, or None for anything else.

    Malformed payloads raise; the webhook treats that as a framework error.
    """
    if not isinstance(payload, dict):
        raise ValueError("Telegram update must be a JSON object")
    update = Update.de_json(payload, bot)
    if update is None:
        raise ValueError("Empty Telegram update")
    message = update.effective_message
    chat = update.effective_chat
    if message is None or chat is None or not message.text:
        return None
    return IncomingMessage(chat_id=chat.id, text=message.text)


class TelegramMessenger:
    def __init__(self, token: str) -> None:
        self.bot = Bot(token)
        self._initialized = False

    async def send_text(self, chat_id: int, text: str) -> None:
        try:
            if not self._initialized:
                await self.bot.initialize()
                self._initialized = True
            await self.bot.send_message(chat_id=chat_id, text=text)
        except TelegramError as exc:
            logger.warning("telegram_send_failed", extra={"chat_id": chat_id, "error": str(exc)})
            raise UpstreamUnavailable("Telegram send failed") from exc


_messenger: TelegramMessenger | None = None


def get_messenger() -> TelegramMessenger | None:
    global _messenger
    token = (settings.telegram_bot_token or "").strip()
    if not token:
        return None
    if _messenger is None:
        _messenger = TelegramMessenger(token)
    return _messenger
