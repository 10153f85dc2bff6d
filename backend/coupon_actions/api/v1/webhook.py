from __future__ import annotations

import logging
import secrets

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from coupon_actions.core.config import settings
from coupon_actions.core.dependencies import get_chat_messenger, get_ledger, get_redemption_store
from coupon_actions.db.session import get_session
from coupon_actions.services.coupons import masked
from coupon_actions.services.errors import UpstreamUnavailable
from coupon_actions.services.redemption import TRY_LATER, RedemptionSession
from coupon_actions.services.session_store import SessionStore
from coupon_actions.services.solana import LedgerClient
from coupon_actions.services.telegram import Messenger, parse_update

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["telegram"])


def _internal_error() -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": "Internal Server Error"})


@router.get("/webhook")
def webhook_status() -> dict[str, str]:
    return {"message": "Webhook is active"}


@router.post("/webhook")
async def telegram_webhook(
    request: Request,
    secret_token: str | None = Header(default=None, alias="X-Telegram-Bot-Api-Secret-Token"),
    session: AsyncSession = Depends(get_session),
    ledger: LedgerClient = Depends(get_ledger),
    store: SessionStore = Depends(get_redemption_store),
    messenger: Messenger | None = Depends(get_chat_messenger),
):
    expected_secret = (settings.telegram_webhook_secret or "").strip()
    if expected_secret and not secrets.compare_digest(secret_token or "", expected_secret):
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"error": "Forbidden"})
    if messenger is None:
        logger.error("telegram_not_configured")
        return _internal_error()

    try:
        payload = await request.json()
        incoming = parse_update(payload, getattr(messenger, "bot", None))
    except Exception:
        logger.exception("telegram_update_invalid")
        return _internal_error()
    if incoming is None:
        return {"ok": True}

    conversation = RedemptionSession(store, session, ledger)
    try:
        replies = await conversation.handle(incoming.chat_id, incoming.text)
    except Exception:
        # the user still gets an answer; Telegram must not redeliver the update
        logger.exception("redemption_unhandled_error", extra={"chat_id": incoming.chat_id})
        replies = [TRY_LATER]

    try:
        for reply in replies:
            await messenger.send_text(incoming.chat_id, reply)
    except UpstreamUnavailable:
        # state is already committed; a redelivered update cannot replay it
        logger.exception(
            "telegram_reply_failed",
            extra={
                "chat_id": incoming.chat_id,
                "coupon": masked(conversation.redeemed_code or ""),
                "undelivered": replies,
            },
        )
    return {"ok": True}
