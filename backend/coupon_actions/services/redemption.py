from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from coupon_actions.core.config import settings
from coupon_actions.models.coupon import Coupon
from coupon_actions.services import coupons as coupons_service
from coupon_actions.services.coupon_codes import is_well_formed, normalize_code
from coupon_actions.services.errors import (
    AlreadyUsed,
    CouponError,
    Expired,
    InvalidInput,
    NotFound,
    UpstreamUnavailable,
    VerificationFailed,
)
from coupon_actions.services.payment_verifier import VerifiedPayment, verify_payment
from coupon_actions.services.session_store import RedemptionState, RedemptionStep, SessionStore
from coupon_actions.services.solana import LedgerClient, parse_pubkey, parse_signature

logger = logging.getLogger(__name__)

USAGE = (
    "Send /start to redeem a coupon. You will be asked for your 12-character coupon code, "
    "the wallet you paid from and the payment transaction signature. Send /cancel to stop at any time."
)
PROMPT_COUPON = "Please enter your 12-character coupon code."
PROMPT_WALLET = "Coupon found. Please send the wallet address you paid from."
PROMPT_SIGNATURE = "Please send the transaction signature of your payment."
CANCELLED = "Redemption cancelled. Send /start to begin again."
INVALID_FORMAT = "Invalid coupon format. Please enter a valid 12-character coupon code."
INVALID_WALLET = "That does not look like a valid Solana wallet address. Please try again."
INVALID_SIGNATURE = "That does not look like a valid transaction signature. Please try again."
NOT_FOUND = "Coupon not found. Please check the code and try again."
ALREADY_USED = "This coupon has already been used."
EXPIRED = "This coupon has expired."
SUCCESS = "Coupon is valid! Here is the link to the report: {url}"
FAILED = "Redemption failed: {reason} Send /start to try again."
TRY_LATER = "An error occurred while processing your coupon. Please try again later."

_INVALID_COUPON_MESSAGES: dict[type[CouponError], str] = {
    NotFound: NOT_FOUND,
    AlreadyUsed: ALREADY_USED,
    Expired: EXPIRED,
}


@dataclass(frozen=True)
class RedemptionResult:
    coupon: Coupon
    payment: VerifiedPayment
    reward_url: str


async def redeem_coupon(
    session: AsyncSession,
    ledger: LedgerClient,
    *,
    code: str,
    signature: str,
    wallet: str | None = None,
    chat_id: int | None = None,
    now: datetime | None = None,
) -> RedemptionResult:
    """Verify the payment behind `signature` and mark the coupon used.

    Safe to call twice with the same pair: the second call finds the coupon
    used and raises `AlreadyUsed` before touching the ledger, so the reward is
    never handed out again.
    """
    normalized = normalize_code(code)
    if not is_well_formed(normalized):
        raise InvalidInput(INVALID_FORMAT)
    signature = str(parse_signature(signature))
    if wallet:
        wallet = str(parse_pubkey(wallet, field="wallet"))

    coupon = await coupons_service.get_coupon_by_code(session, normalized)
    coupon = await coupons_service.ensure_redeemable(session, coupon, now=now)
    if coupon.payment_signature and coupon.payment_signature != signature:
        raise VerificationFailed("Signature does not match the payment recorded for this coupon.")
    if await coupons_service.is_signature_recorded(session, signature, exclude_coupon_id=coupon.id):
        raise AlreadyUsed("This payment has already been used for another coupon.")

    payment = await verify_payment(
        ledger,
        signature,
        expected_recipient=settings.payment_recipient,
        expected_amount=settings.payment_lamports,
        expected_payer=wallet or coupon.owner_account,
    )
    coupon = await coupons_service.mark_coupon_used(
        session, coupon, payment_signature=signature, chat_id=chat_id, now=now
    )
    return RedemptionResult(coupon=coupon, payment=payment, reward_url=settings.reward_url)


def _command(text: str) -> str | None:
    if not text.startswith("/"):
        return None
    head = text.split(maxsplit=1)[0][1:]
    # "/start@SomeBot" in group chats
    return head.split("@", 1)[0].lower() or None


class RedemptionSession:
    """Per-chat conversation that walks a user through coupon redemption.

    idle -> awaiting_coupon -> [awaiting_wallet] -> awaiting_signature -> idle

    `handle` returns the replies to send; state lives in the injected store.
    """

    def __init__(
        self,
        store: SessionStore,
        session: AsyncSession,
        ledger: LedgerClient,
        *,
        require_wallet: bool | None = None,
    ) -> None:
        self.store = store
        self.session = session
        self.ledger = ledger
        self.require_wallet = settings.redemption_require_wallet if require_wallet is None else require_wallet
        self.redeemed_code: str | None = None

    async def handle(self, chat_id: int, text: str) -> list[str]:
        text = (text or "").strip()
        command = _command(text)
        if command == "start":
            await self.store.put(chat_id, RedemptionState(step=RedemptionStep.awaiting_coupon))
            return [PROMPT_COUPON]
        if command == "cancel":
            await self.store.delete(chat_id)
            return [CANCELLED]
        if command == "help":
            return [USAGE]

        state = await self.store.get(chat_id) or RedemptionState()
        try:
            if state.step == RedemptionStep.awaiting_coupon:
                return await self._on_coupon(chat_id, text)
            if state.step == RedemptionStep.awaiting_wallet:
                return await self._on_wallet(chat_id, state, text)
            if state.step == RedemptionStep.awaiting_signature:
                return await self._on_signature(chat_id, state, text)
        except (UpstreamUnavailable, SQLAlchemyError):
            logger.exception("redemption_step_failed", extra={"chat_id": chat_id, "step": state.step.value})
            return [TRY_LATER]
        return [USAGE]

    async def _on_coupon(self, chat_id: int, text: str) -> list[str]:
        code = normalize_code(text)
        if not is_well_formed(code):
            return [INVALID_FORMAT]
        try:
            coupon = await coupons_service.get_coupon_by_code(self.session, code)
            await coupons_service.ensure_redeemable(self.session, coupon)
        except (NotFound, AlreadyUsed, Expired) as exc:
            return [_INVALID_COUPON_MESSAGES[type(exc)]]

        if self.require_wallet:
            await self.store.put(chat_id, RedemptionState(step=RedemptionStep.awaiting_wallet, code=code))
            return [PROMPT_WALLET]
        await self.store.put(chat_id, RedemptionState(step=RedemptionStep.awaiting_signature, code=code))
        return [PROMPT_SIGNATURE]

    async def _on_wallet(self, chat_id: int, state: RedemptionState, text: str) -> list[str]:
        try:
            wallet = parse_pubkey(text, field="wallet")
        except InvalidInput:
            return [INVALID_WALLET]
        await self.store.put(
            chat_id,
            RedemptionState(step=RedemptionStep.awaiting_signature, code=state.code, wallet=str(wallet)),
        )
        return [PROMPT_SIGNATURE]

    async def _on_signature(self, chat_id: int, state: RedemptionState, text: str) -> list[str]:
        try:
            parse_signature(text)
        except InvalidInput:
            return [INVALID_SIGNATURE]

        try:
            result = await redeem_coupon(
                self.session,
                self.ledger,
                code=state.code or "",
                signature=text,
                wallet=state.wallet,
                chat_id=chat_id,
            )
        except UpstreamUnavailable:
            raise
        except CouponError as exc:
            # no partial retry: the user starts over
            await self.store.delete(chat_id)
            logger.info("redemption_failed", extra={"chat_id": chat_id, "reason": exc.code})
            if isinstance(exc, AlreadyUsed) and exc.message == AlreadyUsed.default_message:
                return [ALREADY_USED]
            return [FAILED.format(reason=exc.message.rstrip(".") + ".")]

        self.redeemed_code = result.coupon.code
        await self.store.delete(chat_id)
        return [SUCCESS.format(url=result.reward_url)]
