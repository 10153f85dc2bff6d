from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coupon_actions.core import metrics
from coupon_actions.core.config import settings
from coupon_actions.models.coupon import ALLOWED_TRANSITIONS, REDEEMABLE_STATUSES, Coupon, CouponStatus
from coupon_actions.services import coupon_codes
from coupon_actions.services.errors import AlreadyUsed, Expired, ExhaustedRetries, InvalidTransition, NotFound

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    # sqlite hands back naive datetimes even for timezone=True columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def masked(code: str) -> str:
    return f"{code[:4]}********" if code else ""


def _expiry_for(created_at: datetime) -> datetime | None:
    hours = int(settings.coupon_expiry_hours or 0)
    if hours <= 0:
        return None
    return created_at + timedelta(hours=hours)


def is_expired(coupon: Coupon, now: datetime | None = None) -> bool:
    if coupon.expires_at is None:
        return False
    return _as_aware(coupon.expires_at) <= (now or _now())


def _ensure_transition(coupon: Coupon, target: CouponStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[coupon.status]:
        raise InvalidTransition(f"Coupon cannot move from {coupon.status.value} to {target.value}")


async def get_coupon_by_code(session: AsyncSession, code: str) -> Coupon | None:
    normalized = coupon_codes.normalize_code(code)
    if not normalized:
        return None
    result = await session.execute(select(Coupon).where(Coupon.code == normalized))
    return result.scalar_one_or_none()


async def is_signature_recorded(
    session: AsyncSession, signature: str, *, exclude_coupon_id: UUID | None = None
) -> bool:
    stmt = select(func.count()).select_from(Coupon).where(Coupon.payment_signature == signature)
    if exclude_coupon_id is not None:
        stmt = stmt.where(Coupon.id != exclude_coupon_id)
    return bool(await session.scalar(stmt))


async def issue_coupon(
    session: AsyncSession,
    *,
    owner_account: str | None = None,
    status: CouponStatus = CouponStatus.pending,
    payment_signature: str | None = None,
    now: datetime | None = None,
    generator: Callable[[], str] | None = None,
    max_attempts: int | None = None,
) -> Coupon:
    """Persist one coupon under a code no other record has ever used.

    The uniqueness check and the insert are not atomic, so a unique-constraint
    violation on insert is treated like a collision seen by the check: the code
    is discarded and a new one drawn. Either way a collision spends one of the
    `max_attempts` attempts; running out raises `ExhaustedRetries` and leaves
    storage untouched.
    """
    if status not in REDEEMABLE_STATUSES:
        raise InvalidTransition(f"Coupons cannot be issued as {status.value}")
    created_at = now or _now()
    generate = generator or coupon_codes.generate_code
    attempts = int(max_attempts or settings.coupon_max_attempts)

    for attempt in range(1, attempts + 1):
        code = generate()
        if not await coupon_codes.is_code_unique(session, code):
            logger.warning("coupon_code_collision", extra={"attempt": attempt, "stage": "check"})
            continue

        coupon = Coupon(
            code=code,
            status=status,
            owner_account=owner_account,
            payment_signature=payment_signature,
            created_at=created_at,
            expires_at=_expiry_for(created_at),
            activated_at=created_at if status == CouponStatus.active else None,
        )
        session.add(coupon)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            if await coupon_codes.is_code_unique(session, code):
                # not a code collision; retrying with a new code cannot help
                if payment_signature and await is_signature_recorded(session, payment_signature):
                    raise AlreadyUsed("This payment has already been used for another coupon") from None
                raise
            logger.warning("coupon_code_collision", extra={"attempt": attempt, "stage": "insert"})
            continue

        await session.refresh(coupon)
        metrics.record_coupon_issued()
        logger.info(
            "coupon_issued",
            extra={"coupon": masked(code), "status": status.value, "attempts": attempt},
        )
        return coupon

    metrics.record_issuance_exhausted()
    logger.error("coupon_issuance_exhausted", extra={"attempts": attempts})
    raise ExhaustedRetries()


async def expire_coupon(session: AsyncSession, coupon: Coupon, *, now: datetime | None = None) -> Coupon:
    _ensure_transition(coupon, CouponStatus.expired)
    await session.execute(
        update(Coupon)
        .where(Coupon.id == coupon.id, Coupon.status.in_(REDEEMABLE_STATUSES))
        .values(status=CouponStatus.expired)
    )
    await session.commit()
    await session.refresh(coupon)
    logger.info("coupon_expired", extra={"coupon": masked(coupon.code), "checked_at": (now or _now()).isoformat()})
    return coupon


async def ensure_redeemable(session: AsyncSession, coupon: Coupon | None, *, now: datetime | None = None) -> Coupon:
    """Raise the reason `coupon` cannot be redeemed; persist lapsed expiry on the way."""
    if coupon is None:
        raise NotFound()
    if coupon.status == CouponStatus.used:
        raise AlreadyUsed()
    if coupon.status == CouponStatus.expired:
        raise Expired()
    if is_expired(coupon, now):
        await expire_coupon(session, coupon, now=now)
        raise Expired()
    return coupon


async def activate_coupon(
    session: AsyncSession,
    coupon: Coupon,
    *,
    payment_signature: str,
    now: datetime | None = None,
) -> Coupon:
    now = now or _now()
    await ensure_redeemable(session, coupon, now=now)
    if coupon.status == CouponStatus.active:
        if coupon.payment_signature == payment_signature:
            # webhook replay
            return coupon
        raise InvalidTransition("Coupon is already active")
    _ensure_transition(coupon, CouponStatus.active)
    if await is_signature_recorded(session, payment_signature, exclude_coupon_id=coupon.id):
        raise AlreadyUsed("This payment has already been used for another coupon")

    try:
        result = await session.execute(
            update(Coupon)
            .where(Coupon.id == coupon.id, Coupon.status == CouponStatus.pending)
            .values(status=CouponStatus.active, activated_at=now, payment_signature=payment_signature)
        )
        if result.rowcount != 1:
            await session.rollback()
            raise InvalidTransition("Coupon changed state during activation")
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise AlreadyUsed("This payment has already been used for another coupon") from exc

    await session.refresh(coupon)
    metrics.record_coupon_activated()
    logger.info("coupon_activated", extra={"coupon": masked(coupon.code)})
    return coupon


async def mark_coupon_used(
    session: AsyncSession,
    coupon: Coupon,
    *,
    payment_signature: str,
    chat_id: int | None = None,
    now: datetime | None = None,
) -> Coupon:
    """Move `coupon` to used exactly once.

    The UPDATE is conditional on the coupon still being pending/active, so of
    two concurrent redemptions only one can win; the loser gets `AlreadyUsed`.
    """
    now = now or _now()
    _ensure_transition(coupon, CouponStatus.used)
    try:
        result = await session.execute(
            update(Coupon)
            .where(Coupon.id == coupon.id, Coupon.status.in_(REDEEMABLE_STATUSES))
            .values(
                status=CouponStatus.used,
                used_at=now,
                payment_signature=payment_signature,
                redeemed_by_chat_id=chat_id,
            )
        )
        if result.rowcount != 1:
            await session.rollback()
            raise AlreadyUsed()
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise AlreadyUsed("This payment has already been used for another coupon") from exc

    await session.refresh(coupon)
    metrics.record_coupon_redeemed()
    logger.info("coupon_redeemed", extra={"coupon": masked(coupon.code), "chat_id": chat_id})
    return coupon


async def expire_stale_coupons(session: AsyncSession, *, now: datetime | None = None) -> int:
    now = now or _now()
    candidates = (
        (
            await session.execute(
                select(Coupon).where(Coupon.status.in_(REDEEMABLE_STATUSES), Coupon.expires_at.is_not(None))
            )
        )
        .scalars()
        .all()
    )
    expired = 0
    for coupon in candidates:
        if is_expired(coupon, now):
            await expire_coupon(session, coupon, now=now)
            expired += 1
    return expired
