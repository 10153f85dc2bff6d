import enum
import uuid
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Enum, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from coupon_actions.db.base import Base


class CouponStatus(str, enum.Enum):
    pending = "pending"
    active = "active"
    used = "used"
    expired = "expired"


REDEEMABLE_STATUSES = frozenset({CouponStatus.pending, CouponStatus.active})

# Monotonic lifecycle; expiry is logical, rows are never deleted.
ALLOWED_TRANSITIONS: dict[CouponStatus, frozenset[CouponStatus]] = {
    CouponStatus.pending: frozenset({CouponStatus.active, CouponStatus.used, CouponStatus.expired}),
    CouponStatus.active: frozenset({CouponStatus.used, CouponStatus.expired}),
    CouponStatus.used: frozenset(),
    CouponStatus.expired: frozenset(),
}


class Coupon(Base):
    __tablename__ = "coupons"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(12), unique=True, nullable=False, index=True)
    status: Mapped[CouponStatus] = mapped_column(
        Enum(CouponStatus, native_enum=False, length=16),
        nullable=False,
        default=CouponStatus.pending,
        index=True,
    )
    owner_account: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    payment_signature: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    redeemed_by_chat_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
