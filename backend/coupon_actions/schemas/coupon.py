from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from coupon_actions.models.coupon import CouponStatus


class CouponRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    status: CouponStatus
    owner_account: str | None = None
    payment_signature: str | None = None
    created_at: datetime | None = None
    expires_at: datetime | None = None
    activated_at: datetime | None = None
    used_at: datetime | None = None
