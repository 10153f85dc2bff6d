# Import all models here so SQLAlchemy registers them into Base.metadata.

from coupon_actions.models.coupon import Coupon, CouponStatus  # noqa: F401
