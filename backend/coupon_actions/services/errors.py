from __future__ import annotations


class CouponError(Exception):
    """Base class for coupon/payment failures that carry a user-facing message."""

    code = "coupon_error"
    default_message = "Coupon request failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(CouponError):
    code = "invalid_input"
    default_message = "Invalid input"


class NotFound(CouponError):
    code = "not_found"
    default_message = "Coupon not found"


class AlreadyUsed(CouponError):
    code = "already_used"
    default_message = "Coupon has already been used"


class Expired(CouponError):
    code = "expired"
    default_message = "Coupon has expired"


class InvalidTransition(CouponError):
    code = "invalid_transition"
    default_message = "Coupon cannot move to the requested status"


class VerificationFailed(CouponError):
    code = "verification_failed"
    default_message = "Payment could not be verified"


class ExhaustedRetries(CouponError):
    code = "exhausted_retries"
    default_message = "Failed to generate a unique code after multiple attempts"


class UpstreamUnavailable(CouponError):
    code = "upstream_unavailable"
    default_message = "Upstream service unavailable"
