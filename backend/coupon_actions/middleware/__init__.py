from coupon_actions.middleware.actions_cors import ActionsCorsMiddleware
from coupon_actions.middleware.request_log import RequestLoggingMiddleware
from coupon_actions.middleware.security import SecurityHeadersMiddleware

__all__ = ["ActionsCorsMiddleware", "RequestLoggingMiddleware", "SecurityHeadersMiddleware"]
