from coupon_actions.api.v1 import actions, webhook
from coupon_actions.api.v1.routes import api_router

__all__ = ["actions", "api_router", "webhook"]
