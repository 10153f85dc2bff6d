from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from coupon_actions.api.v1 import actions, api_router, webhook
from coupon_actions.core.config import settings
from coupon_actions.core.logging_config import configure_logging
from coupon_actions.core.redis_client import close_redis
from coupon_actions.core.sentry import init_sentry
from coupon_actions.core.startup_checks import validate_production_settings
from coupon_actions.middleware import ActionsCorsMiddleware, RequestLoggingMiddleware, SecurityHeadersMiddleware
from coupon_actions.schemas.error import ErrorResponse


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    await close_redis()


def get_application() -> FastAPI:
    configure_logging(settings.log_json)
    validate_production_settings()
    init_sentry()
    tags_metadata = [
        {"name": "actions", "description": "Solana Actions coupon purchase and payment confirmation"},
        {"name": "telegram", "description": "Telegram bot webhook for coupon redemption"},
        {"name": "health", "description": "Liveness and readiness probes"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
        swagger_ui_parameters={"displayRequestDuration": True},
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(ActionsCorsMiddleware)
    app.include_router(api_router, prefix="/api/v1")
    app.include_router(actions.router)
    app.include_router(webhook.router)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        payload = ErrorResponse(detail=exc.detail, code=None, request_id=getattr(request.state, "request_id", None))
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(payload.model_dump()))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        payload = ErrorResponse(
            detail=errors, code="validation_error", request_id=getattr(request.state, "request_id", None)
        )
        return JSONResponse(status_code=422, content=payload.model_dump())

    return app


app = get_application()
