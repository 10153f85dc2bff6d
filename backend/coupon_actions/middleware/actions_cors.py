from typing import Awaitable, Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from coupon_actions.api.v1.actions import actions_manifest
from coupon_actions.core.config import settings

ACTIONS_PATH_PREFIXES = ("/actions.json", "/api/actions/")

ACTIONS_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,POST,PUT,OPTIONS",
    "Access-Control-Allow-Headers": (
        "Content-Type, Authorization, Content-Encoding, Accept-Encoding, "
        "X-Accept-Action-Version, X-Accept-Blockchain-Ids"
    ),
    "Access-Control-Expose-Headers": "X-Action-Version, X-Blockchain-Ids",
}


def actions_headers() -> dict[str, str]:
    headers = dict(ACTIONS_CORS_HEADERS)
    headers["X-Action-Version"] = settings.actions_version
    headers["X-Blockchain-Ids"] = settings.actions_blockchain_id
    return headers


def is_actions_path(path: str) -> bool:
    return path == "/actions.json" or path.startswith(ACTIONS_PATH_PREFIXES[1])


class ActionsCorsMiddleware(BaseHTTPMiddleware):
    """Blink clients call from any origin; Actions routes answer preflight themselves."""

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        if not is_actions_path(request.url.path):
            return await call_next(request)
        if request.method == "OPTIONS":
            if request.url.path == "/actions.json":
                return JSONResponse(actions_manifest().model_dump(), headers=actions_headers())
            return Response(status_code=200, headers=actions_headers())
        response = await call_next(request)
        for key, value in actions_headers().items():
            response.headers[key] = value
        return response
