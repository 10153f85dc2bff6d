from typing import Any

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Body of framework-level errors (404, 405, 422) outside the Actions routes."""

    detail: Any
    code: str | None = None
    request_id: str | None = None
