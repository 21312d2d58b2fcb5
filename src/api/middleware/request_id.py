"""
Request tracing middleware.

Every request carries an `X-Request-ID` (taken from the caller or generated),
exposed on `request.state` for error payloads and bound into the structlog
context for the duration of the request.
"""

import secrets
from typing import Callable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from src.config import get_settings

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Add unique request ID to all requests for tracing.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or secrets.token_hex(8)
        request.state.request_id = request_id

        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def get_cors_origins() -> list[str]:
    """Allowed CORS origins; wide open only outside production."""
    settings = get_settings()
    if settings.environment == "production":
        return settings.cors_origins
    return [*settings.cors_origins, "http://localhost:8000"]
