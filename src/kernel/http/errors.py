from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from src.kernel.errors import ListopiaError

logger = structlog.get_logger()


def _request_id(request: Request) -> str | None:
    return getattr(getattr(request, "state", None), "request_id", None)


def _error_payload(detail: Any, code: str, request_id: str | None) -> dict[str, Any]:
    payload: dict[str, Any] = {"detail": detail, "code": code}
    if request_id:
        payload["request_id"] = request_id
    return payload


def register_exception_handlers(app: FastAPI) -> None:
    """Map typed errors and framework errors onto one JSON error shape.

    Every body carries `detail`, a stable `code` and, when known, the
    `request_id` assigned by the request tracing middleware.
    """

    @app.exception_handler(ListopiaError)
    async def _listopia_error_handler(request: Request, exc: ListopiaError) -> Response:
        request_id = _request_id(request)
        if exc.status_code >= 500 or exc.status_code == 409:
            logger.warning(
                "Request failed",
                code=exc.code,
                status_code=exc.status_code,
                path=request.url.path,
                error=exc.message,
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_public_dict(request_id=request_id),
        )

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException) -> Response:
        return JSONResponse(
            status_code=int(exc.status_code),
            content=_error_payload(exc.detail, f"http.{exc.status_code}", _request_id(request)),
            headers=dict(exc.headers or {}),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
        return JSONResponse(
            status_code=422,
            content=_error_payload(exc.errors(), "http.validation_error", _request_id(request)),
        )

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception) -> Response:
        request_id = _request_id(request)
        logger.exception("Unhandled exception", request_id=request_id, error=str(exc))
        return JSONResponse(
            status_code=500,
            content=_error_payload("Internal Server Error", "internal.unhandled", request_id),
        )
