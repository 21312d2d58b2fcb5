from __future__ import annotations

import re
from typing import Any


_ERROR_CODE_RE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)*$")


class ListopiaError(Exception):
    """Base typed error for the chat integrity service.

    Subclasses pin a default `code`, `message` and HTTP status as class
    attributes; any of them can be overridden per raise.

    - `code` is stable and dot-separated, for programmatic handling.
    - `message` is human-readable, for admin surfaces.
    - `meta` carries safe-to-expose debugging context (ids, labels).
    """

    default_code = "internal.error"
    default_message = "Internal error"
    default_status_code = 500

    def __init__(
        self,
        *,
        code: str | None = None,
        message: str | None = None,
        status_code: int | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        code = code or self.default_code
        if not _ERROR_CODE_RE.fullmatch(code):
            raise ValueError(
                "Invalid error code. Expected dot-separated lowercase tokens, "
                f"got: {code!r}"
            )
        self.code = code
        self.message = message or self.default_message
        self.status_code = int(status_code or self.default_status_code)
        self.meta = dict(meta or {})
        super().__init__(self.message)

    def to_public_dict(self, *, request_id: str | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            # `detail` matches FastAPI's own error bodies.
            "detail": self.message,
            "code": self.code,
        }
        if request_id:
            payload["request_id"] = request_id
        if self.meta:
            payload["meta"] = self.meta
        return payload


class NotFoundError(ListopiaError):
    default_code = "resource.not_found"
    default_message = "Not found"
    default_status_code = 404


class ConflictError(ListopiaError):
    default_code = "request.conflict"
    default_message = "Conflict"
    default_status_code = 409


class ValidationError(ListopiaError):
    default_code = "request.validation_error"
    default_message = "Validation error"
    default_status_code = 422
