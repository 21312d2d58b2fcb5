"""API middleware modules."""

from .request_id import REQUEST_ID_HEADER, RequestIDMiddleware, get_cors_origins

__all__ = [
    "REQUEST_ID_HEADER",
    "RequestIDMiddleware",
    "get_cors_origins",
]
