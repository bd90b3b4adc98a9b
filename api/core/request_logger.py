"""
Access logging middleware.

Each request gets a correlation id (taken from ``X-Request-ID`` or
generated) that is echoed back on the response and included in the
access line together with timing and the declared principal. Failed
requests log at WARNING so operators can filter on level.
"""

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("cert_manager.access")

REQUEST_ID_HEADER = "X-Request-ID"

_QUIET_PATHS = {"/health", "/docs", "/redoc", "/openapi.json", "/"}


def _request_id(request: Request) -> str:
    supplied = request.headers.get(REQUEST_ID_HEADER, "").strip()
    if supplied and len(supplied) <= 64 and supplied.isprintable():
        return supplied
    return uuid.uuid4().hex[:16]


class RequestLoggerMiddleware(BaseHTTPMiddleware):
    """Log every API call with a correlation id, duration and principal."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = _request_id(request)
        request.state.request_id = request_id
        start = time.monotonic()

        response: Response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id

        path = request.url.path
        if path in _QUIET_PATHS and response.status_code < 400:
            return response

        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(
            level,
            "%s %s %d %.1fms id=%s client=%s principal=%s",
            request.method,
            path,
            response.status_code,
            (time.monotonic() - start) * 1000,
            request_id,
            request.client.host if request.client else "unknown",
            (request.headers.get("X-Principal") or "-")[:32],
        )
        return response
