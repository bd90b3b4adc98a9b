"""
Rate limiting configuration using slowapi.

Provides per-client rate limits for API endpoints. The limiter is built
per application so tests and single-user deployments can disable it.
"""

import logging

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)

DEFAULT_RATE = "120/minute"


def _get_client_key(request: Request) -> str:
    """
    Build a rate limit key from client IP + principal if present.

    Each declared principal gets its own bucket; anonymous clients are
    keyed by IP.
    """
    ip = get_remote_address(request)
    principal = request.headers.get("X-Principal", "")
    if principal:
        return f"{ip}:{principal[:32]}"
    return ip


def create_limiter(default_rate: str = DEFAULT_RATE, enabled: bool = True) -> Limiter:
    """In-memory limiter for single-process deployments."""
    if not enabled:
        logger.info("Rate limiting disabled")
    return Limiter(
        key_func=_get_client_key,
        default_limits=[default_rate],
        storage_uri="memory://",
        enabled=enabled,
    )


def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 handler with Retry-After and the standard error envelope."""
    retry_after = getattr(exc, "retry_after", 60)
    return JSONResponse(
        status_code=429,
        content={
            "success": False,
            "error": "RateLimited",
            "message": f"Rate limit exceeded: {exc.detail}",
            "retry_after_seconds": retry_after,
            "suggestion": "Reduce request frequency and retry later",
        },
        headers={"Retry-After": str(retry_after)},
    )
