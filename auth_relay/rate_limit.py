"""Rate limiting configuration.

This module provides per-client-IP rate limiting for the relay endpoints
using slowapi. Uses per-instance memory storage, so with several instances
each one enforces the limit on its own.

Note: This is a separate module to avoid circular imports. The `limiter`
instance is imported by both main.py and api.py.
"""

from fastapi import Request
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi import Limiter
from slowapi.util import get_remote_address

# Browser redirects to /callback
CALLBACK_RATE_LIMIT = "20/minute"

# /status/{state} and /token/{state}: the poll client asks every 2 seconds
POLL_RATE_LIMIT = "60/minute"

# Rate limiter with per-instance memory storage
limiter = Limiter(key_func=get_remote_address)


def rate_limit_exceeded_handler(request: Request, _exc: Exception) -> JSONResponse:
    """Handle rate limit exceeded errors."""
    logger.warning(
        "Rate limit exceeded",
        extra={"path": request.url.path, "client": get_remote_address(request)},
    )
    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded. Please try again later."},
    )
