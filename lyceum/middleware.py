"""HTTP middleware for the read-only API."""

from __future__ import annotations

import time

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from lyceum.logging_config import get_logger

logger = get_logger(__name__)

_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


class ReadOnlyMiddleware(BaseHTTPMiddleware):
    """Refuse any request that could change state."""

    async def dispatch(self, request: Request, call_next):
        if request.method not in _SAFE_METHODS:
            return JSONResponse(
                status_code=405,
                content={"detail": "This API is read-only"},
                headers={"Allow": ", ".join(sorted(_SAFE_METHODS))},
            )
        return await call_next(request)


class AccessLogMiddleware(BaseHTTPMiddleware):
    """One structured log line per request."""

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        logger.info(
            "http_request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round((time.monotonic() - start) * 1000, 1),
        )
        return response
