"""HTTP middleware and error handlers: CORS, request logging, JSON errors.

Middleware ordering (outermost first):
1. CORS -- handles OPTIONS preflight
2. Request logging -- method, path, status, duration
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Long-lived responses; duration is meaningless
_STREAM_PATHS = {"/events"}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with its status and latency."""

    async def dispatch(self, request: Request, call_next):
        method = request.method
        path = request.url.path

        if path in _STREAM_PATHS:
            logger.info("-> %s %s (stream)", method, path)
            return await call_next(request)

        start = time.time()
        response = await call_next(request)
        elapsed_ms = (time.time() - start) * 1000
        level = logging.WARNING if response.status_code >= 400 else logging.INFO
        logger.log(level, "%s %s - %d (%.0fms)", method, path, response.status_code, elapsed_ms)
        return response


async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return JSONResponse(
            {
                "success": False,
                "error": "Route not found",
                "path": request.url.path,
                "method": request.method,
            },
            status_code=404,
        )
    return JSONResponse({"success": False, "error": exc.detail}, status_code=exc.status_code)


async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"success": False, "error": "Internal server error"}, status_code=500)


def install_middleware(app: FastAPI, cors_origins: list[str], *, log_requests: bool = True) -> None:
    """Install middleware and JSON error handlers.

    Middleware is added in reverse order (last added = outermost = runs first).
    """
    if log_requests:
        app.add_middleware(RequestLoggingMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Hook-Secret", "X-Hook-Signature"],
        expose_headers=["X-Hook-Secret"],
    )

    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)
