# app/transport/middleware.py
"""
HTTP middleware: request IDs, access logging, last-resort error responses.

Registration order in ``http_app`` (outermost first):
RequestID -> RequestLogging -> ErrorHandling -> SecurityHeaders.
"""
import time
import uuid
from typing import Callable
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from app.config import settings
from app.infra.logging_config import get_logger, LogContext
from app.transport.security import sanitize_error_message

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Probe traffic is not access-logged
_QUIET_PATHS = frozenset({"/health", "/ready"})


def request_id_of(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Reuse the caller's X-Request-ID or mint one, and echo it back"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request.state.request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line per request: method, path, status, duration"""

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if not self.enabled or path in _QUIET_PATHS:
            return await call_next(request)

        log = LogContext(logger, request_id=request_id_of(request))
        started = time.monotonic()
        fields = {"method": request.method, "path": path}

        try:
            response = await call_next(request)
        except Exception as exc:
            fields["duration_ms"] = round((time.monotonic() - started) * 1000, 2)
            fields["error_type"] = exc.__class__.__name__
            log.error(f"{request.method} {path} raised {exc.__class__.__name__}", extra=fields)
            raise

        fields["duration_ms"] = round((time.monotonic() - started) * 1000, 2)
        fields["status_code"] = response.status_code
        log.info(
            f"{request.method} {path} status={response.status_code} duration={fields['duration_ms']}ms",
            extra=fields,
        )
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Turn anything that escapes the routes into a JSON 500"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = request_id_of(request)
            LogContext(logger, request_id=request_id).error(
                f"Unhandled {exc.__class__.__name__} on {request.method} {request.url.path}: {exc}",
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={
                    "error": sanitize_error_message(exc, settings.is_production),
                    "request_id": request_id,
                },
            )
