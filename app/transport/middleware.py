# app/transport/middleware.py
"""
Request-scoped middleware for the task API.

- ``RequestIDMiddleware``: accepts a sane client ``X-Request-ID`` or mints one
- ``RequestLoggingMiddleware``: start/finish lines carrying user and task ids,
  plus ``http_requests`` / ``http_request_seconds`` metrics
- ``ErrorHandlingMiddleware``: last-resort JSON 500 in the API's error shape
"""
import re
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from app.config import settings
from app.infra.logging_config import LogContext, get_logger
from app.infra.metrics import inc_counter, observe_histogram
from app.transport.security import sanitize_error_message

logger = get_logger(__name__)

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{8,64}$")
_TASK_PATH_RE = re.compile(r"^/tasks/([^/]+)")

# Polled by load balancers; logged at DEBUG only
QUIET_PATHS = frozenset({"/health"})


def task_id_from_path(path: str) -> str | None:
    match = _TASK_PATH_RE.match(path)
    return match.group(1) if match else None


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Propagate or mint a request ID. Client values are only trusted when well-formed."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        incoming = request.headers.get("X-Request-ID", "")
        request_id = incoming if _REQUEST_ID_RE.match(incoming) else uuid.uuid4().hex
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled:
            return await call_next(request)

        path = request.url.path
        quiet = path in QUIET_PATHS
        log = LogContext(
            logger,
            request_id=getattr(request.state, "request_id", None),
            user_id=request.headers.get("X-User-Id"),
            task_id=task_id_from_path(path),
        )
        start = time.perf_counter()

        if not quiet:
            log.info(f"Request started: {request.method} {path}", extra={"method": request.method, "path": path})

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - start) * 1000
            inc_counter("http_requests", method=request.method, status="exception")
            log.error(
                f"Request failed: {request.method} {path} "
                f"error={type(exc).__name__} duration={duration_ms:.1f}ms",
                extra={"method": request.method, "path": path, "error_type": type(exc).__name__},
                exc_info=True,
            )
            raise

        duration = time.perf_counter() - start
        inc_counter("http_requests", method=request.method, status=response.status_code)
        observe_histogram("http_request_seconds", duration, method=request.method)

        message = (
            f"Request completed: {request.method} {path} "
            f"status={response.status_code} duration={duration * 1000:.1f}ms"
        )
        extra = {
            "method": request.method,
            "path": path,
            "status_code": response.status_code,
            "duration_ms": duration * 1000,
        }
        if quiet:
            log.debug(message, extra=extra)
        elif response.status_code >= 500:
            log.error(message, extra=extra)
        else:
            log.info(message, extra=extra)
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Anything that escapes the exception handlers becomes ``{"error", "request_id"}``."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = getattr(request.state, "request_id", "unknown")
            LogContext(logger, request_id=request_id, task_id=task_id_from_path(request.url.path)).error(
                f"Unhandled exception: {type(exc).__name__}: {exc}",
                exc_info=True,
            )
            detail = sanitize_error_message(exc, settings.is_production)
            return JSONResponse(
                status_code=500,
                content={
                    "error": "Internal server error",
                    "detail": detail,
                    "request_id": request_id,
                },
            )
