"""
Request context middleware.

Every request gets a request id (taken from X-Request-ID when it is safe,
generated otherwise) and an optional X-Correlation-ID. Both are bound into
structlog together with the client IP and the route surface, so a capture
beacon, a manager call or an admin action can be followed through the logs
and through Sentry events.
"""

import re
import time
from typing import Optional

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from hub_connector.core.context import clear_context, generate_request_id, set_correlation_id, set_request_id
from hub_connector.core.rate_limit import get_client_ip

logger = structlog.get_logger(__name__)

SLOW_REQUEST_MS = 500.0

# Ids end up in log lines verbatim
ID_MAX_LENGTH = 64
ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")

SURFACE_PREFIXES = (
    ("/api/v1/hub", "admin"),
    ("/api/v1/sync", "admin"),
    ("/api/v1/admin", "admin"),
    ("/api/v1/verify", "manager"),
    ("/api/v1/health", "manager"),
    ("/api/v1/update", "manager"),
    ("/api/v1/analytics", "manager"),
    ("/api/v1/disconnect", "manager"),
    ("/api/v1", "capture"),
)


def clean_id(value: Optional[str]) -> Optional[str]:
    """Accept a caller-supplied id only when it is short and plain."""
    if not value or len(value) > ID_MAX_LENGTH:
        return None
    return value if ID_PATTERN.match(value) else None


def route_surface(path: str) -> str:
    for prefix, surface in SURFACE_PREFIXES:
        if path.startswith(prefix):
            return surface
    return "other"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds request_id, correlation_id, client_ip and surface to structlog for
    the lifetime of one request and echoes the ids back as headers.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = clean_id(request.headers.get("X-Request-ID")) or generate_request_id()
        correlation_id = clean_id(request.headers.get("X-Correlation-ID"))

        set_request_id(request_id)
        if correlation_id:
            set_correlation_id(correlation_id)
        request.state.request_id = request_id

        surface = route_surface(request.url.path)
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            correlation_id=correlation_id,
            client_ip=get_client_ip(request),
            surface=surface,
            method=request.method,
            path=request.url.path,
        )

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            if correlation_id:
                response.headers["X-Correlation-ID"] = correlation_id
            return response
        finally:
            elapsed_ms = round((time.perf_counter() - started) * 1000, 1)
            if status_code >= 500:
                logger.error("Request failed", status_code=status_code, duration_ms=elapsed_ms)
            elif elapsed_ms >= SLOW_REQUEST_MS:
                logger.warning("Slow request", status_code=status_code, duration_ms=elapsed_ms)
            elif surface != "capture":
                # Beacon traffic is too chatty for per-request info lines
                logger.info("Request handled", status_code=status_code, duration_ms=elapsed_ms)

            clear_context()
            structlog.contextvars.clear_contextvars()
