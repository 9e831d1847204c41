"""
Error taxonomy and unified error capture.

Exceptions:
    ConnectorError          base class, carries an HTTP status and wire code
    ConfigurationError      Hub not configured (raised before any I/O)
    TransportError          network failure reaching the Hub
    RemoteRejection         Hub answered but declared failure
    SyncError               a table push failed mid-run
    AuthError               bearer verification failed (four codes)
    PermissionDenied        verified caller lacks a scope
    RateLimited             endpoint class budget exhausted
    ValidationError         malformed inbound capture payload

Background work that must never raise into the scheduler runs inside an
ErrorHandler; the failure is logged with the request/job context and
forwarded to Sentry when a DSN is configured:

    with ErrorHandler("heartbeat"):
        await send_heartbeat(session)
"""

from typing import Optional, Any, Dict
from contextlib import contextmanager
import logging

import structlog

from hub_connector.core.context import get_request_id, get_context_dict

logger = structlog.get_logger(__name__)

__all__ = [
    "ConnectorError",
    "ConfigurationError",
    "TransportError",
    "RemoteRejection",
    "SyncError",
    "AuthError",
    "PermissionDenied",
    "RateLimited",
    "ValidationError",
    "init_sentry",
    "capture_exception",
    "ErrorHandler",
    "error_boundary",
]


class ConnectorError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str = "", code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "code": self.code, "message": self.message}


class ConfigurationError(ConnectorError):
    status_code = 400
    code = "not_configured"

    def __init__(self, message: str = "Hub not configured"):
        super().__init__(message)


class TransportError(ConnectorError):
    status_code = 502
    code = "transport_error"


class RemoteRejection(ConnectorError):
    status_code = 502
    code = "remote_rejection"

    def __init__(self, message: str, http_status: Optional[int] = None, remote_code: Optional[str] = None):
        super().__init__(message)
        self.http_status = http_status
        self.remote_code = remote_code


class SyncError(ConnectorError):
    code = "sync_failed"

    def __init__(self, table: str, message: str):
        super().__init__(f"Failed to sync {table.replace('_', ' ')}: {message}")
        self.table = table
        self.reason = message


class AuthError(ConnectorError):
    """Bearer verification failure. `code` is one of AUTH_CODES."""

    AUTH_CODES = {
        "missing_authorization": (401, "Authorization header is required."),
        "invalid_authorization": (401, "Invalid authorization format. Use Bearer token."),
        "not_configured": (403, "Site key not configured. Please generate a site key first."),
        "invalid_key": (401, "Invalid site key."),
    }

    def __init__(self, code: str, message: Optional[str] = None):
        status_code, default_message = self.AUTH_CODES[code]
        super().__init__(message or default_message, code=code, status_code=status_code)


class PermissionDenied(ConnectorError):
    status_code = 403
    code = "permission_denied"

    def __init__(self, scope: str):
        super().__init__(f'Permission "{scope}" is not allowed on this site.')
        self.scope = scope


class RateLimited(ConnectorError):
    status_code = 429
    code = "rate_limit_exceeded"

    def __init__(self, retry_after: int):
        super().__init__(f"Rate limit exceeded. Please try again in {retry_after} seconds.")
        self.retry_after = retry_after


class ValidationError(ConnectorError):
    status_code = 400
    code = "invalid_request"


# ============== SENTRY ==============

# Client-caused errors are answered, not reported
EXPECTED_ERRORS = (AuthError, PermissionDenied, RateLimited, ValidationError)

_sentry_enabled = False


def init_sentry(
    dsn: str,
    environment: str = "production",
    traces_sample_rate: float = 0.0,
    release: Optional[str] = None,
) -> bool:
    """Turn on Sentry reporting. Without a DSN this is a logged no-op."""
    global _sentry_enabled

    if not dsn:
        logger.info("Sentry disabled, no DSN configured")
        return False

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=release,
        traces_sample_rate=traces_sample_rate,
        send_default_pii=False,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        ignore_errors=[KeyboardInterrupt, SystemExit, *EXPECTED_ERRORS],
        before_send=_before_send,
    )
    _sentry_enabled = True
    logger.info("Sentry initialized", environment=environment, release=release)
    return True


def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    url = (event.get("request") or {}).get("url", "")
    # Liveness probes and browser beacons are not worth an event each
    if url.endswith("/health") or url.endswith("/track"):
        return None

    headers = (event.get("request") or {}).get("headers") or {}
    for name in list(headers):
        if name.lower() in ("authorization", "cookie"):
            headers[name] = "[Filtered]"

    request_id = get_request_id()
    if request_id:
        event.setdefault("tags", {})["request_id"] = request_id
    return event


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    fingerprint: Optional[list[str]] = None,
) -> Optional[str]:
    """Log an exception with request/job context and report it to Sentry. Returns the event id."""
    extra = {**get_context_dict(), "error_type": type(exc).__name__, **(context or {})}
    logger.error("Exception captured", exc_info=exc, **extra)

    if not _sentry_enabled:
        return None

    import sentry_sdk

    with sentry_sdk.new_scope() as scope:
        scope.set_context("connector", {k: v for k, v in extra.items() if v is not None})
        if fingerprint:
            scope.fingerprint = fingerprint
        return sentry_sdk.capture_exception(exc)


class ErrorHandler:
    """
    Context manager that contains a failure instead of propagating it.

    Used around scheduler jobs: a failed heartbeat or sync is captured and
    the scheduler keeps its cadence.

        with ErrorHandler("hub_sync", context={"trigger": "scheduled"}) as handler:
            ...
        if handler.exception: ...

    capture=False logs a warning only (for best-effort calls whose failure
    is expected, such as notifying a Hub that may already be gone).
    """

    def __init__(
        self,
        operation: str,
        context: Optional[Dict[str, Any]] = None,
        capture: bool = True,
        reraise: bool = False,
    ):
        self.operation = operation
        self.context = context or {}
        self.capture = capture
        self.reraise = reraise
        self.exception: Optional[BaseException] = None
        self.event_id: Optional[str] = None

    def __enter__(self) -> "ErrorHandler":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_val is None:
            return False
        # Never swallow shutdown or cancellation
        if not isinstance(exc_val, Exception):
            return False

        self.exception = exc_val
        if self.capture and not isinstance(exc_val, EXPECTED_ERRORS):
            self.event_id = capture_exception(
                exc_val,
                context={"operation": self.operation, **self.context},
                fingerprint=[self.operation, type(exc_val).__name__],
            )
        else:
            logger.warning("Operation failed", operation=self.operation, error=str(exc_val), **self.context)
        return not self.reraise


@contextmanager
def error_boundary(operation: str, **context):
    """
    Best-effort block: failures are logged as warnings and suppressed.

        with error_boundary("hub_notify_disconnect", hub_url=hub_url):
            await client.notify_disconnect()
    """
    with ErrorHandler(operation, context=context, capture=False) as handler:
        yield handler
