"""
Auth gate for manager-facing endpoints.

A manager authenticates with the site key as a bearer token. The rate limit
is checked first, then the header, then the key in constant time. Any
successful verification records the caller's manager URL (X-Hub-Manager
header) and refreshes `last_sync`.

Usage:
    verify_request(session, ctx, endpoint="update")
    require_permission(session, ctx, "perform_updates")
"""

import hmac
import re
from typing import Dict, Optional
from urllib.parse import urlsplit

from sqlmodel import Session

from hub_connector.core.context import RequestContext
from hub_connector.core.errors import AuthError, PermissionDenied, RateLimited
from hub_connector.core.logging_config import get_logger
from hub_connector.core.rate_limit import RateLimiter, get_client_identifier, rate_limiter
from hub_connector.services import activity_log
from hub_connector.services.options import (
    ALWAYS_ALLOWED,
    LAST_SYNC,
    MANAGER_URL,
    OptionsStore,
)

logger = get_logger(__name__)

MANAGER_HEADER = "X-Hub-Manager"

BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)

# Scope -> endpoint class used for rate limiting
PERMISSION_ENDPOINTS: Dict[str, str] = {
    "perform_updates": "update",
    "access_analytics": "analytics",
}


def client_identifier(ctx: RequestContext) -> str:
    return get_client_identifier(ctx.client_ip, ctx.header("authorization"))


def _clean_manager_url(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip()
    parts = urlsplit(value)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None
    return value[:2048]


def verify_request(
    session: Session,
    ctx: RequestContext,
    endpoint: str = "default",
    limiter: RateLimiter = rate_limiter,
) -> None:
    """
    Raise RateLimited or AuthError unless the request carries the site key.

    Nothing after a rejection runs: the manager URL and last_sync are only
    written on success.
    """
    try:
        limiter.check(client_identifier(ctx), endpoint)
    except RateLimited as e:
        activity_log.log(
            session,
            "rate_limited",
            "warning",
            e.message,
            meta={"endpoint": endpoint, "retry_after": e.retry_after},
            client_ip=ctx.client_ip,
        )
        raise

    try:
        _check_bearer(session, ctx)
    except AuthError as e:
        logger.warning("Manager auth failed", code=e.code, endpoint=endpoint)
        activity_log.log(
            session,
            "auth_failed",
            "error",
            e.message,
            meta={"code": e.code, "endpoint": endpoint},
            client_ip=ctx.client_ip,
        )
        raise

    options = OptionsStore(session)
    manager_url = _clean_manager_url(ctx.header(MANAGER_HEADER))
    if manager_url:
        options.set(MANAGER_URL, manager_url, commit=False)
    options.touch(LAST_SYNC)


def _check_bearer(session: Session, ctx: RequestContext) -> None:
    auth_header = (ctx.header("authorization") or "").strip()
    if not auth_header:
        raise AuthError("missing_authorization")

    match = BEARER_RE.match(auth_header)
    if not match:
        raise AuthError("invalid_authorization")
    provided_key = match.group(1).strip()

    stored_key = OptionsStore(session).site_key()
    if not stored_key:
        raise AuthError("not_configured")

    if not hmac.compare_digest(stored_key.encode(), provided_key.encode()):
        raise AuthError("invalid_key")


def has_permission(session: Session, scope: str) -> bool:
    """health_check and list_updates are always allowed; other scopes follow the saved map."""
    if scope in ALWAYS_ALLOWED:
        return True
    return bool(OptionsStore(session).permissions().get(scope, False))


def require_permission(
    session: Session,
    ctx: RequestContext,
    scope: str,
    endpoint: Optional[str] = None,
    limiter: RateLimiter = rate_limiter,
) -> None:
    """Verify the bearer token, then the scope. A failed verification never reaches the scope check."""
    verify_request(session, ctx, endpoint or PERMISSION_ENDPOINTS.get(scope, "default"), limiter=limiter)
    if not has_permission(session, scope):
        logger.warning("Manager permission denied", scope=scope)
        raise PermissionDenied(scope)
