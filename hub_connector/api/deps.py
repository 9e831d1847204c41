from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request, Response, status
from sqlmodel import Session

from hub_connector.core.auth import client_identifier, require_permission, verify_request
from hub_connector.core.context import RequestContext
from hub_connector.core.jwt import decode_token, ADMIN_ROLE
from hub_connector.core.rate_limit import rate_limiter
from hub_connector.db import get_session

# Cookie name for the administrator token
ADMIN_COOKIE_NAME = "admin_token"


def get_admin_token(request: Request) -> Optional[str]:
    """
    Extract an admin token from the Authorization header or cookie.
    Priority: Header > Cookie
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.lower().startswith("bearer "):
        token = auth_header[7:].strip()
        if token:
            return token

    return request.cookies.get(ADMIN_COOKIE_NAME) or None


def get_current_admin_optional(request: Request) -> Optional[str]:
    """
    Admin subject if the request carries a valid admin token, otherwise None.
    Useful for endpoints that behave differently for administrators.
    """
    token = get_admin_token(request)
    if not token:
        return None

    payload = decode_token(token)
    if not payload or payload.get("role") != ADMIN_ROLE:
        return None
    return payload.get("sub")


def get_current_admin(admin: Optional[str] = Depends(get_current_admin_optional)) -> str:
    """Require a valid admin token."""
    if not admin:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Administrator authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return admin


def get_request_context(
    request: Request,
    admin: Optional[str] = Depends(get_current_admin_optional),
) -> RequestContext:
    return RequestContext.from_request(request, is_admin=admin is not None)


def manager_auth(endpoint: str, scope: Optional[str] = None) -> Callable[..., RequestContext]:
    """
    Dependency factory for manager endpoints: rate limit, bearer key, then
    (optionally) a permission scope. Successful responses carry
    X-RateLimit-* headers for the endpoint class.
    """

    def dependency(
        request: Request,
        response: Response,
        session: Session = Depends(get_session),
    ) -> RequestContext:
        ctx = RequestContext.from_request(request)
        if scope:
            require_permission(session, ctx, scope, endpoint=endpoint)
        else:
            verify_request(session, ctx, endpoint)

        for name, value in rate_limiter.headers(client_identifier(ctx), endpoint).items():
            response.headers[name] = value
        return ctx

    return dependency
