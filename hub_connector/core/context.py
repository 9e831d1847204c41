"""
Request context management.

Two layers live here:

- contextvars for log/error correlation (request_id, correlation_id),
  populated by the request context middleware.
- RequestContext, the explicit per-request object handed to the tracker and
  the auth gate. It carries everything they need to know about the caller
  (IP, headers, cookies, query string, admin flag) and memoizes the resolved
  visitor id for the lifetime of one request.

Usage:
    ctx = RequestContext.from_request(request, is_admin=admin is not None)
    visitor_id = tracker.resolve_visitor_id(ctx)
"""

from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional
from urllib.parse import parse_qsl, urlsplit
import uuid

from starlette.requests import Request

__all__ = [
    "set_request_id",
    "get_request_id",
    "generate_request_id",
    "set_correlation_id",
    "get_correlation_id",
    "clear_context",
    "get_context_dict",
    "RequestContext",
]

# Context variables for request tracking (async-safe)
_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def generate_request_id() -> str:
    """
    Generate a new request ID.

    Format: req_{16 hex chars}
    """
    return f"req_{uuid.uuid4().hex[:16]}"


def set_request_id(request_id: str) -> None:
    _request_id.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: str) -> None:
    """Correlation ID spans multiple services and arrives via X-Correlation-ID."""
    _correlation_id.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def clear_context() -> None:
    """Called at end of request to prevent context leaking."""
    _request_id.set(None)
    _correlation_id.set(None)


def get_context_dict() -> dict:
    """All context variables as dict, for enriching error reports."""
    return {
        "request_id": get_request_id(),
        "correlation_id": get_correlation_id(),
    }


@dataclass
class RequestContext:
    """
    Everything the tracker and auth gate may read about the current caller.

    Built once per inbound request. Instances are never shared between
    requests, so the memoized visitor id cannot leak across callers.
    """

    client_ip: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, str] = field(default_factory=dict)
    query_params: Mapping[str, str] = field(default_factory=dict)
    url: str = ""
    referrer: Optional[str] = None
    is_admin: bool = False
    visitor_id: Optional[str] = None

    @classmethod
    def from_request(cls, request: Request, is_admin: bool = False) -> "RequestContext":
        from hub_connector.core.rate_limit import get_client_ip

        headers = {k.lower(): v for k, v in request.headers.items()}
        return cls(
            client_ip=get_client_ip(request),
            headers=headers,
            cookies=dict(request.cookies),
            query_params=dict(request.query_params),
            url=str(request.url),
            referrer=headers.get("referer") or None,
            is_admin=is_admin,
        )

    @property
    def user_agent(self) -> str:
        return self.header("user-agent") or ""

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    def for_page(self, page_url: Optional[str], referrer: Optional[str] = None) -> "RequestContext":
        """
        Return a copy describing the page the browser reported.

        Beacon requests arrive at the API URL, so the landing page and its UTM
        query string must come from the reported page_url instead.
        """
        if not page_url:
            return replace(self, referrer=referrer if referrer is not None else self.referrer)
        query = dict(parse_qsl(urlsplit(page_url).query, keep_blank_values=False))
        return replace(
            self,
            url=page_url,
            query_params=query,
            referrer=referrer if referrer is not None else self.referrer,
        )
