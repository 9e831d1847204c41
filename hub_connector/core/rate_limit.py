"""
Per-endpoint-class rate limiter for inbound API requests.

Each (client identifier, endpoint class) pair gets its own fixed window
counter stored in a transient cache whose entries expire at the end of their
own window. Read-modify-write of a counter happens under a lock, so
concurrent requests in one process cannot both slip past the limit.
"""
import hashlib
import ipaddress
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from cachetools import TLRUCache
from fastapi import Request

from hub_connector.core.errors import RateLimited
from hub_connector.core.logging_config import get_logger

logger = get_logger(__name__)

CACHE_PREFIX = "hub_rl_"


@dataclass(frozen=True)
class EndpointPolicy:
    limit: int
    window: int  # seconds


# Endpoint classes are tracked independently of each other
ENDPOINT_POLICIES: Dict[str, EndpointPolicy] = {
    "verify": EndpointPolicy(10, 60),
    "disconnect": EndpointPolicy(10, 60),
    "track": EndpointPolicy(120, 60),
    "identify": EndpointPolicy(30, 60),
    "conversion": EndpointPolicy(30, 60),
    "popup_interaction": EndpointPolicy(60, 60),
    "health": EndpointPolicy(30, 60),
    "updates": EndpointPolicy(30, 60),
    "update": EndpointPolicy(10, 60),
    "analytics": EndpointPolicy(30, 60),
    "default": EndpointPolicy(60, 60),
}


def get_policy(endpoint: str) -> EndpointPolicy:
    return ENDPOINT_POLICIES.get(endpoint, ENDPOINT_POLICIES["default"])


def _window_expiry(key, value, now):
    return value["expires_at"]


class RateLimiter:
    """
    In-memory fixed window rate limiter.

    Windows live in a cachetools TLRUCache. Every entry carries its own
    expiry (window_start + window), so an idle key disappears on its own.
    For multiple worker processes, each process enforces its own budget.
    """

    def __init__(
        self,
        policies: Optional[Dict[str, EndpointPolicy]] = None,
        maxsize: int = 100_000,
        timer: Callable[[], float] = time.time,
    ):
        self.policies = dict(policies or ENDPOINT_POLICIES)
        self._timer = timer
        self._windows: TLRUCache = TLRUCache(maxsize=maxsize, ttu=_window_expiry, timer=timer)
        self._lock = threading.Lock()

    def policy_for(self, endpoint: str) -> EndpointPolicy:
        return self.policies.get(endpoint, self.policies["default"])

    @staticmethod
    def cache_key(identifier: str, endpoint: str) -> str:
        digest = hashlib.md5(f"{identifier}{endpoint}".encode()).hexdigest()
        return CACHE_PREFIX + digest[:12]

    def check(self, identifier: str, endpoint: str = "default") -> None:
        """
        Count one request against the window, raising RateLimited if over.

        First request in a key's lifetime, or the first after the window
        lapsed, starts a fresh window with count 1.
        """
        policy = self.policy_for(endpoint)
        key = self.cache_key(identifier, endpoint)

        with self._lock:
            now = self._timer()
            window = self._windows.get(key)

            if window is None or now - window["window_start"] >= policy.window:
                self._windows[key] = {
                    "count": 1,
                    "window_start": now,
                    "expires_at": now + policy.window,
                }
                return

            count = window["count"] + 1
            if count > policy.limit:
                retry_after = max(1, int(policy.window - (now - window["window_start"])))
                logger.warning(
                    "Rate limit exceeded",
                    endpoint=endpoint,
                    limit=policy.limit,
                    retry_after=retry_after,
                )
                raise RateLimited(retry_after)

            self._windows[key] = {**window, "count": count}

    def headers(self, identifier: str, endpoint: str = "default") -> Dict[str, str]:
        """X-RateLimit-* headers for the current window. Does not count a request."""
        policy = self.policy_for(endpoint)
        key = self.cache_key(identifier, endpoint)
        now = self._timer()

        with self._lock:
            window = self._windows.get(key)

        if window is None:
            remaining = policy.limit
            reset = now + policy.window
        else:
            remaining = max(0, policy.limit - window["count"])
            reset = window["window_start"] + policy.window

        return {
            "X-RateLimit-Limit": str(policy.limit),
            "X-RateLimit-Remaining": str(remaining),
            "X-RateLimit-Reset": str(int(reset)),
        }

    def clear(self, identifier: Optional[str] = None, endpoint: str = "all") -> None:
        """
        Drop windows for an identifier, for one endpoint class or all of them.

        Called without an identifier it clears every window (used by tests).
        """
        with self._lock:
            if identifier is None:
                self._windows.clear()
                return

            endpoints = list(self.policies) if endpoint == "all" else [endpoint]
            for name in endpoints:
                self._windows.pop(self.cache_key(identifier, name), None)


# Global rate limiter instance
rate_limiter = RateLimiter()


def _valid_ip(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip()
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return None
    return value


def get_client_ip(request: Request) -> Optional[str]:
    """Extract client IP, handling proxies (Cloudflare first, then standard headers)."""
    candidates = [
        request.headers.get("CF-Connecting-IP"),
        (request.headers.get("X-Forwarded-For") or "").split(",")[0],
        request.headers.get("X-Real-IP"),
        request.client.host if request.client else None,
    ]
    for candidate in candidates:
        ip = _valid_ip(candidate)
        if ip:
            return ip
    return None


def get_client_identifier(client_ip: Optional[str], authorization: Optional[str] = None) -> str:
    """
    Rate-limit identity: client IP plus a short hash of the bearer token.

    The raw token never becomes part of the key.
    """
    parts = []
    if client_ip:
        parts.append(client_ip)

    if authorization:
        token = authorization.strip()
        if token.lower().startswith("bearer "):
            token = token[7:].strip()
        if token:
            parts.append(hashlib.md5(token.encode()).hexdigest()[:8])

    return "_".join(parts) if parts else "unknown"
