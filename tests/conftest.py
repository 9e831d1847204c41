"""
Test fixtures for hub-connector tests.

Provides database session fixtures, an API client bound to the test
database, admin/site-key credentials, a mock Hub transport and a scheduler
that reports itself as running.
"""

import os

# Must be set before hub_connector is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-admin-tokens-0123456789")
os.environ.setdefault("RUN_SCHEDULER", "false")
os.environ.setdefault("ENVIRONMENT", "test")

import json
from typing import Callable, Generator, List
from unittest.mock import PropertyMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import hub_connector.models  # noqa: F401  registers tables on the metadata
from hub_connector.core.context import RequestContext
from hub_connector.core.jwt import create_access_token
from hub_connector.services.options import (
    HUB_API_KEY,
    HUB_URL,
    SITE_KEY,
    TRACKING_ENABLED,
    OptionsStore,
)

TEST_DATABASE_URL = "sqlite:///:memory:"

HUB_URL_VALUE = "https://hub.example.com"
HUB_KEY_VALUE = "h" * 64
SITE_KEY_VALUE = "s" * 64

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@pytest.fixture(autouse=True)
def reset_process_state():
    """Clear rate-limit windows, scheduled one-shots and injected seams between tests."""
    from hub_connector.core.rate_limit import rate_limiter
    from hub_connector.core.scheduler import scheduler
    from hub_connector.services import health, updates
    from hub_connector.services.hub_sync import HubClient

    rate_limiter.clear()
    scheduler.remove_all_jobs()

    yield

    rate_limiter.clear()
    scheduler.remove_all_jobs()
    HubClient.default_transport = None
    health.set_health_provider(health.DefaultHealthProvider())
    updates.set_update_provider(updates.NullUpdateProvider())


@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def test_session(test_engine) -> Generator[Session, None, None]:
    """Provide a test database session."""
    with Session(test_engine) as session:
        yield session


@pytest.fixture(scope="function")
def client(test_engine):
    """Create test client with test database."""
    from hub_connector.db import get_session
    from hub_connector.main import app

    def override_get_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    # No context manager: the lifespan (scheduler, Sentry) is not started
    client = TestClient(app)
    yield client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_token() -> str:
    return create_access_token("admin")


@pytest.fixture
def admin_headers(admin_token: str) -> dict:
    return {"Authorization": f"Bearer {admin_token}"}


@pytest.fixture
def site_key(test_session: Session) -> str:
    """Store a site key for manager requests."""
    OptionsStore(test_session).set(SITE_KEY, SITE_KEY_VALUE)
    return SITE_KEY_VALUE


@pytest.fixture
def manager_headers(site_key: str) -> dict:
    return {"Authorization": f"Bearer {site_key}"}


@pytest.fixture
def hub_configured(test_session: Session) -> OptionsStore:
    """Hub credentials stored, tracking enabled."""
    options = OptionsStore(test_session)
    options.set(HUB_URL, HUB_URL_VALUE, commit=False)
    options.set(HUB_API_KEY, HUB_KEY_VALUE, commit=False)
    options.set(TRACKING_ENABLED, True)
    return options


@pytest.fixture
def running_scheduler():
    """
    Report the scheduler as running without starting it.

    Jobs added while it is stopped stay in its pending list, where get_job
    and remove_job still find them.
    """
    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    with patch.object(AsyncIOScheduler, "running", new_callable=PropertyMock, return_value=True):
        yield


class HubRecorder:
    """Mock Hub: records requests and answers from a handler."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.handler = handler
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]

    def bodies(self) -> List[dict]:
        return [json.loads(r.content) if r.content else {} for r in self.requests]


@pytest.fixture
def mock_hub(monkeypatch):
    """
    Install a mock Hub for every HubClient created during the test.

    Usage:
        hub = mock_hub(lambda request: httpx.Response(200, json={"success": True}))
    """
    from hub_connector.services.hub_sync import HubClient

    def install(handler: Callable[[httpx.Request], httpx.Response]) -> HubRecorder:
        recorder = HubRecorder(handler)
        monkeypatch.setattr(HubClient, "default_transport", httpx.MockTransport(recorder))
        return recorder

    return install


@pytest.fixture
def make_ctx() -> Callable[..., RequestContext]:
    """Factory for a RequestContext describing a regular browser request."""

    def factory(**kwargs) -> RequestContext:
        headers = {"user-agent": CHROME_UA}
        headers.update({k.lower(): v for k, v in kwargs.pop("headers", {}).items()})
        return RequestContext(client_ip=kwargs.pop("client_ip", "203.0.113.7"), headers=headers, **kwargs)

    return factory
