"""
Tests for the Hub sync engine and Hub connection management.

The Hub is replaced by httpx.MockTransport (see the mock_hub fixture).
"""

import json
from unittest.mock import patch

import httpx
import pytest
from sqlmodel import Session, select

from hub_connector.core.config import settings
from hub_connector.core.errors import ConfigurationError, RemoteRejection, TransportError
from hub_connector.core.scheduler import SYNC_NOW_JOB_ID, scheduler
from hub_connector.models.activity import ActivityLogEntry
from hub_connector.models.tracking import Event, Visitor
from hub_connector.services import hub_sync
from hub_connector.services.hub_sync import HubClient
from hub_connector.services.tracker import Tracker
from hub_connector.services.options import (
    HUB_API_KEY,
    HUB_POPUPS,
    HUB_SYNC_FAILURES,
    HUB_URL,
    LAST_HUB_SYNC,
    SYNC_REQUESTED,
    OptionsStore,
)
from hub_connector.services.queue_storage import acquire_lease, lease_expires_at, unsynced_counts


def ok(**body) -> httpx.Response:
    return httpx.Response(200, json={"success": True, **body})


def seed_queue(session: Session, visitors: int = 2, events: int = 5) -> None:
    for i in range(visitors):
        session.add(Visitor(visitor_id=f"{i:032x}"))
    for _ in range(events):
        session.add(Event(visitor_id=f"{0:032x}", event_type="pageview"))
    session.commit()


class TestHubClient:
    @pytest.mark.asyncio
    async def test_sends_bearer_key(self, mock_hub):
        hub = mock_hub(lambda request: ok(site={"id": 1}))
        await HubClient("https://hub.example.com/", "secret").verify()

        request = hub.requests[0]
        assert str(request.url) == "https://hub.example.com/api/v1/sites/verify"
        assert request.headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_success_false_is_rejection(self, mock_hub):
        mock_hub(lambda request: httpx.Response(200, json={"success": False, "message": "Invalid API key"}))
        with pytest.raises(RemoteRejection) as exc_info:
            await HubClient("https://hub.example.com", "k").verify()
        assert exc_info.value.message == "Invalid API key"

    @pytest.mark.asyncio
    async def test_http_error_without_body(self, mock_hub):
        mock_hub(lambda request: httpx.Response(503, text="down"))
        with pytest.raises(RemoteRejection) as exc_info:
            await HubClient("https://hub.example.com", "k").heartbeat({})
        assert exc_info.value.message == "HTTP 503"
        assert exc_info.value.http_status == 503

    @pytest.mark.asyncio
    async def test_network_failure_is_transport_error(self, mock_hub):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        mock_hub(handler)
        with pytest.raises(TransportError):
            await HubClient("https://hub.example.com", "k").push({"events": []})

    def test_from_options_requires_credentials(self, test_session: Session):
        with pytest.raises(ConfigurationError):
            HubClient.from_options(OptionsStore(test_session))


class TestRunSync:
    @pytest.mark.asyncio
    async def test_not_configured_queries_nothing(self, test_session: Session):
        with patch("hub_connector.services.hub_sync.unsynced_batch") as batch:
            result = await hub_sync.run_sync(test_session)

        assert result == {"success": False, "message": "Hub not configured"}
        batch.assert_not_called()

    @pytest.mark.asyncio
    async def test_pushes_tables_in_order_in_batches(self, test_session, hub_configured, mock_hub, monkeypatch):
        monkeypatch.setattr(settings, "HUB_SYNC_BATCH_SIZE", 2)
        seed_queue(test_session, visitors=2, events=5)
        hub = mock_hub(lambda request: ok(stats={}))

        result = await hub_sync.run_sync(test_session)

        assert result["success"] is True
        assert result["stats"]["visitors"] == 2
        assert result["stats"]["events"] == 5
        tables = [next(iter(body)) for body in hub.bodies()]
        assert tables == ["visitors", "events", "events", "events"]
        assert [len(body[t]) for body, t in zip(hub.bodies(), tables)] == [2, 2, 2, 1]
        assert sum(unsynced_counts(test_session).values()) == 0

    @pytest.mark.asyncio
    async def test_pushed_rows_use_wire_column_names(self, test_session, hub_configured, mock_hub):
        test_session.add(Event(visitor_id="a" * 32, event_type="click", metadata_={"k": "v"}))
        test_session.commit()
        hub = mock_hub(lambda request: ok())

        await hub_sync.run_sync(test_session)

        row = hub.bodies()[0]["events"][0]
        assert row["metadata"] == {"k": "v"}
        assert row["event_type"] == "click"

    @pytest.mark.asyncio
    async def test_row_changed_during_push_is_sent_again(self, test_session, hub_configured, mock_hub, make_ctx):
        visitor_id = "c" * 32
        test_session.add(Visitor(visitor_id=visitor_id))
        test_session.commit()
        pushed_emails = []

        def handler(request):
            rows = json.loads(request.content).get("visitors", [])
            pushed_emails.extend(row["email"] for row in rows)
            if len(pushed_emails) == 1:
                # The visitor identifies while its first copy is in flight
                Tracker(test_session, make_ctx()).identify_visitor(visitor_id, "late@example.com")
            return ok()

        mock_hub(handler)
        first = await hub_sync.run_sync(test_session)

        assert first["success"] is True
        assert first["stats"]["visitors"] == 0
        assert unsynced_counts(test_session)["visitors"] == 1

        second = await hub_sync.run_sync(test_session)

        assert second["stats"]["visitors"] == 1
        assert pushed_emails == [None, "late@example.com"]
        assert unsynced_counts(test_session)["visitors"] == 0
        visitor = test_session.exec(select(Visitor).where(Visitor.visitor_id == visitor_id)).one()
        assert visitor.synced is True

    @pytest.mark.asyncio
    async def test_failure_keeps_acknowledged_batches(self, test_session, hub_configured, mock_hub):
        seed_queue(test_session, visitors=2, events=3)

        def handler(request):
            if "events" in request.content.decode():
                return httpx.Response(500, json={"success": False, "message": "Database busy"})
            return ok()

        mock_hub(handler)
        result = await hub_sync.run_sync(test_session)

        assert result["success"] is False
        assert result["message"] == "Failed to sync events: Database busy"
        assert result["stats"]["visitors"] == 2

        counts = unsynced_counts(test_session)
        assert counts["visitors"] == 0
        assert counts["events"] == 3

        options = OptionsStore(test_session)
        assert options.get(HUB_SYNC_FAILURES) == 1
        assert options.get(LAST_HUB_SYNC) is None

        entry = test_session.exec(select(ActivityLogEntry).where(ActivityLogEntry.type == "hub_sync")).one()
        assert entry.status == "error"
        assert entry.meta["table"] == "events"

        # Lease released on failure
        assert lease_expires_at(test_session) is None

    @pytest.mark.asyncio
    async def test_transport_failure_message(self, test_session, hub_configured, mock_hub):
        seed_queue(test_session, visitors=1, events=0)

        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        mock_hub(handler)
        result = await hub_sync.run_sync(test_session)

        assert result["success"] is False
        assert result["message"].startswith("Failed to sync visitors:")

    @pytest.mark.asyncio
    async def test_success_resets_failures(self, test_session, hub_configured, mock_hub):
        OptionsStore(test_session).set(HUB_SYNC_FAILURES, 3)
        seed_queue(test_session, visitors=1, events=1)
        mock_hub(lambda request: ok())

        result = await hub_sync.run_sync(test_session)

        assert result["success"] is True
        options = OptionsStore(test_session)
        assert options.get(HUB_SYNC_FAILURES) == 0
        assert options.get_datetime(LAST_HUB_SYNC) is not None

    @pytest.mark.asyncio
    async def test_lease_held_elsewhere(self, test_session, hub_configured, mock_hub):
        seed_queue(test_session)
        acquire_lease(test_session, "other-run", 600)
        hub = mock_hub(lambda request: ok())

        result = await hub_sync.run_sync(test_session)

        assert result == {"success": False, "message": "Sync already in progress"}
        assert hub.requests == []
        assert unsynced_counts(test_session)["events"] == 5

    @pytest.mark.asyncio
    async def test_nothing_queued(self, test_session, hub_configured, mock_hub):
        hub = mock_hub(lambda request: ok())
        result = await hub_sync.run_sync(test_session)

        assert result["success"] is True
        assert sum(result["stats"].values()) == 0
        assert hub.requests == []


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_payload_and_popups_cached(self, test_session, hub_configured, mock_hub):
        popups = [{"id": 3, "title": "Spring sale"}]
        hub = mock_hub(lambda request: ok(popups=popups, sync_enabled=True))

        result = await hub_sync.send_heartbeat(test_session)

        assert result["success"] is True
        assert result["sync_now"] is False
        body = hub.bodies()[0]
        assert hub.paths() == ["/api/v1/sync/heartbeat"]
        assert set(body) >= {"health_data", "connect_version", "wp_version", "php_version"}
        assert OptionsStore(test_session).get(HUB_POPUPS) == popups

    @pytest.mark.asyncio
    async def test_sync_now_schedules_single_one_shot(self, test_session, hub_configured, mock_hub, running_scheduler):
        mock_hub(lambda request: ok(sync_now=True))

        first = await hub_sync.send_heartbeat(test_session)
        second = await hub_sync.send_heartbeat(test_session)

        assert first["sync_now"] is True and second["sync_now"] is True
        jobs = [job for job in scheduler.get_jobs() if job.id == SYNC_NOW_JOB_ID]
        assert len(jobs) == 1

    @pytest.mark.asyncio
    async def test_sync_now_without_scheduler_is_stored(self, test_session, hub_configured, mock_hub):
        mock_hub(lambda request: ok(sync_now=True))

        await hub_sync.send_heartbeat(test_session)
        await hub_sync.send_heartbeat(test_session)

        assert scheduler.get_jobs() == []
        assert OptionsStore(test_session).get(SYNC_REQUESTED)["reason"] == "hub"

    @pytest.mark.asyncio
    async def test_failure_logged(self, test_session, hub_configured, mock_hub):
        mock_hub(lambda request: httpx.Response(401, json={"success": False, "message": "Invalid API key"}))

        result = await hub_sync.send_heartbeat(test_session)

        assert result == {"success": False, "message": "Invalid API key"}
        entry = test_session.exec(select(ActivityLogEntry)).one()
        assert entry.type == "heartbeat"
        assert entry.status == "error"

    @pytest.mark.asyncio
    async def test_not_configured(self, test_session):
        result = await hub_sync.send_heartbeat(test_session)
        assert result["success"] is False


class TestVerifyHubConnection:
    @pytest.mark.asyncio
    async def test_configuration_error(self):
        result = await hub_sync.verify_hub_connection("", "")
        assert result["error_type"] == "configuration"

    @pytest.mark.asyncio
    async def test_transport_error(self, mock_hub):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        mock_hub(handler)
        result = await hub_sync.verify_hub_connection("https://hub.example.com", "k")
        assert result["error_type"] == "transport"
        assert result["message"].startswith("Could not reach Hub")

    @pytest.mark.asyncio
    async def test_rejected(self, mock_hub):
        mock_hub(lambda request: httpx.Response(403, json={"success": False, "message": "Invalid API key"}))
        result = await hub_sync.verify_hub_connection("https://hub.example.com", "k")
        assert result == {"success": False, "error_type": "rejected", "message": "Invalid API key"}

    @pytest.mark.asyncio
    async def test_success(self, mock_hub):
        mock_hub(lambda request: ok(site={"name": "Shop"}, client={"name": "Acme"}))
        result = await hub_sync.verify_hub_connection("https://hub.example.com", "k")
        assert result["success"] is True
        assert result["site"] == {"name": "Shop"}
        assert result["agency"] == {}


class TestPopups:
    @pytest.mark.asyncio
    async def test_cached_popups_skip_hub(self, test_session, hub_configured, mock_hub):
        OptionsStore(test_session).set(HUB_POPUPS, [{"id": 1}])
        hub = mock_hub(lambda request: ok(popups=[{"id": 2}]))

        assert await hub_sync.get_popups(test_session) == [{"id": 1}]
        assert hub.requests == []

    @pytest.mark.asyncio
    async def test_fallback_fetch_is_cached(self, test_session, hub_configured, mock_hub):
        hub = mock_hub(lambda request: ok(popups=[{"id": 2}]))

        assert await hub_sync.get_popups(test_session) == [{"id": 2}]
        assert hub.paths() == ["/api/v1/popups/active"]
        assert OptionsStore(test_session).get(HUB_POPUPS) == [{"id": 2}]

    @pytest.mark.asyncio
    async def test_not_connected(self, test_session):
        assert await hub_sync.get_popups(test_session) == []


class TestConnectionManagement:
    def test_generated_key(self):
        key = hub_sync.generate_api_key()
        assert len(key) == 64
        assert key.isalnum()

    @pytest.mark.asyncio
    async def test_connect_stores_credentials_and_sends_heartbeat(self, test_session, mock_hub):
        hub = mock_hub(lambda request: ok())

        result = await hub_sync.connect_to_hub(test_session, "https://hub.example.com/")

        assert result["success"] is True
        assert hub.paths() == ["/api/v1/sites/connect", "/api/v1/sync/heartbeat"]
        sent_key = hub.bodies()[0]["api_key"]

        options = OptionsStore(test_session)
        assert options.get(HUB_URL) == "https://hub.example.com"
        assert options.get(HUB_API_KEY) == sent_key
        assert hub.requests[1].headers["Authorization"] == f"Bearer {sent_key}"

    @pytest.mark.asyncio
    async def test_connect_maps_hub_error_codes(self, test_session, mock_hub):
        mock_hub(
            lambda request: httpx.Response(
                404, json={"success": False, "code": "SITE_NOT_FOUND", "message": "not found"}
            )
        )

        result = await hub_sync.connect_to_hub(test_session, "https://hub.example.com")

        assert result["success"] is False
        assert "not registered in Hub" in result["message"]
        assert OptionsStore(test_session).get(HUB_URL) is None

    @pytest.mark.asyncio
    async def test_disconnect_ignores_notify_failure(self, test_session, hub_configured, mock_hub):
        scheduler.add_job(lambda: None, "date", id=SYNC_NOW_JOB_ID)
        OptionsStore(test_session).set(SYNC_REQUESTED, {"run_at": "2026-01-01T00:00:00+00:00", "reason": "hub"})

        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        mock_hub(handler)
        result = await hub_sync.disconnect_from_hub(test_session)

        assert result["success"] is True
        options = OptionsStore(test_session)
        assert not options.is_hub_connected()
        assert scheduler.get_job(SYNC_NOW_JOB_ID) is None
        assert options.get(SYNC_REQUESTED) is None
        entry = test_session.exec(select(ActivityLogEntry).where(ActivityLogEntry.type == "disconnect")).one()
        assert entry.message == "Disconnected from Hub"
