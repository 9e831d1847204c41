"""
Tests for administrator endpoints.

Tests cover:
- Admin token requirement
- Hub settings, connect, test, heartbeat, disconnect
- Manual sync trigger and status
- Activity trail listing, counts, export and clear
- Site key generation, permissions, rate-limit clearing
"""

from datetime import timedelta

import httpx
import pytest
from sqlmodel import Session, select
from starlette.requests import Request

from hub_connector.api.deps import ADMIN_COOKIE_NAME, get_current_admin_optional
from hub_connector.core.jwt import create_access_token
from hub_connector.core.rate_limit import rate_limiter
from hub_connector.models.activity import ActivityLogEntry
from hub_connector.models.tracking import Event
from hub_connector.services import activity_log
from hub_connector.services.options import (
    HUB_API_KEY,
    HUB_MODE,
    HUB_URL,
    SITE_KEY,
    TRACKING_ENABLED,
    OptionsStore,
)
from hub_connector.services.queue_storage import unsynced_counts

API = "/api/v1"


def ok(**body) -> httpx.Response:
    return httpx.Response(200, json={"success": True, **body})


class TestAdminAuth:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("get", "/hub/settings"),
            ("post", "/sync/trigger"),
            ("get", "/sync/status"),
            ("get", "/admin/activity"),
            ("post", "/admin/site-key"),
            ("get", "/admin/permissions"),
        ],
    )
    def test_requires_admin_token(self, client, method, path):
        response = getattr(client, method)(f"{API}{path}")
        assert response.status_code == 401

    def test_expired_token_rejected(self, client):
        token = create_access_token("admin", expires_delta=timedelta(seconds=-1))
        response = client.get(f"{API}/sync/status", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_non_admin_role_rejected(self, client):
        token = create_access_token("viewer", role="viewer")
        response = client.get(f"{API}/sync/status", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_cookie_token_accepted(self, admin_token):
        request = Request(
            {"type": "http", "headers": [(b"cookie", f"{ADMIN_COOKIE_NAME}={admin_token}".encode())]}
        )
        assert get_current_admin_optional(request) == "admin"


class TestHubSettings:
    def test_get_settings(self, client, hub_configured, admin_headers):
        data = client.get(f"{API}/hub/settings", headers=admin_headers).json()["hub"]

        assert data["connected"] is True
        assert data["api_key_set"] is True
        assert data["tracking_enabled"] is True
        assert data["mode"] == "standard"
        assert data["total_pending"] == 0

    def test_partial_update(self, client, test_session: Session, admin_headers):
        response = client.post(
            f"{API}/hub/settings",
            json={"hub_url": "https://hub.example.com/", "api_key": "k" * 64, "tracking_enabled": True},
            headers=admin_headers,
        )
        assert response.status_code == 200

        test_session.expire_all()
        options = OptionsStore(test_session)
        assert options.get(HUB_URL) == "https://hub.example.com"
        assert options.is_tracking_enabled()
        entry = test_session.exec(select(ActivityLogEntry)).one()
        assert entry.type == "settings_changed"

    def test_empty_api_key_keeps_stored(self, client, test_session: Session, hub_configured, admin_headers):
        _, stored_key = hub_configured.hub_credentials()

        client.post(f"{API}/hub/settings", json={"api_key": "", "mode": "bogus"}, headers=admin_headers)

        test_session.expire_all()
        options = OptionsStore(test_session)
        assert options.get(HUB_API_KEY) == stored_key
        assert options.get(HUB_MODE) is None

    def test_invalid_url(self, client, admin_headers):
        response = client.post(f"{API}/hub/settings", json={"hub_url": "ftp://hub"}, headers=admin_headers)
        assert response.status_code == 400


class TestHubConnection:
    def test_connect(self, client, test_session: Session, admin_headers, mock_hub):
        hub = mock_hub(lambda request: ok())

        response = client.post(f"{API}/hub/connect", json={"hub_url": "https://hub.example.com"}, headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert hub.paths()[0] == "/api/v1/sites/connect"

        test_session.expire_all()
        assert OptionsStore(test_session).is_hub_connected()

    def test_connect_already_connected(self, client, admin_headers, mock_hub):
        mock_hub(
            lambda request: httpx.Response(
                409, json={"success": False, "code": "ALREADY_CONNECTED", "message": "exists"}
            )
        )

        response = client.post(f"{API}/hub/connect", json={"hub_url": "https://hub.example.com"}, headers=admin_headers)

        assert response.status_code == 400
        assert "already connected" in response.json()["message"]

    def test_test_not_configured(self, client, admin_headers):
        response = client.post(f"{API}/hub/test", headers=admin_headers)

        assert response.status_code == 400
        assert response.json()["error_type"] == "configuration"

    def test_test_success(self, client, hub_configured, admin_headers, mock_hub):
        mock_hub(lambda request: ok(site={"name": "Shop"}, agency={"name": "Agency"}))

        response = client.post(f"{API}/hub/test", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["data"]["agency"] == {"name": "Agency"}

    def test_manual_heartbeat(self, client, hub_configured, admin_headers, mock_hub):
        mock_hub(lambda request: ok(sync_enabled=True))
        response = client.post(f"{API}/hub/heartbeat", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["sync_enabled"] is True

    def test_disconnect(self, client, test_session: Session, hub_configured, admin_headers, mock_hub):
        hub = mock_hub(lambda request: ok())

        response = client.post(f"{API}/hub/disconnect", headers=admin_headers)

        assert response.status_code == 200
        assert hub.paths() == ["/api/v1/sites/disconnect"]
        test_session.expire_all()
        options = OptionsStore(test_session)
        assert not options.is_hub_connected()
        # Only the Hub credentials are forgotten
        assert options.get(TRACKING_ENABLED) is True


class TestSync:
    def test_trigger_not_configured(self, client, admin_headers):
        response = client.post(f"{API}/sync/trigger", headers=admin_headers)
        assert response.json() == {"success": False, "stats": None, "message": "Hub not configured"}

    def test_trigger_surfaces_failure_reason(self, client, test_session, hub_configured, admin_headers, mock_hub):
        test_session.add(Event(visitor_id="a" * 32, event_type="pageview"))
        test_session.commit()
        mock_hub(lambda request: httpx.Response(401, json={"success": False, "message": "Invalid API key"}))

        data = client.post(f"{API}/sync/trigger", headers=admin_headers).json()

        assert data["success"] is False
        assert data["message"] == "Failed to sync events: Invalid API key"

    def test_trigger_and_status(self, client, test_session, hub_configured, admin_headers, mock_hub):
        test_session.add(Event(visitor_id="a" * 32, event_type="pageview"))
        test_session.commit()
        mock_hub(lambda request: ok())

        data = client.post(f"{API}/sync/trigger", headers=admin_headers).json()
        assert data["success"] is True
        assert data["stats"]["events"] == 1
        assert unsynced_counts(test_session)["events"] == 0

        status = client.get(f"{API}/sync/status", headers=admin_headers).json()
        assert status["connected"] is True
        assert status["total_pending"] == 0
        assert status["last_sync"] is not None


class TestActivity:
    def test_list_and_filter(self, client, test_session: Session, admin_headers):
        activity_log.log(test_session, "hub_sync", "success", "Synced 3 records to Hub")
        activity_log.log(test_session, "auth_failed", "error", "Invalid key", client_ip="198.51.100.1")

        data = client.get(f"{API}/admin/activity", headers=admin_headers).json()
        assert data["total"] == 2
        assert data["entries"][0]["type"] == "auth_failed"

        filtered = client.get(f"{API}/admin/activity?status=success", headers=admin_headers).json()
        assert [e["type"] for e in filtered["entries"]] == ["hub_sync"]

    def test_counts(self, client, test_session: Session, admin_headers):
        activity_log.log(test_session, "hub_sync", "success")
        activity_log.log(test_session, "hub_sync", "error")

        data = client.get(f"{API}/admin/activity/counts", headers=admin_headers).json()
        assert data["by_type"] == {"hub_sync": 2}
        assert data["recent"]["total"] == 2
        assert data["recent"]["error"] == 1

    def test_export_csv(self, client, test_session: Session, admin_headers):
        activity_log.log(test_session, "heartbeat", "info", "Heartbeat, sent", client_ip="192.0.2.4")

        response = client.get(f"{API}/admin/activity/export", headers=admin_headers)

        assert response.headers["content-type"].startswith("text/csv")
        lines = response.text.strip().splitlines()
        assert lines[0] == "ID,Timestamp,Type,Status,Message,IP Address"
        assert '"Heartbeat, sent"' in lines[1]
        assert lines[1].endswith("192.0.2.4")

    def test_clear(self, client, test_session: Session, admin_headers):
        activity_log.log(test_session, "hub_sync", "success")
        response = client.post(f"{API}/admin/activity/clear", headers=admin_headers)
        assert response.json() == {"success": True, "deleted": 1}


class TestSiteKeyAndPermissions:
    def test_generate_then_regenerate(self, client, test_session: Session, admin_headers):
        first = client.post(f"{API}/admin/site-key", headers=admin_headers).json()["site_key"]
        second = client.post(f"{API}/admin/site-key", headers=admin_headers).json()["site_key"]

        assert len(first) == 64
        assert first != second
        test_session.expire_all()
        assert OptionsStore(test_session).get(SITE_KEY) == second
        types = [e.type for e in test_session.exec(select(ActivityLogEntry).order_by(ActivityLogEntry.id)).all()]
        assert types == ["key_generated", "key_regenerated"]

    def test_generated_key_authenticates_manager(self, client, admin_headers):
        site_key = client.post(f"{API}/admin/site-key", headers=admin_headers).json()["site_key"]
        response = client.get(f"{API}/verify", headers={"Authorization": f"Bearer {site_key}"})
        assert response.status_code == 200

    def test_update_permissions(self, client, test_session: Session, admin_headers):
        response = client.post(
            f"{API}/admin/permissions",
            json={"permissions": {"perform_updates": False, "health_check": False}},
            headers=admin_headers,
        )

        permissions = response.json()["permissions"]
        assert permissions["perform_updates"] is False
        assert permissions["health_check"] is True

        current = client.get(f"{API}/admin/permissions", headers=admin_headers).json()["permissions"]
        assert current == permissions
        entry = test_session.exec(select(ActivityLogEntry)).one()
        assert entry.type == "permission_changed"

    def test_clear_rate_limit(self, client, admin_headers):
        rate_limiter.check("198.51.100.1", "verify")
        before = rate_limiter.headers("198.51.100.1", "verify")["X-RateLimit-Remaining"]

        response = client.post(
            f"{API}/admin/rate-limit/clear",
            json={"identifier": "198.51.100.1", "endpoint": "verify"},
            headers=admin_headers,
        )

        assert response.json() == {"success": True}
        assert before == "9"
        assert rate_limiter.headers("198.51.100.1", "verify")["X-RateLimit-Remaining"] == "10"
