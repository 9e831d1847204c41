"""
Hub sync engine.

Pages every queue table through the Hub's push endpoint in fixed order
(visitors, events, touches, conversions, popup_interactions). A batch is
marked synced only after the Hub acknowledged it, so delivery is
at-least-once and a failed run leaves the remaining rows for the next
trigger.

Scheduled runs, Hub-requested one-shot runs and manual admin runs all call
run_sync(); there is one implementation of the batching logic.

Usage:
    result = await run_sync(session)
    # {"success": True, "stats": {"visitors": 3, "events": 120, ...}}
"""

import platform
import secrets
import uuid
from typing import Any, Dict, List, Optional

import httpx
from sqlmodel import Session

from hub_connector import __version__
from hub_connector.core.config import settings
from hub_connector.core.errors import (
    ConfigurationError,
    RemoteRejection,
    SyncError,
    TransportError,
    error_boundary,
)
from hub_connector.core.logging_config import get_logger
from hub_connector.services import activity_log
from hub_connector.services.health import get_health_provider
from hub_connector.services.options import (
    HUB_API_KEY,
    HUB_POPUPS,
    HUB_SYNC_FAILURES,
    HUB_URL,
    LAST_HUB_SYNC,
    OptionsStore,
)
from hub_connector.services.queue_storage import (
    SYNC_ORDER,
    acquire_lease,
    mark_synced,
    release_lease,
    serialize_row,
    unsynced_batch,
)

logger = get_logger(__name__)

PUSH_PATH = "/api/v1/sync/push"
HEARTBEAT_PATH = "/api/v1/sync/heartbeat"
VERIFY_PATH = "/api/v1/sites/verify"
POPUPS_PATH = "/api/v1/popups/active"
CONNECT_PATH = "/api/v1/sites/connect"
DISCONNECT_PATH = "/api/v1/sites/disconnect"

NOT_CONFIGURED = "Hub not configured"
SYNC_IN_PROGRESS = "Sync already in progress"

CONNECT_ERROR_MESSAGES = {
    "SITE_NOT_FOUND": "This site is not registered in Hub. Please ask your agency to add this site first.",
    "ALREADY_CONNECTED": "This site is already connected to Hub. Disconnect from Hub first to reconnect.",
}


class HubClient:
    """
    Thin async HTTP client for the Hub API.

    Every call opens its own httpx.AsyncClient with the call's timeout.
    Network failures raise TransportError; a response that is not 2xx with
    `success: true` raises RemoteRejection carrying the Hub's message.
    """

    # Tests install an httpx.MockTransport here
    default_transport: Optional[httpx.AsyncBaseTransport] = None

    def __init__(
        self,
        hub_url: str,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.hub_url = hub_url.rstrip("/")
        self.api_key = api_key
        self.transport = transport or self.default_transport

    @classmethod
    def from_options(cls, options: OptionsStore) -> "HubClient":
        hub_url, api_key = options.hub_credentials()
        if not hub_url or not api_key:
            raise ConfigurationError(NOT_CONFIGURED)
        return cls(hub_url, api_key)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "User-Agent": f"hub-connector/{__version__}"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        timeout: float,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.hub_url}{path}"
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=timeout) as client:
                response = await client.request(method, url, json=json, headers=self._headers())
        except httpx.HTTPError as e:
            message = str(e) or type(e).__name__
            logger.warning("Hub request failed", path=path, error=message)
            raise TransportError(message) from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if 200 <= response.status_code < 300 and body.get("success"):
            return body

        message = body.get("message") or f"HTTP {response.status_code}"
        logger.warning("Hub rejected request", path=path, status_code=response.status_code, message=message)
        raise RemoteRejection(message, http_status=response.status_code, remote_code=body.get("code"))

    async def push(self, payload: Dict[str, List[Dict[str, Any]]]) -> Dict[str, Any]:
        body = await self._request("POST", PUSH_PATH, settings.HUB_PUSH_TIMEOUT, json=payload)
        return body.get("stats") or {}

    async def heartbeat(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", HEARTBEAT_PATH, settings.HUB_HEARTBEAT_TIMEOUT, json=payload)

    async def verify(self) -> Dict[str, Any]:
        return await self._request("POST", VERIFY_PATH, settings.HUB_VERIFY_TIMEOUT)

    async def active_popups(self) -> List[Dict[str, Any]]:
        body = await self._request("GET", POPUPS_PATH, settings.HUB_POPUP_TIMEOUT)
        popups = body.get("popups") or []
        return popups if isinstance(popups, list) else []

    async def connect(self, site_url: str, new_api_key: str) -> Dict[str, Any]:
        return await self._request(
            "POST",
            CONNECT_PATH,
            settings.HUB_CONNECT_TIMEOUT,
            json={
                "site_url": site_url,
                "api_key": new_api_key,
                "connect_version": __version__,
                "python_version": platform.python_version(),
            },
        )

    async def notify_disconnect(self) -> Dict[str, Any]:
        return await self._request(
            "POST",
            DISCONNECT_PATH,
            settings.HUB_VERIFY_TIMEOUT,
            json={"site_url": settings.SITE_URL},
        )


# ============== SYNC ==============


async def sync_table(
    session: Session,
    client: HubClient,
    table: str,
    batch_size: int,
    holder: Optional[str] = None,
) -> int:
    """
    Push one table's unsynced rows batch by batch, oldest first.

    Raises SyncError on the first rejected or failed batch. Batches already
    acknowledged stay synced.
    """
    synced = 0
    while True:
        batch = unsynced_batch(session, table, batch_size)
        if not batch:
            break

        payload = {table: [serialize_row(row) for row in batch]}
        revisions = {row.id: row.revision for row in batch}
        try:
            await client.push(payload)
        except (TransportError, RemoteRejection) as e:
            raise SyncError(table, e.message) from e

        marked = mark_synced(session, table, [row.id for row in batch], revisions)
        synced += marked
        logger.info("Batch pushed", table=table, count=len(batch), marked=marked)

        if holder:
            # Keep the lease alive across long runs
            acquire_lease(session, holder, settings.SYNC_LEASE_SECONDS)

        if marked == 0:
            # Every row changed while in flight; the next run sends the new copies
            logger.info("Batch superseded during push", table=table, count=len(batch))
            break

    return synced


async def run_sync(
    session: Session,
    client: Optional[HubClient] = None,
    trigger: str = "manual",
) -> Dict[str, Any]:
    """
    Push every queue table to the Hub.

    Returns {"success": True, "stats": {...}} or
    {"success": False, "message": ...}. Never raises for Hub failures.
    """
    options = OptionsStore(session)
    if not options.is_hub_connected():
        return {"success": False, "message": NOT_CONFIGURED}

    client = client or HubClient.from_options(options)
    holder = f"{trigger}-{uuid.uuid4().hex[:12]}"

    if not acquire_lease(session, holder, settings.SYNC_LEASE_SECONDS):
        logger.info("Sync skipped, lease held elsewhere", trigger=trigger)
        return {"success": False, "message": SYNC_IN_PROGRESS}

    stats = {table: 0 for table in SYNC_ORDER}
    try:
        for table in SYNC_ORDER:
            stats[table] = await sync_table(session, client, table, settings.HUB_SYNC_BATCH_SIZE, holder=holder)
    except SyncError as e:
        failures = int(options.get(HUB_SYNC_FAILURES, 0) or 0) + 1
        options.set(HUB_SYNC_FAILURES, failures)
        activity_log.log(
            session,
            "hub_sync",
            "error",
            e.message,
            meta={"error": e.reason, "table": e.table, "stats": stats, "trigger": trigger},
        )
        logger.warning("Sync failed", table=e.table, error=e.reason, failures=failures, trigger=trigger)
        return {"success": False, "message": e.message, "stats": stats}
    finally:
        release_lease(session, holder)

    options.touch(LAST_HUB_SYNC, commit=False)
    options.set(HUB_SYNC_FAILURES, 0)
    total = sum(stats.values())
    activity_log.log(
        session,
        "hub_sync",
        "success",
        f"Synced {total} records to Hub",
        meta={"stats": stats, "trigger": trigger},
    )
    logger.info("Sync complete", total=total, trigger=trigger, **stats)
    return {"success": True, "stats": stats}


# ============== HEARTBEAT / VERIFY / POPUPS ==============


def build_heartbeat_payload(session: Session) -> Dict[str, Any]:
    return {
        "health_data": get_health_provider().get_health_data(session),
        "connect_version": __version__,
        "python_version": platform.python_version(),
        # Hub schema fields for PHP hosts
        "wp_version": None,
        "php_version": None,
    }


async def send_heartbeat(session: Session, client: Optional[HubClient] = None) -> Dict[str, Any]:
    """
    Report health to the Hub, cache pushed popups and honour `sync_now`.

    A `sync_now` request schedules a single one-shot sync; a second request
    while one is pending changes nothing.
    """
    options = OptionsStore(session)
    if not options.is_hub_connected():
        return {"success": False, "message": NOT_CONFIGURED}

    client = client or HubClient.from_options(options)
    try:
        body = await client.heartbeat(build_heartbeat_payload(session))
    except (TransportError, RemoteRejection) as e:
        activity_log.log(session, "heartbeat", "error", e.message)
        return {"success": False, "message": e.message}

    popups = body.get("popups") or []
    if popups:
        options.set(HUB_POPUPS, popups)

    sync_now = bool(body.get("sync_now", False))
    if sync_now:
        from hub_connector.core.scheduler import request_immediate_sync

        request_immediate_sync(session, reason="hub")

    logger.info("Heartbeat sent", sync_now=sync_now, popups=len(popups))
    return {
        "success": True,
        "sync_enabled": body.get("sync_enabled", True),
        "sync_now": sync_now,
        "popups": popups,
    }


async def verify_hub_connection(
    hub_url: str,
    api_key: str,
    client: Optional[HubClient] = None,
) -> Dict[str, Any]:
    """
    Check credentials against the Hub without touching queue or sync state.

    Failures carry `error_type` so an operator can tell a missing
    configuration from a Hub that is down or one that rejects the key.
    """
    if not hub_url or not api_key:
        return {"success": False, "error_type": "configuration", "message": NOT_CONFIGURED}

    client = client or HubClient(hub_url, api_key)
    try:
        body = await client.verify()
    except TransportError as e:
        return {"success": False, "error_type": "transport", "message": f"Could not reach Hub: {e.message}"}
    except RemoteRejection as e:
        return {"success": False, "error_type": "rejected", "message": e.message}

    return {
        "success": True,
        "site": body.get("site") or {},
        "client": body.get("client") or {},
        "agency": body.get("agency") or {},
    }


async def get_popups(session: Session, client: Optional[HubClient] = None) -> List[Dict[str, Any]]:
    """Cached Hub popups, fetched from the Hub (and cached) when none are stored."""
    options = OptionsStore(session)
    cached = options.get(HUB_POPUPS)
    if cached:
        return cached

    if not options.is_hub_connected():
        return []

    client = client or HubClient.from_options(options)
    try:
        popups = await client.active_popups()
    except (TransportError, RemoteRejection) as e:
        logger.warning("Popup fetch failed", error=e.message)
        return []

    options.set(HUB_POPUPS, popups)
    return popups


# ============== CONNECTION MANAGEMENT ==============


def generate_api_key(length: int = 64) -> str:
    """Random alphanumeric key (64 chars by default)."""
    alphabet = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
    return "".join(secrets.choice(alphabet) for _ in range(length))


async def connect_to_hub(
    session: Session,
    hub_url: str,
    client: Optional[HubClient] = None,
) -> Dict[str, Any]:
    """
    Generate an API key locally, register it with the Hub and store it.

    Hub error codes SITE_NOT_FOUND and ALREADY_CONNECTED map to operator
    messages. On success an initial heartbeat is sent.
    """
    hub_url = hub_url.strip().rstrip("/")
    api_key = generate_api_key()
    client = client or HubClient(hub_url)

    try:
        await client.connect(settings.SITE_URL, api_key)
    except TransportError as e:
        return {"success": False, "message": f"Failed to connect to Hub: {e.message}"}
    except RemoteRejection as e:
        message = CONNECT_ERROR_MESSAGES.get(e.remote_code or "", e.message)
        return {"success": False, "message": message, "code": e.remote_code}

    options = OptionsStore(session)
    options.set(HUB_URL, hub_url, commit=False)
    options.set(HUB_API_KEY, api_key)
    activity_log.log(session, "hub_connected", "success", f"Connected to Hub at {hub_url}")

    heartbeat = await send_heartbeat(session, HubClient(hub_url, api_key, transport=client.transport))
    return {"success": True, "message": "Connected to Hub.", "heartbeat": heartbeat}


async def disconnect_from_hub(session: Session, client: Optional[HubClient] = None) -> Dict[str, Any]:
    """Best-effort notify the Hub, then forget the Hub credentials."""
    options = OptionsStore(session)
    hub_url, api_key = options.hub_credentials()

    if hub_url and api_key:
        client = client or HubClient(hub_url, api_key)
        with error_boundary("hub_notify_disconnect", hub_url=hub_url):
            await client.notify_disconnect()

    options.delete(HUB_URL, HUB_API_KEY, LAST_HUB_SYNC, HUB_POPUPS, HUB_SYNC_FAILURES)

    from hub_connector.core.scheduler import cancel_pending_syncs

    cancel_pending_syncs(session)
    activity_log.log(session, "disconnect", "info", "Disconnected from Hub")
    return {"success": True, "message": "Disconnected from Hub."}
