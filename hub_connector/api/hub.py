"""Administrator endpoints for the Hub connection."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlmodel import Session

from hub_connector.api.deps import get_current_admin
from hub_connector.db import get_session
from hub_connector.schemas import HubConnectRequest, HubSettingsUpdate
from hub_connector.services import activity_log, hub_sync
from hub_connector.services.options import (
    HUB_API_KEY,
    HUB_MODE,
    HUB_MODES,
    HUB_URL,
    LAST_HUB_SYNC,
    TRACK_LOGGED_IN,
    TRACKING_ENABLED,
    OptionsStore,
)
from hub_connector.services.queue_storage import unsynced_counts

router = APIRouter()


def _is_http_url(value: str) -> bool:
    return value.startswith(("http://", "https://")) and len(value) > len("https://")


@router.get("/settings")
def get_hub_settings(
    session: Session = Depends(get_session),
    admin: str = Depends(get_current_admin),
):
    options = OptionsStore(session)
    hub_url, api_key = options.hub_credentials()
    pending = unsynced_counts(session)
    return {
        "success": True,
        "hub": {
            "url": hub_url,
            "connected": options.is_hub_connected(),
            "api_key_set": bool(api_key),
            "tracking_enabled": bool(options.get(TRACKING_ENABLED, False)),
            "track_logged_in": bool(options.get(TRACK_LOGGED_IN, False)),
            "mode": options.hub_mode(),
            "last_sync": options.get(LAST_HUB_SYNC),
            "pending": pending,
            "total_pending": sum(pending.values()),
        },
    }


@router.post("/settings")
def update_hub_settings(
    data: HubSettingsUpdate,
    session: Session = Depends(get_session),
    admin: str = Depends(get_current_admin),
):
    """Partial update. An empty api_key keeps the stored one; an unknown mode is ignored."""
    options = OptionsStore(session)
    changed = []

    if data.hub_url is not None:
        hub_url = data.hub_url.strip().rstrip("/")
        if hub_url and not _is_http_url(hub_url):
            return JSONResponse(status_code=400, content={"success": False, "message": "Invalid Hub URL format."})
        options.set(HUB_URL, hub_url, commit=False)
        changed.append("hub_url")

    if data.api_key:
        options.set(HUB_API_KEY, data.api_key.strip(), commit=False)
        changed.append("api_key")

    if data.tracking_enabled is not None:
        options.set(TRACKING_ENABLED, data.tracking_enabled, commit=False)
        changed.append("tracking_enabled")

    if data.track_logged_in is not None:
        options.set(TRACK_LOGGED_IN, data.track_logged_in, commit=False)
        changed.append("track_logged_in")

    if data.mode is not None and data.mode in HUB_MODES:
        options.set(HUB_MODE, data.mode, commit=False)
        changed.append("mode")

    session.commit()
    if changed:
        activity_log.log(session, "settings_changed", "info", "Hub settings updated", meta={"fields": changed})
    return {"success": True, "message": "Hub settings updated."}


@router.post("/connect")
async def connect_hub(
    data: HubConnectRequest,
    session: Session = Depends(get_session),
    admin: str = Depends(get_current_admin),
):
    hub_url = data.hub_url.strip()
    if not _is_http_url(hub_url):
        return JSONResponse(status_code=400, content={"success": False, "message": "Invalid Hub URL format."})

    result = await hub_sync.connect_to_hub(session, hub_url)
    if not result["success"]:
        return JSONResponse(status_code=400, content=result)
    return result


@router.post("/test")
async def test_hub_connection(
    session: Session = Depends(get_session),
    admin: str = Depends(get_current_admin),
):
    hub_url, api_key = OptionsStore(session).hub_credentials()
    result = await hub_sync.verify_hub_connection(hub_url, api_key)

    if result["success"]:
        return {
            "success": True,
            "message": "Hub connection successful.",
            "data": {"site": result["site"], "client": result["client"], "agency": result["agency"]},
        }
    return JSONResponse(status_code=400, content=result)


@router.post("/heartbeat")
async def trigger_heartbeat(
    session: Session = Depends(get_session),
    admin: str = Depends(get_current_admin),
):
    result = await hub_sync.send_heartbeat(session)
    return JSONResponse(status_code=200 if result["success"] else 400, content=result)


@router.post("/disconnect")
async def disconnect_hub(
    session: Session = Depends(get_session),
    admin: str = Depends(get_current_admin),
):
    return await hub_sync.disconnect_from_hub(session)
