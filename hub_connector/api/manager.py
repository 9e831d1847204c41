"""
Manager-facing endpoints, authenticated with the site key.

Every route passes the auth gate under its own endpoint class; scoped
routes additionally require the permission to be enabled.
"""

import platform

from fastapi import APIRouter, Depends, Query, Response
from sqlmodel import Session

from hub_connector import __version__
from hub_connector.api.deps import manager_auth
from hub_connector.core.config import settings
from hub_connector.core.context import RequestContext
from hub_connector.db import get_session
from hub_connector.schemas import UpdateRequest
from hub_connector.services import activity_log
from hub_connector.services.health import get_health_provider
from hub_connector.services.options import LAST_SYNC, MANAGER_URL, OptionsStore
from hub_connector.services.queue_storage import analytics_summary
from hub_connector.services.updates import UPDATE_TYPES, get_update_provider

router = APIRouter()


@router.get("/verify")
def verify(
    session: Session = Depends(get_session),
    ctx: RequestContext = Depends(manager_auth("verify")),
):
    """Confirms the key and reports what this site allows."""
    return {
        "success": True,
        "site_name": settings.SITE_NAME,
        "site_url": settings.SITE_URL,
        "connector_version": __version__,
        "python_version": platform.python_version(),
        "permissions": OptionsStore(session).permissions(),
    }


@router.get("/health")
def health(
    session: Session = Depends(get_session),
    ctx: RequestContext = Depends(manager_auth("health")),
):
    data = get_health_provider().get_health_data(session)
    activity_log.log(session, "health_check", "success", "Health check requested", client_ip=ctx.client_ip)
    return {"success": True, "data": data}


@router.get("/updates")
def list_updates(ctx: RequestContext = Depends(manager_auth("updates"))):
    updates = get_update_provider().list_updates()
    return {
        "success": True,
        "plugins": updates.get("plugins", []),
        "themes": updates.get("themes", []),
        "core": updates.get("core", []),
    }


@router.post("/update")
def perform_update(
    data: UpdateRequest,
    response: Response,
    session: Session = Depends(get_session),
    ctx: RequestContext = Depends(manager_auth("update", scope="perform_updates")),
):
    if data.type not in UPDATE_TYPES:
        response.status_code = 400
        return {
            "success": False,
            "code": "invalid_type",
            "message": "Invalid update type. Use plugin, theme, or core.",
        }

    slug = data.slug or ""
    result = get_update_provider().perform_update(data.type, slug)
    success = bool(result.get("success"))

    activity_log.log(
        session,
        "update_installed" if success else "update_failed",
        "success" if success else "error",
        result.get("message") or f"{data.type} update {'installed' if success else 'failed'}",
        meta={"type": data.type, "slug": slug},
        client_ip=ctx.client_ip,
    )
    if not success:
        response.status_code = 500
    return {**result, "success": success}


@router.get("/analytics")
def analytics(
    days: int = Query(default=30, ge=1, le=365),
    session: Session = Depends(get_session),
    ctx: RequestContext = Depends(manager_auth("analytics", scope="access_analytics")),
):
    return {"success": True, "data": analytics_summary(session, days)}


@router.post("/disconnect")
def disconnect(
    session: Session = Depends(get_session),
    ctx: RequestContext = Depends(manager_auth("disconnect")),
):
    """The manager forgets this site. The site key is kept."""
    OptionsStore(session).delete(MANAGER_URL, LAST_SYNC)
    activity_log.log(session, "disconnect", "info", "Manager disconnected", client_ip=ctx.client_ip)
    return {"success": True, "message": "Disconnected from manager."}
