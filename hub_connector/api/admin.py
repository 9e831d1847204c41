"""Administrator endpoints: activity trail, site key, permissions, rate limits."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlmodel import Session

from hub_connector.api.deps import get_current_admin
from hub_connector.core.rate_limit import rate_limiter
from hub_connector.db import get_session
from hub_connector.models.activity import ActivityLogEntry
from hub_connector.schemas import (
    ActivityEntryOut,
    ActivityPage,
    PermissionsUpdate,
    RateLimitClearRequest,
)
from hub_connector.services import activity_log
from hub_connector.services.hub_sync import generate_api_key
from hub_connector.services.options import SITE_KEY, OptionsStore

router = APIRouter()


def _entry_out(entry: ActivityLogEntry) -> ActivityEntryOut:
    return ActivityEntryOut(
        id=entry.id,
        type=entry.type,
        status=entry.status,
        message=entry.message,
        metadata=entry.meta,
        client_ip=entry.client_ip,
        created_at=entry.created_at.isoformat(),
    )


# ============== ACTIVITY ==============


@router.get("/activity", response_model=ActivityPage)
def list_activity(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    type: Optional[str] = None,
    status: Optional[str] = None,
    session: Session = Depends(get_session),
    admin: str = Depends(get_current_admin),
):
    entries = activity_log.get_entries(session, limit=limit, offset=offset, type=type, status=status)
    return ActivityPage(
        entries=[_entry_out(e) for e in entries],
        total=activity_log.count_entries(session, type=type, status=status),
        limit=limit,
        offset=offset,
    )


@router.get("/activity/counts")
def activity_counts(
    hours: int = Query(default=24, ge=1, le=24 * 90),
    session: Session = Depends(get_session),
    admin: str = Depends(get_current_admin),
):
    return {
        "by_type": activity_log.get_counts(session),
        "recent": activity_log.get_recent_counts(session, hours=hours),
    }


@router.get("/activity/export")
def export_activity(
    session: Session = Depends(get_session),
    admin: str = Depends(get_current_admin),
):
    return Response(
        content=activity_log.export_csv(session),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="activity-log.csv"'},
    )


@router.post("/activity/clear")
def clear_activity(
    session: Session = Depends(get_session),
    admin: str = Depends(get_current_admin),
):
    deleted = activity_log.clear(session)
    return {"success": True, "deleted": deleted}


# ============== SITE KEY / PERMISSIONS ==============


@router.post("/site-key")
def generate_site_key(
    session: Session = Depends(get_session),
    admin: str = Depends(get_current_admin),
):
    """Generate (or rotate) the key managers authenticate with. Returned once."""
    options = OptionsStore(session)
    rotated = bool(options.site_key())

    site_key = generate_api_key(64)
    options.set(SITE_KEY, site_key)

    activity_log.log(
        session,
        "key_regenerated" if rotated else "key_generated",
        "success",
        "Site key regenerated" if rotated else "Site key generated",
    )
    return {"success": True, "site_key": site_key}


@router.get("/permissions")
def get_permissions(
    session: Session = Depends(get_session),
    admin: str = Depends(get_current_admin),
):
    return {"success": True, "permissions": OptionsStore(session).permissions()}


@router.post("/permissions")
def update_permissions(
    data: PermissionsUpdate,
    session: Session = Depends(get_session),
    admin: str = Depends(get_current_admin),
):
    permissions = OptionsStore(session).set_permissions(data.permissions)
    activity_log.log(session, "permission_changed", "info", "Manager permissions updated", meta=permissions)
    return {"success": True, "permissions": permissions}


@router.post("/rate-limit/clear")
def clear_rate_limit(
    data: RateLimitClearRequest,
    admin: str = Depends(get_current_admin),
):
    rate_limiter.clear(data.identifier, data.endpoint)
    return {"success": True}
