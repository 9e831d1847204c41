from fastapi import APIRouter, Depends
from sqlmodel import Session

from hub_connector.api.deps import get_current_admin
from hub_connector.db import get_session
from hub_connector.schemas import SyncResult
from hub_connector.services import hub_sync
from hub_connector.services.options import LAST_HUB_SYNC, OptionsStore
from hub_connector.services.queue_storage import unsynced_counts

router = APIRouter()


@router.post("/trigger", response_model=SyncResult)
async def trigger_sync(
    session: Session = Depends(get_session),
    admin: str = Depends(get_current_admin),
):
    """Run a sync now and return its outcome inline."""
    result = await hub_sync.run_sync(session, trigger="manual")
    return SyncResult(
        success=result["success"],
        stats=result.get("stats"),
        message=result.get("message"),
    )


@router.get("/status")
def sync_status(
    session: Session = Depends(get_session),
    admin: str = Depends(get_current_admin),
):
    options = OptionsStore(session)
    hub_url, _ = options.hub_credentials()
    pending = unsynced_counts(session)
    return {
        "connected": options.is_hub_connected(),
        "hub_url": hub_url,
        "last_sync": options.get(LAST_HUB_SYNC),
        "pending": pending,
        "total_pending": sum(pending.values()),
    }
