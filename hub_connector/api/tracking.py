"""
Public capture endpoints called by the browser tracking script.

Each endpoint is rate limited per client under its own endpoint class and
writes to the local queue only; nothing here talks to the Hub except the
popup fallback fetch.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Response, status
from sqlmodel import Session

from hub_connector.api.deps import get_request_context
from hub_connector.core.auth import client_identifier
from hub_connector.core.context import RequestContext
from hub_connector.core.rate_limit import rate_limiter
from hub_connector.db import get_session
from hub_connector.schemas import (
    ConversionRequest,
    IdentifyRequest,
    PageviewRequest,
    PopupInteractionRequest,
    TrackRequest,
)
from hub_connector.services import hub_sync
from hub_connector.services.options import OptionsStore
from hub_connector.services.tracker import (
    VISITOR_COOKIE,
    VISITOR_COOKIE_MAX_AGE,
    Tracker,
    is_valid_visitor_id,
)

router = APIRouter()


def _check_rate(ctx: RequestContext, endpoint: str) -> None:
    rate_limiter.check(client_identifier(ctx), endpoint)


@router.post("/track", status_code=status.HTTP_201_CREATED)
def track_event(
    data: TrackRequest,
    session: Session = Depends(get_session),
    ctx: RequestContext = Depends(get_request_context),
):
    """Record an event (pageview, click, ...) reported by the tracking script."""
    _check_rate(ctx, "track")

    ctx = ctx.for_page(data.page_url, data.referrer)
    event_id = Tracker(session, ctx).record_event(
        data.visitor_id,
        data.event_type,
        {
            "page_url": data.page_url,
            "page_title": data.page_title,
            "referrer": data.referrer,
            "click_id": data.click_id,
            "metadata": data.metadata,
        },
    )
    return {"success": True, "event_id": event_id}


@router.post("/identify")
def identify_visitor(
    data: IdentifyRequest,
    session: Session = Depends(get_session),
    ctx: RequestContext = Depends(get_request_context),
):
    _check_rate(ctx, "identify")

    identified = Tracker(session, ctx).identify_visitor(data.visitor_id, data.email, data.name)
    return {"success": True, "identified": identified}


@router.post("/conversion", status_code=status.HTTP_201_CREATED)
def track_conversion(
    data: ConversionRequest,
    session: Session = Depends(get_session),
    ctx: RequestContext = Depends(get_request_context),
):
    _check_rate(ctx, "conversion")

    conversion_id = Tracker(session, ctx).record_conversion(
        data.visitor_id,
        data.type,
        {
            "value": data.value,
            "currency": data.currency or "USD",
            "email": data.email,
            "name": data.name,
            "order_id": data.order_id,
            "metadata": data.metadata,
        },
    )
    return {"success": True, "conversion_id": conversion_id}


@router.post("/popup-interaction", status_code=status.HTTP_201_CREATED)
def track_popup_interaction(
    data: PopupInteractionRequest,
    session: Session = Depends(get_session),
    ctx: RequestContext = Depends(get_request_context),
):
    _check_rate(ctx, "popup_interaction")

    interaction_id = Tracker(session, ctx).record_popup_interaction(
        data.popup_id,
        data.action,
        data.visitor_id,
        {"page_url": data.page_url, "form_data": data.data},
    )
    return {"success": True, "interaction_id": interaction_id}


@router.post("/pageview")
def track_pageview(
    data: PageviewRequest,
    response: Response,
    session: Session = Depends(get_session),
    ctx: RequestContext = Depends(get_request_context),
):
    """
    Server-side pageview capture.

    UTM parameters come from page_url's query string. Skipped (tracked=false)
    when tracking is disabled, for bots, and for administrators unless
    logged-in tracking is on.
    """
    _check_rate(ctx, "track")

    options = OptionsStore(session)
    if not options.is_tracking_enabled():
        return {"success": True, "tracked": False, "visitor_id": None}

    ctx = ctx.for_page(data.page_url, data.referrer)
    if data.visitor_id and is_valid_visitor_id(data.visitor_id.lower()):
        ctx.visitor_id = data.visitor_id.lower()

    visitor_id: Optional[str] = Tracker(session, ctx, options).record_pageview(page_title=data.page_title)
    if visitor_id is None:
        return {"success": True, "tracked": False, "visitor_id": None}

    response.set_cookie(
        VISITOR_COOKIE,
        visitor_id,
        max_age=VISITOR_COOKIE_MAX_AGE,
        samesite="lax",
        path="/",
    )
    return {"success": True, "tracked": True, "visitor_id": visitor_id}


@router.get("/popups")
async def get_popups(session: Session = Depends(get_session)):
    """Active Hub popups, from cache or fetched from the Hub."""
    popups = await hub_sync.get_popups(session)
    return {"success": True, "popups": popups}
