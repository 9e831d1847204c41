"""
Visitor identity and event capture.

The tracker turns inbound requests into queued rows (visitors, events,
attribution touches, conversions, popup interactions). It only ever creates
rows and enriches visitor identity; the sync engine owns the envelope.

All request-derived input arrives through a RequestContext, so nothing here
keeps per-request state at module level:

    tracker = Tracker(session, ctx)
    visitor_id = tracker.record_pageview(page_title="Pricing")
"""

import re
import secrets
from datetime import timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select
from user_agents import parse as parse_ua

from hub_connector.core.context import RequestContext
from hub_connector.core.errors import ValidationError
from hub_connector.core.logging_config import get_logger
from hub_connector.core.typing import as_utc, utc_now
from hub_connector.models.tracking import (
    POPUP_ACTIONS,
    AttributionTouch,
    Conversion,
    Event,
    PopupInteraction,
    Visitor,
)
from hub_connector.services.options import OptionsStore, TRACK_LOGGED_IN

logger = get_logger(__name__)

VISITOR_COOKIE = "hub_vid"
CLICK_ID_COOKIE = "hub_cid"
VISITOR_COOKIE_MAX_AGE = 365 * 24 * 3600

VISITOR_ID_RE = re.compile(r"^[a-f0-9]{32}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

UTM_FIELDS = ("source", "medium", "campaign", "term", "content")

PAID_MEDIUMS = {"cpc", "ppc", "paid", "paidsocial", "paid_social"}

SOCIAL_DOMAINS = [
    "facebook.com",
    "twitter.com",
    "linkedin.com",
    "instagram.com",
    "pinterest.com",
    "tiktok.com",
    "t.co",
    "fb.me",
]

SEARCH_DOMAINS = [
    "google.",
    "bing.com",
    "yahoo.com",
    "duckduckgo.com",
    "baidu.com",
    "yandex.",
]

BOT_PATTERNS = [
    "bot",
    "crawl",
    "spider",
    "slurp",
    "facebook",
    "twitter",
    "linkedin",
    "pinterest",
    "whatsapp",
    "telegram",
    "preview",
    "headless",
    "phantom",
    "selenium",
    "puppeteer",
]

TOUCH_INSERT_ATTEMPTS = 5

# A pageview after this much inactivity starts a new visit
SESSION_TIMEOUT = timedelta(minutes=30)


def generate_visitor_id() -> str:
    """16 random bytes as 32 hex characters."""
    return secrets.token_hex(16)


def is_valid_visitor_id(value: Optional[str]) -> bool:
    return bool(value) and VISITOR_ID_RE.match(value) is not None


def is_bot(user_agent: Optional[str]) -> bool:
    if not user_agent:
        return False
    ua = user_agent.lower()
    return any(pattern in ua for pattern in BOT_PATTERNS)


def _referrer_host(referrer: str) -> str:
    if "//" not in referrer:
        referrer = f"//{referrer}"
    try:
        return (urlsplit(referrer).hostname or "").lower()
    except ValueError:
        return ""


def _host_matches(host: str, domain: str) -> bool:
    # "google." matches any TLD; full domains match themselves and subdomains
    if domain.endswith("."):
        return host.startswith(domain) or f".{domain}" in host
    return host == domain or host.endswith(f".{domain}")


def _matches_domain(referrer: str, domains) -> bool:
    host = _referrer_host(referrer)
    return any(_host_matches(host, domain) for domain in domains)


def determine_channel(
    source: Optional[str] = None,
    medium: Optional[str] = None,
    referrer: Optional[str] = None,
) -> str:
    """
    Classify traffic into a marketing channel. First match wins:

        direct, paid, email, social, organic, referral, other

    UTM medium is consulted before the referrer domain, so a paid click
    arriving from google.com is still `paid`.
    """
    source = (source or "").strip().lower()
    medium = (medium or "").strip().lower()
    referrer = (referrer or "").strip()

    if not referrer and not source:
        return "direct"

    if medium in PAID_MEDIUMS:
        return "paid"

    if medium == "email" or source == "email":
        return "email"

    if medium == "social" or (referrer and _matches_domain(referrer, SOCIAL_DOMAINS)):
        return "social"

    if medium == "organic" or (referrer and _matches_domain(referrer, SEARCH_DOMAINS)):
        return "organic"

    if referrer:
        return "referral"

    return "other"


def get_device_info(user_agent: Optional[str]) -> Dict[str, str]:
    """Device type, browser family and OS family from the user agent."""
    if not user_agent:
        return {"device_type": "desktop", "browser": "Unknown", "os": "Unknown"}

    ua = parse_ua(user_agent)
    if ua.is_tablet:
        device_type = "tablet"
    elif ua.is_mobile:
        device_type = "mobile"
    else:
        device_type = "desktop"

    browser = ua.browser.family if ua.browser.family != "Other" else "Unknown"
    os_name = ua.os.family if ua.os.family != "Other" else "Unknown"
    return {"device_type": device_type, "browser": browser[:50], "os": os_name[:50]}


def get_utm_params(ctx: RequestContext) -> Dict[str, Optional[str]]:
    return {field: _clean(ctx.query_params.get(f"utm_{field}"), 255) for field in UTM_FIELDS}


def has_utm(utm: Dict[str, Optional[str]]) -> bool:
    return bool(utm.get("source") or utm.get("medium") or utm.get("campaign"))


def _clean(value: Any, max_length: int) -> Optional[str]:
    """Strip control characters and surrounding whitespace, then truncate."""
    if value is None:
        return None
    text = re.sub(r"[\x00-\x1f\x7f]", "", str(value)).strip()
    return text[:max_length] or None


def sanitize_email(email: Optional[str]) -> Optional[str]:
    cleaned = _clean(email, 255)
    if not cleaned:
        return None
    cleaned = cleaned.lower()
    return cleaned if EMAIL_RE.match(cleaned) else None


def _mark_changed(visitor: Visitor) -> None:
    visitor.synced = False
    visitor.revision += 1


class Tracker:
    """Captures telemetry for one request."""

    def __init__(self, session: Session, ctx: RequestContext, options: Optional[OptionsStore] = None):
        self.session = session
        self.ctx = ctx
        self.options = options or OptionsStore(session)

    # ============== IDENTITY ==============

    def resolve_visitor_id(self) -> str:
        """
        The visitor token from the cookie when well-formed, else a fresh one.

        Memoized on the request context, so repeated calls within one request
        agree.
        """
        if self.ctx.visitor_id:
            return self.ctx.visitor_id

        candidate = (self.ctx.cookies.get(VISITOR_COOKIE) or "").strip().lower()
        self.ctx.visitor_id = candidate if is_valid_visitor_id(candidate) else generate_visitor_id()
        return self.ctx.visitor_id

    def should_track(self) -> bool:
        if self.ctx.is_admin and not self.options.get(TRACK_LOGGED_IN, False):
            return False
        if is_bot(self.ctx.user_agent):
            return False
        return True

    # ============== CAPTURE ==============

    def record_pageview(self, page_title: Optional[str] = None) -> Optional[str]:
        """
        Upsert the visitor, record a pageview event and, when UTM parameters
        are present, an attribution touch.

        Returns the visitor id, or None when the request was not tracked.
        """
        if not self.should_track():
            logger.debug("Pageview skipped", is_admin=self.ctx.is_admin)
            return None

        visitor_id = self.resolve_visitor_id()
        self.upsert_visitor(visitor_id)

        self.record_event(
            visitor_id,
            "pageview",
            {
                "page_url": self.ctx.url,
                "page_title": page_title,
                "referrer": self.ctx.referrer or "",
            },
        )

        utm = get_utm_params(self.ctx)
        if has_utm(utm):
            self.record_touch(visitor_id, utm)

        return visitor_id

    def upsert_visitor(self, visitor_id: str) -> Visitor:
        now = utc_now()
        visitor = self._get_visitor(visitor_id)

        if visitor is None:
            device = get_device_info(self.ctx.user_agent)
            visitor = Visitor(
                visitor_id=visitor_id,
                first_seen_at=now,
                last_seen_at=now,
                total_visits=1,
                total_pageviews=1,
                device_type=device["device_type"],
                browser=device["browser"],
                os=device["os"],
                country=None,
            )
            self.session.add(visitor)
            try:
                self.session.commit()
                self.session.refresh(visitor)
                return visitor
            except IntegrityError:
                # A concurrent request created the row first
                self.session.rollback()
                visitor = self._get_visitor(visitor_id)

        if now - as_utc(visitor.last_seen_at) >= SESSION_TIMEOUT:
            visitor.total_visits += 1
        visitor.last_seen_at = now
        visitor.total_pageviews += 1
        _mark_changed(visitor)
        self.session.add(visitor)
        self.session.commit()
        self.session.refresh(visitor)
        return visitor

    def record_event(self, visitor_id: str, event_type: str, data: Optional[Dict[str, Any]] = None) -> int:
        """Insert an event, stamping it with the UTM values of the current request."""
        data = data or {}
        utm = get_utm_params(self.ctx)
        metadata = data.get("metadata")

        click_id = data.get("click_id")
        if not click_id and isinstance(metadata, dict):
            click_id = metadata.get("click_id")
        if not click_id:
            click_id = self.ctx.cookies.get(CLICK_ID_COOKIE)

        event = Event(
            visitor_id=visitor_id,
            event_type=_clean(event_type, 50) or "event",
            page_url=_clean(data.get("page_url") or self.ctx.url, 2048),
            page_title=_clean(data.get("page_title"), 255),
            referrer=_clean(data.get("referrer"), 2048),
            utm_source=utm["source"],
            utm_medium=utm["medium"],
            utm_campaign=utm["campaign"],
            utm_term=utm["term"],
            utm_content=utm["content"],
            click_id=_clean(click_id, 36),
            metadata_=metadata if metadata is not None else None,
            occurred_at=utc_now(),
        )
        self.session.add(event)
        self.session.commit()
        self.session.refresh(event)
        return event.id

    def record_touch(self, visitor_id: str, utm: Dict[str, Optional[str]]) -> int:
        """
        Insert an attribution touch at the next position for the visitor.

        A unique index on (visitor_id, touch_position) rejects a position
        claimed concurrently; the position is then recomputed.
        """
        referrer = self.ctx.referrer
        channel = determine_channel(utm.get("source"), utm.get("medium"), referrer)

        for attempt in range(1, TOUCH_INSERT_ATTEMPTS + 1):
            position = self._next_touch_position(visitor_id)
            touch = AttributionTouch(
                visitor_id=visitor_id,
                channel=channel,
                source=_clean(utm.get("source"), 100),
                medium=_clean(utm.get("medium"), 100),
                campaign=_clean(utm.get("campaign"), 255),
                landing_page=_clean(self.ctx.url, 2048),
                referrer=_clean(referrer, 2048),
                touch_position=position,
                touched_at=utc_now(),
            )
            self.session.add(touch)
            try:
                self.session.commit()
            except IntegrityError:
                self.session.rollback()
                logger.info("Touch position taken, retrying", position=position, attempt=attempt)
                continue
            self.session.refresh(touch)
            return touch.id

        raise ValidationError("Could not allocate a touch position")

    def _next_touch_position(self, visitor_id: str) -> int:
        count = self.session.exec(
            select(func.count()).select_from(AttributionTouch).where(AttributionTouch.visitor_id == visitor_id)
        ).one()
        return count + 1

    def record_conversion(self, visitor_id: str, type: str, data: Optional[Dict[str, Any]] = None) -> int:
        data = data or {}
        email = sanitize_email(data.get("email"))
        name = _clean(data.get("name"), 255)

        value = data.get("value")
        conversion = Conversion(
            visitor_id=visitor_id,
            type=_clean(type, 50) or "conversion",
            value=float(value) if value is not None else None,
            currency=(_clean(data.get("currency"), 3) or "USD").upper(),
            customer_email=email,
            customer_name=name,
            order_id=_clean(data.get("order_id"), 100),
            metadata_=data.get("metadata"),
            converted_at=utc_now(),
        )
        self.session.add(conversion)
        self.session.commit()
        self.session.refresh(conversion)

        if email:
            self.identify_visitor(visitor_id, email, name)

        return conversion.id

    def identify_visitor(self, visitor_id: str, email: str, name: Optional[str] = None) -> bool:
        """
        Attach email/name to a visitor and mark it for re-delivery.

        Returns False when no visitor row exists for the id.
        """
        clean_email = sanitize_email(email)
        if not clean_email:
            raise ValidationError("A valid email address is required")

        visitor = self._get_visitor(visitor_id)
        if visitor is None:
            return False

        visitor.email = clean_email
        visitor.name = _clean(name, 255)
        _mark_changed(visitor)
        self.session.add(visitor)
        self.session.commit()
        return True

    def record_popup_interaction(
        self,
        popup_id: int,
        action: str,
        visitor_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> int:
        if action not in POPUP_ACTIONS:
            raise ValidationError(f"Invalid popup action: {action}")

        data = data or {}
        interaction = PopupInteraction(
            popup_id=int(popup_id),
            visitor_id=visitor_id or self.resolve_visitor_id(),
            action=action,
            page_url=_clean(data.get("page_url") or self.ctx.url, 2048),
            data=data.get("form_data"),
            occurred_at=utc_now(),
        )
        self.session.add(interaction)
        self.session.commit()
        self.session.refresh(interaction)
        return interaction.id

    def _get_visitor(self, visitor_id: str) -> Optional[Visitor]:
        return self.session.exec(select(Visitor).where(Visitor.visitor_id == visitor_id)).first()

