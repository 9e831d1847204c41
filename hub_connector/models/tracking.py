"""
Telemetry models: the local queue of visitor behaviour awaiting Hub sync.

Every table carries the sync envelope (`synced`, `synced_at`, `revision`).
Rows are created by the tracker and only `synced`/`synced_at` are ever written
by the sync engine. The tracker bumps `revision` whenever it re-marks a row
unsynced, so an acknowledgement for an older copy cannot mark it delivered.
"""

from datetime import datetime
from typing import Optional, Union

from sqlalchemy import Index, UniqueConstraint
from sqlmodel import SQLModel, Field, Column, JSON

from hub_connector.core.typing import utc_now


class SyncEnvelope(SQLModel):
    """Columns shared by every queued row."""

    synced: bool = Field(default=False, index=True)
    synced_at: Optional[datetime] = Field(default=None)
    revision: int = Field(default=0)


class Visitor(SyncEnvelope, table=True):
    """A de-duplicated browsing identity, keyed by the client-held token."""

    __tablename__ = "visitors"

    id: Optional[int] = Field(default=None, primary_key=True)
    visitor_id: str = Field(max_length=64, unique=True, index=True)
    email: Optional[str] = Field(default=None, max_length=255, index=True)
    name: Optional[str] = Field(default=None, max_length=255)
    first_seen_at: datetime = Field(default_factory=utc_now)
    last_seen_at: datetime = Field(default_factory=utc_now)
    total_visits: int = Field(default=1)
    total_pageviews: int = Field(default=1)
    device_type: Optional[str] = Field(default=None, max_length=20)  # desktop, mobile, tablet
    browser: Optional[str] = Field(default=None, max_length=50)
    os: Optional[str] = Field(default=None, max_length=50)
    country: Optional[str] = Field(default=None, max_length=2)
    city: Optional[str] = Field(default=None, max_length=100)


class Event(SyncEnvelope, table=True):
    __tablename__ = "events"

    id: Optional[int] = Field(default=None, primary_key=True)
    visitor_id: str = Field(max_length=64, index=True)
    event_type: str = Field(max_length=50, index=True)
    page_url: Optional[str] = Field(default=None)
    page_title: Optional[str] = Field(default=None, max_length=255)
    referrer: Optional[str] = Field(default=None)
    utm_source: Optional[str] = Field(default=None, max_length=100)
    utm_medium: Optional[str] = Field(default=None, max_length=100)
    utm_campaign: Optional[str] = Field(default=None, max_length=255)
    utm_term: Optional[str] = Field(default=None, max_length=255)
    utm_content: Optional[str] = Field(default=None, max_length=255)
    click_id: Optional[str] = Field(default=None, max_length=36, index=True)
    metadata_: Optional[dict] = Field(default=None, sa_column=Column("metadata", JSON))
    occurred_at: datetime = Field(default_factory=utc_now, index=True)


class AttributionTouch(SyncEnvelope, table=True):
    """
    A marketing touchpoint. touch_position is the 1-based ordinal among the
    visitor's touches and is unique per visitor.
    """

    __tablename__ = "touches"
    __table_args__ = (
        UniqueConstraint("visitor_id", "touch_position", name="uq_touch_visitor_position"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    visitor_id: str = Field(max_length=64, index=True)
    channel: Optional[str] = Field(default=None, max_length=100)
    source: Optional[str] = Field(default=None, max_length=100)
    medium: Optional[str] = Field(default=None, max_length=100)
    campaign: Optional[str] = Field(default=None, max_length=255)
    landing_page: Optional[str] = Field(default=None)
    referrer: Optional[str] = Field(default=None)
    touch_position: int = Field(default=1)
    touched_at: datetime = Field(default_factory=utc_now, index=True)


class Conversion(SyncEnvelope, table=True):
    __tablename__ = "conversions"

    id: Optional[int] = Field(default=None, primary_key=True)
    visitor_id: str = Field(max_length=64, index=True)
    type: str = Field(max_length=50, index=True)
    value: Optional[float] = Field(default=None)
    currency: str = Field(default="USD", max_length=3)
    customer_email: Optional[str] = Field(default=None, max_length=255)
    customer_name: Optional[str] = Field(default=None, max_length=255)
    order_id: Optional[str] = Field(default=None, max_length=100)
    metadata_: Optional[dict] = Field(default=None, sa_column=Column("metadata", JSON))
    converted_at: datetime = Field(default_factory=utc_now, index=True)


class PopupInteraction(SyncEnvelope, table=True):
    __tablename__ = "popup_interactions"
    __table_args__ = (Index("ix_popup_interactions_popup_action", "popup_id", "action"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    popup_id: int = Field(index=True)
    visitor_id: Optional[str] = Field(default=None, max_length=64)
    action: str = Field(max_length=20)  # view, click, convert, dismiss, close
    page_url: Optional[str] = Field(default=None)
    data: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    occurred_at: datetime = Field(default_factory=utc_now, index=True)


QueueRow = Union[Visitor, Event, AttributionTouch, Conversion, PopupInteraction]

POPUP_ACTIONS = ("view", "click", "convert", "dismiss", "close")
