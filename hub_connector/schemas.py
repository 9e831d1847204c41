from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field

VISITOR_ID_PATTERN = r"^[A-Za-z0-9_\-]+$"


# ============== PUBLIC CAPTURE ==============

class TrackRequest(BaseModel):
    visitor_id: str = Field(min_length=1, max_length=64, pattern=VISITOR_ID_PATTERN)
    event_type: str = Field(min_length=1, max_length=50)
    page_url: Optional[str] = Field(default=None, max_length=2048)
    page_title: Optional[str] = Field(default=None, max_length=255)
    referrer: Optional[str] = Field(default=None, max_length=2048)
    click_id: Optional[str] = Field(default=None, max_length=36)
    metadata: Optional[Dict[str, Any]] = None


class IdentifyRequest(BaseModel):
    visitor_id: str = Field(min_length=1, max_length=64, pattern=VISITOR_ID_PATTERN)
    email: str = Field(min_length=3, max_length=255)
    name: Optional[str] = Field(default=None, max_length=255)


class ConversionRequest(BaseModel):
    visitor_id: str = Field(min_length=1, max_length=64, pattern=VISITOR_ID_PATTERN)
    type: str = Field(min_length=1, max_length=50)
    value: Optional[float] = None
    currency: Optional[str] = Field(default="USD", max_length=3)
    email: Optional[str] = Field(default=None, max_length=255)
    name: Optional[str] = Field(default=None, max_length=255)
    order_id: Optional[str] = Field(default=None, max_length=100)
    metadata: Optional[Dict[str, Any]] = None


class PopupInteractionRequest(BaseModel):
    popup_id: int = Field(ge=1)
    action: Literal["view", "click", "convert", "dismiss", "close"]
    visitor_id: Optional[str] = Field(default=None, max_length=64, pattern=VISITOR_ID_PATTERN)
    page_url: Optional[str] = Field(default=None, max_length=2048)
    data: Optional[Dict[str, Any]] = None


class PageviewRequest(BaseModel):
    page_url: str = Field(min_length=1, max_length=2048)
    page_title: Optional[str] = Field(default=None, max_length=255)
    referrer: Optional[str] = Field(default=None, max_length=2048)
    visitor_id: Optional[str] = Field(default=None, max_length=64)


# ============== ADMIN ==============

class HubSettingsUpdate(BaseModel):
    hub_url: Optional[str] = Field(default=None, max_length=2048)
    api_key: Optional[str] = Field(default=None, max_length=255)
    tracking_enabled: Optional[bool] = None
    track_logged_in: Optional[bool] = None
    mode: Optional[str] = None


class HubConnectRequest(BaseModel):
    hub_url: str = Field(min_length=1, max_length=2048)


class PermissionsUpdate(BaseModel):
    permissions: Dict[str, bool]


class RateLimitClearRequest(BaseModel):
    identifier: str = Field(min_length=1)
    endpoint: str = "all"


# ============== MANAGER ==============

class UpdateRequest(BaseModel):
    type: str
    slug: Optional[str] = Field(default=None, max_length=255)


class SyncResult(BaseModel):
    success: bool
    stats: Optional[Dict[str, int]] = None
    message: Optional[str] = None


class ActivityEntryOut(BaseModel):
    id: int
    type: str
    status: str
    message: str
    metadata: Optional[Dict[str, Any]] = None
    client_ip: Optional[str] = None
    created_at: str


class ActivityPage(BaseModel):
    entries: List[ActivityEntryOut]
    total: int
    limit: int
    offset: int
