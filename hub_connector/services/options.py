"""
Options store: persisted connector configuration.

Values are JSON and stored one row per key in `connector_option`. Typed
accessors cover the Hub connection and manager connection state:

    options = OptionsStore(session)
    if options.is_hub_connected():
        hub_url, api_key = options.hub_credentials()
"""

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlmodel import Session

from hub_connector.core.typing import utc_now, as_utc
from hub_connector.models.options import ConnectorOption

HUB_URL = "hub_url"
HUB_API_KEY = "hub_api_key"
TRACKING_ENABLED = "tracking_enabled"
TRACK_LOGGED_IN = "track_logged_in"
HUB_MODE = "hub_mode"
LAST_HUB_SYNC = "last_hub_sync"
LAST_SYNC = "last_sync"
SITE_KEY = "site_key"
MANAGER_URL = "manager_url"
PERMISSIONS = "permissions"
HUB_POPUPS = "hub_popups"
HUB_SYNC_FAILURES = "hub_sync_failures"
SYNC_REQUESTED = "sync_requested"

HUB_MODES = ("standard", "hide_suite", "disable_suite")

DEFAULT_PERMISSIONS: Dict[str, bool] = {
    "health_check": True,
    "list_updates": True,
    "perform_updates": False,
    "access_analytics": False,
}
ALWAYS_ALLOWED = ("health_check", "list_updates")


class OptionsStore:
    def __init__(self, session: Session):
        self.session = session

    def get(self, key: str, default: Any = None) -> Any:
        row = self.session.get(ConnectorOption, key)
        if row is None or row.value is None:
            return default
        return row.value

    def set(self, key: str, value: Any, commit: bool = True) -> None:
        row = self.session.get(ConnectorOption, key)
        if row is None:
            row = ConnectorOption(key=key, value=value)
        else:
            row.value = value
            row.updated_at = utc_now()
        self.session.add(row)
        if commit:
            self.session.commit()

    def delete(self, *keys: str, commit: bool = True) -> None:
        for key in keys:
            row = self.session.get(ConnectorOption, key)
            if row is not None:
                self.session.delete(row)
        if commit:
            self.session.commit()

    # Timestamps are stored as ISO strings

    def get_datetime(self, key: str) -> Optional[datetime]:
        raw = self.get(key)
        if not raw:
            return None
        return as_utc(datetime.fromisoformat(raw))

    def touch(self, key: str, commit: bool = True) -> datetime:
        now = utc_now()
        self.set(key, now.isoformat(), commit=commit)
        return now

    # Hub connection

    def hub_credentials(self) -> Tuple[str, str]:
        return (self.get(HUB_URL) or "", self.get(HUB_API_KEY) or "")

    def is_hub_connected(self) -> bool:
        hub_url, api_key = self.hub_credentials()
        return bool(hub_url and api_key)

    def is_tracking_enabled(self) -> bool:
        return self.is_hub_connected() and bool(self.get(TRACKING_ENABLED, False))

    def hub_mode(self) -> str:
        mode = self.get(HUB_MODE, "standard")
        return mode if mode in HUB_MODES else "standard"

    # Manager connection

    def site_key(self) -> str:
        return self.get(SITE_KEY) or ""

    def permissions(self) -> Dict[str, bool]:
        """Scopes other than health_check and list_updates are denied unless explicitly granted."""
        stored = self.get(PERMISSIONS)
        if not isinstance(stored, dict):
            stored = {}
        merged = {scope: bool(stored.get(scope, False)) for scope in DEFAULT_PERMISSIONS}
        for scope in ALWAYS_ALLOWED:
            merged[scope] = True
        return merged

    def set_permissions(self, permissions: Dict[str, Any]) -> Dict[str, bool]:
        current = self.permissions()
        for scope, allowed in permissions.items():
            if scope in DEFAULT_PERMISSIONS:
                current[scope] = bool(allowed)
        for scope in ALWAYS_ALLOWED:
            current[scope] = True
        self.set(PERMISSIONS, current)
        return current
