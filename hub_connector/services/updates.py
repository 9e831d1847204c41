"""
Update inventory and execution seam.

Installing plugin, theme or core updates is host specific. The connector
only routes manager requests to an UpdateProvider. The default provider
reports nothing pending and refuses to install.
"""

from typing import Any, Dict, List, Protocol

UPDATE_TYPES = ("plugin", "theme", "core")


class UpdateProvider(Protocol):
    def list_updates(self) -> Dict[str, List[Dict[str, Any]]]: ...

    def perform_update(self, type: str, slug: str) -> Dict[str, Any]: ...


class NullUpdateProvider:
    def list_updates(self) -> Dict[str, List[Dict[str, Any]]]:
        return {"plugins": [], "themes": [], "core": []}

    def perform_update(self, type: str, slug: str) -> Dict[str, Any]:
        return {"success": False, "message": f"No {type} update available for {slug or 'core'}."}


_provider: UpdateProvider = NullUpdateProvider()


def get_update_provider() -> UpdateProvider:
    return _provider


def set_update_provider(provider: UpdateProvider) -> None:
    global _provider
    _provider = provider
