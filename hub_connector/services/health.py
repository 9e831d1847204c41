"""
Health snapshot reported in heartbeats and on the manager /health endpoint.

Collecting host facts is pluggable: anything with a `get_health_data(session)`
method can be installed with `set_health_provider()`. The default provider
reports runtime, disk, database and queue facts.

Usage:
    data = get_health_provider().get_health_data(session)
    # {"status": "ok", "runtime": {...}, "disk": {...}, "database": {...}, "queue": {...}}
"""

import platform
import shutil
import sys
from typing import Any, Dict, Protocol

from sqlalchemy import text
from sqlmodel import Session

from hub_connector import __version__
from hub_connector.core.logging_config import get_logger
from hub_connector.core.typing import utc_now
from hub_connector.services.queue_storage import unsynced_counts

logger = get_logger(__name__)

__all__ = ["HealthProvider", "DefaultHealthProvider", "get_health_provider", "set_health_provider"]

DISK_WARNING_PERCENT = 90


class HealthProvider(Protocol):
    def get_health_data(self, session: Session) -> Dict[str, Any]: ...


class DefaultHealthProvider:
    """Runtime, disk, database and queue facts. Each check returns a status of ok, warning or critical."""

    def __init__(self, disk_path: str = "/"):
        self.disk_path = disk_path

    def get_health_data(self, session: Session) -> Dict[str, Any]:
        components = {
            "runtime": self.check_runtime(),
            "disk": self.check_disk(),
            "database": self.check_database(session),
        }
        queue = unsynced_counts(session) if components["database"]["status"] == "ok" else {}

        statuses = [c["status"] for c in components.values()]
        if "critical" in statuses:
            overall = "critical"
        elif "warning" in statuses:
            overall = "warning"
        else:
            overall = "ok"

        return {
            "status": overall,
            "checked_at": utc_now().isoformat(),
            "connector_version": __version__,
            **components,
            "queue": {"pending": queue, "total_pending": sum(queue.values())},
        }

    @staticmethod
    def check_runtime() -> Dict[str, Any]:
        return {
            "status": "ok",
            "python_version": platform.python_version(),
            "implementation": platform.python_implementation(),
            "platform": platform.platform(),
            "executable": sys.executable,
        }

    def check_disk(self) -> Dict[str, Any]:
        try:
            usage = shutil.disk_usage(self.disk_path)
        except OSError as e:
            logger.warning("Disk usage unavailable", path=self.disk_path, error=str(e))
            return {"status": "warning", "reason": str(e)}

        used_percent = round(usage.used / usage.total * 100, 1) if usage.total else 0.0
        return {
            "status": "warning" if used_percent >= DISK_WARNING_PERCENT else "ok",
            "total_bytes": usage.total,
            "free_bytes": usage.free,
            "used_percent": used_percent,
        }

    @staticmethod
    def check_database(session: Session) -> Dict[str, Any]:
        try:
            session.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return {"status": "critical", "reason": str(e)}
        return {"status": "ok", "dialect": session.get_bind().dialect.name}


_provider: HealthProvider = DefaultHealthProvider()


def get_health_provider() -> HealthProvider:
    return _provider


def set_health_provider(provider: HealthProvider) -> None:
    global _provider
    _provider = provider
