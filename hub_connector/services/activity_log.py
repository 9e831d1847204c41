"""
Activity trail for connection, sync and security events.

Entries are written synchronously in the caller's session and committed
immediately, so a later failure in the same request does not lose them.
"""

import csv
import io
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func
from sqlmodel import Session, select

from hub_connector.core.logging_config import get_logger
from hub_connector.core.typing import col, utc_now
from hub_connector.models.activity import ActivityLogEntry

logger = get_logger(__name__)

TYPES = (
    "health_check",
    "update_installed",
    "update_failed",
    "connection_established",
    "connection_lost",
    "key_generated",
    "key_regenerated",
    "permission_changed",
    "settings_changed",
    "rate_limited",
    "auth_failed",
    "disconnect",
    "hub_sync",
    "hub_connected",
    "heartbeat",
)
STATUSES = ("success", "warning", "error", "info")

CSV_HEADER = ["ID", "Timestamp", "Type", "Status", "Message", "IP Address"]


def log(
    session: Session,
    type: str,
    status: str = "info",
    message: str = "",
    meta: Optional[Dict[str, Any]] = None,
    client_ip: Optional[str] = None,
) -> ActivityLogEntry:
    if type not in TYPES:
        raise ValueError(f"Unknown activity type: {type}")
    if status not in STATUSES:
        status = "info"

    entry = ActivityLogEntry(
        type=type,
        status=status,
        message=message,
        meta=meta or None,
        client_ip=client_ip,
    )
    session.add(entry)
    session.commit()
    session.refresh(entry)

    logger.info("Activity recorded", activity_type=type, status=status)
    return entry


def get_entries(
    session: Session,
    limit: int = 50,
    offset: int = 0,
    type: Optional[str] = None,
    status: Optional[str] = None,
) -> List[ActivityLogEntry]:
    """Entries newest first, optionally filtered."""
    query = select(ActivityLogEntry)
    if type:
        query = query.where(ActivityLogEntry.type == type)
    if status:
        query = query.where(ActivityLogEntry.status == status)
    query = query.order_by(col(ActivityLogEntry.created_at).desc(), col(ActivityLogEntry.id).desc())
    return list(session.exec(query.offset(offset).limit(limit)).all())


def count_entries(session: Session, type: Optional[str] = None, status: Optional[str] = None) -> int:
    query = select(func.count()).select_from(ActivityLogEntry)
    if type:
        query = query.where(ActivityLogEntry.type == type)
    if status:
        query = query.where(ActivityLogEntry.status == status)
    return session.exec(query).one()


def get_counts(session: Session) -> Dict[str, int]:
    rows = session.exec(
        select(ActivityLogEntry.type, func.count()).group_by(ActivityLogEntry.type)
    ).all()
    return {type_: count for type_, count in rows}


def get_recent_counts(session: Session, hours: int = 24) -> Dict[str, int]:
    cutoff = utc_now() - timedelta(hours=hours)
    rows = session.exec(
        select(ActivityLogEntry.status, func.count())
        .where(col(ActivityLogEntry.created_at) >= cutoff)
        .group_by(ActivityLogEntry.status)
    ).all()

    counts = {status: 0 for status in STATUSES}
    for status, count in rows:
        counts[status] = count
    counts["total"] = sum(counts[s] for s in STATUSES)
    return counts


def export_csv(session: Session, limit: int = 10000) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for entry in get_entries(session, limit=limit):
        writer.writerow(
            [
                entry.id,
                entry.created_at.isoformat(),
                entry.type,
                entry.status,
                entry.message,
                entry.client_ip or "",
            ]
        )
    return buffer.getvalue()


def clear(session: Session) -> int:
    result = session.execute(delete(ActivityLogEntry))
    session.commit()
    return result.rowcount or 0
