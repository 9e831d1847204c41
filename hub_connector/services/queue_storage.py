"""
Queue storage: the durable local buffer between capture and Hub delivery.

Rows are appended by the tracker with `synced = False`. The sync engine reads
them back in ascending id order, one batch at a time, and flips the envelope
once the Hub acknowledged the batch. Only the retention sweep deletes rows.

Usage:
    batch = unsynced_batch(session, "events", limit=100)
    ... push batch ...
    mark_synced(session, "events", [row.id for row in batch], {row.id: row.revision for row in batch})
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Type

from sqlalchemy import delete, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, select

from hub_connector.core.logging_config import get_logger
from hub_connector.core.typing import as_utc, col, seq, utc_now
from hub_connector.models.sync_lease import SyncLease
from hub_connector.models.tracking import (
    AttributionTouch,
    Conversion,
    Event,
    PopupInteraction,
    QueueRow,
    Visitor,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class QueueTable:
    name: str
    model: Type[SQLModel]
    timestamp_field: str
    prunable: bool


# Sync order is fixed: visitors first so identities exist before their events
QUEUE_TABLES: Dict[str, QueueTable] = {
    "visitors": QueueTable("visitors", Visitor, "last_seen_at", prunable=False),
    "events": QueueTable("events", Event, "occurred_at", prunable=True),
    "touches": QueueTable("touches", AttributionTouch, "touched_at", prunable=True),
    "conversions": QueueTable("conversions", Conversion, "converted_at", prunable=False),
    "popup_interactions": QueueTable("popup_interactions", PopupInteraction, "occurred_at", prunable=True),
}

SYNC_ORDER = tuple(QUEUE_TABLES)


def get_table(name: str) -> QueueTable:
    try:
        return QUEUE_TABLES[name]
    except KeyError:
        raise ValueError(f"Unknown queue table: {name}") from None


def unsynced_batch(session: Session, table: str, limit: int = 100) -> List[QueueRow]:
    """Up to `limit` unsynced rows, oldest id first."""
    model = get_table(table).model
    query = (
        select(model)
        .where(col(model.synced).is_(False))
        .order_by(col(model.id).asc())
        .limit(limit)
    )
    return list(session.exec(query).all())


def mark_synced(
    session: Session,
    table: str,
    ids: Sequence[int],
    revisions: Optional[Mapping[int, int]] = None,
) -> int:
    """
    Flip the envelope for exactly `ids`.

    With `revisions` (id -> revision seen when the batch was read), a row is
    only marked while its revision still matches; a row the tracker changed
    after it was read stays unsynced and goes out with the next batch.

    Rows already synced keep their original synced_at, so repeating a call
    changes nothing. Returns the number of rows newly marked.
    """
    if not ids:
        return 0

    model = get_table(table).model
    if revisions is None:
        groups: Dict[Optional[int], List[int]] = {None: list(ids)}
    else:
        groups = defaultdict(list)
        for row_id in ids:
            groups[revisions.get(row_id, 0)].append(row_id)

    now = utc_now()
    marked = 0
    for revision, group in groups.items():
        query = (
            update(model)
            .where(col(model.id).in_(seq(group)))
            .where(col(model.synced).is_(False))
        )
        if revision is not None:
            query = query.where(col(model.revision) == revision)
        result = session.execute(
            query.values(synced=True, synced_at=now).execution_options(synchronize_session=False)
        )
        marked += result.rowcount or 0
    session.commit()
    return marked


def unsynced_counts(session: Session) -> Dict[str, int]:
    counts = {}
    for name, table in QUEUE_TABLES.items():
        model = table.model
        counts[name] = session.exec(
            select(func.count()).select_from(model).where(col(model.synced).is_(False))
        ).one()
    return counts


def table_totals(session: Session) -> Dict[str, int]:
    return {
        name: session.exec(select(func.count()).select_from(table.model)).one()
        for name, table in QUEUE_TABLES.items()
    }


def cleanup_old_records(session: Session, days: int = 90) -> int:
    """
    Delete synced event, touch and popup interaction rows older than `days`.

    Visitors and conversions are kept indefinitely. Unsynced rows are never
    deleted regardless of age.
    """
    cutoff = utc_now() - timedelta(days=days)
    deleted = 0

    for table in QUEUE_TABLES.values():
        if not table.prunable:
            continue
        model = table.model
        timestamp = getattr(model, table.timestamp_field)
        result = session.execute(
            delete(model)
            .where(col(model.synced).is_(True))
            .where(col(timestamp) < cutoff)
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0
        if count:
            logger.info("Pruned synced rows", table=table.name, count=count, days=days)
        deleted += count

    session.commit()
    return deleted


def serialize_row(row: QueueRow) -> Dict[str, Any]:
    """JSON-ready dict of a queued row, with column names as the Hub sees them."""
    data = row.model_dump(exclude={"revision"})
    if "metadata_" in data:
        data["metadata"] = data.pop("metadata_")
    return {key: _jsonable(value) for key, value in data.items()}


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


# ============== SYNC LEASE ==============

SYNC_LEASE_NAME = "hub_sync"


def acquire_lease(session: Session, holder: str, ttl_seconds: int, name: str = SYNC_LEASE_NAME) -> bool:
    """
    Take the named lease if it is free or expired, or extend it if `holder`
    already owns it.

    The conditional UPDATE is the arbiter: of two concurrent callers only one
    matches the WHERE clause.
    """
    if session.get(SyncLease, name) is None:
        session.add(SyncLease(name=name))
        try:
            session.commit()
        except IntegrityError:
            # Another process created the row first
            session.rollback()

    now = utc_now()
    result = session.execute(
        update(SyncLease)
        .where(col(SyncLease.name) == name)
        .where(
            or_(
                col(SyncLease.holder).is_(None),
                col(SyncLease.expires_at) < now,
                col(SyncLease.holder) == holder,
            )
        )
        .values(holder=holder, acquired_at=now, expires_at=now + timedelta(seconds=ttl_seconds))
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return (result.rowcount or 0) == 1


def release_lease(session: Session, holder: str, name: str = SYNC_LEASE_NAME) -> None:
    session.execute(
        update(SyncLease)
        .where(col(SyncLease.name) == name)
        .where(col(SyncLease.holder) == holder)
        .values(holder=None, acquired_at=None, expires_at=None)
        .execution_options(synchronize_session=False)
    )
    session.commit()


def lease_expires_at(session: Session, name: str = SYNC_LEASE_NAME) -> Optional[datetime]:
    """Expiry of the lease if currently held, else None."""
    session.expire_all()
    lease = session.get(SyncLease, name)
    if lease is None or lease.holder is None or lease.expires_at is None:
        return None
    expires_at = as_utc(lease.expires_at)
    return expires_at if expires_at > utc_now() else None


# ============== REPORTING ==============


def analytics_summary(session: Session, days: int = 30) -> Dict[str, Any]:
    """Queue totals plus touch channels and conversions over the last `days`."""
    since = utc_now() - timedelta(days=days)

    channels = session.exec(
        select(AttributionTouch.channel, func.count())
        .where(col(AttributionTouch.touched_at) >= since)
        .group_by(AttributionTouch.channel)
    ).all()

    conversions = session.exec(
        select(Conversion.type, func.count(), func.coalesce(func.sum(Conversion.value), 0))
        .where(col(Conversion.converted_at) >= since)
        .group_by(Conversion.type)
    ).all()

    new_visitors = session.exec(
        select(func.count()).select_from(Visitor).where(col(Visitor.first_seen_at) >= since)
    ).one()
    pageviews = session.exec(
        select(func.count())
        .select_from(Event)
        .where(Event.event_type == "pageview")
        .where(col(Event.occurred_at) >= since)
    ).one()

    return {
        "period_days": days,
        "totals": table_totals(session),
        "pending": unsynced_counts(session),
        "new_visitors": new_visitors,
        "pageviews": pageviews,
        "channels": {channel or "unknown": count for channel, count in channels},
        "conversions": {
            type_: {"count": count, "value": float(value or 0)} for type_, count, value in conversions
        },
    }
