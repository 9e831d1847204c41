"""
Small helpers shared by models and queries.

`col`/`seq` exist for type checkers: a SQLModel field such as
`Event.synced` is typed `bool` but is a column expression at class level.
"""

from typing import TYPE_CHECKING, Any, Sequence, TypeVar
from datetime import datetime, timezone

if TYPE_CHECKING:
    from sqlalchemy.orm.attributes import InstrumentedAttribute

T = TypeVar("T")


def col(attr: T) -> "InstrumentedAttribute[T]":
    """select(Event).order_by(col(Event.id).asc())"""
    return attr  # type: ignore[return-value]


def seq(items: Any) -> Sequence[Any]:
    """col(Event.id).in_(seq(ids))"""
    return items


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite returns naive datetimes; everything is stored in UTC
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


__all__ = ["col", "seq", "utc_now", "as_utc"]
