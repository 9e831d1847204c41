from datetime import datetime
from typing import Optional

from sqlmodel import SQLModel, Field, Column, JSON

from hub_connector.core.typing import utc_now


class ActivityLogEntry(SQLModel, table=True):
    """Operator-visible trail of connection, sync and security events."""

    __tablename__ = "activity_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    type: str = Field(max_length=50, index=True)
    status: str = Field(default="info", max_length=20, index=True)  # success, warning, error, info
    message: str = Field(default="")
    meta: Optional[dict] = Field(default=None, sa_column=Column("metadata", JSON))
    client_ip: Optional[str] = Field(default=None, max_length=45)
    created_at: datetime = Field(default_factory=utc_now, index=True)
