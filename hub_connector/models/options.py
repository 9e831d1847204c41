"""Persisted connector configuration (key/value)."""

from datetime import datetime
from typing import Any

from sqlmodel import SQLModel, Field, Column, JSON

from hub_connector.core.typing import utc_now


class ConnectorOption(SQLModel, table=True):
    __tablename__ = "connector_option"

    key: str = Field(primary_key=True, max_length=64)
    value: Any = Field(default=None, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=utc_now)
