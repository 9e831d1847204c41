"""
Advisory lease serializing sync runs.

One row per lease name. A holder owns the lease until `expires_at`; an
expired lease may be taken over by anyone.
"""

from datetime import datetime
from typing import Optional

from sqlmodel import SQLModel, Field


class SyncLease(SQLModel, table=True):
    __tablename__ = "sync_lease"

    name: str = Field(primary_key=True, max_length=50)
    holder: Optional[str] = Field(default=None, max_length=64)
    acquired_at: Optional[datetime] = Field(default=None)
    expires_at: Optional[datetime] = Field(default=None)
