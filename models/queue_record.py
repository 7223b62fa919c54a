"""SQLModel tables backing the durable offline queue."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


class QueueRecord(SQLModel, table=True):
    __tablename__ = "queueitem"

    id: str = Field(primary_key=True)
    kind: str
    resource_type: str = Field(index=True)
    payload: str
    created_at: datetime = Field(default_factory=utc_now)
    attempts: int = Field(default=0)
    priority: int = Field(default=5)
    status: str = Field(default="pending", index=True)
    last_error: Optional[str] = None
    seq: int = Field(default=0)


class SyncMetaRecord(SQLModel, table=True):
    """Single-row table holding sync anchors."""

    __tablename__ = "syncmeta"

    id: int = Field(default=1, primary_key=True)
    last_sync_at: Optional[datetime] = None


__all__ = ["QueueRecord", "SyncMetaRecord"]
