"""Notification payloads emitted by the sync coordinator."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from datetime_utils import to_rfc3339_utc


class SyncStatus(str, Enum):
    SYNCED = "synced"
    PENDING = "pending"
    OFFLINE = "offline"
    ERROR = "error"


@dataclass(frozen=True)
class StatusChanged:
    status: SyncStatus
    pending_count: int
    failed_count: int
    timestamp: datetime

    def key(self):
        return (self.status, self.pending_count, self.failed_count)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "pending_count": self.pending_count,
            "failed_count": self.failed_count,
            "timestamp": to_rfc3339_utc(self.timestamp),
        }


@dataclass(frozen=True)
class SyncCompleted:
    success: bool
    pending_count: int
    failed_count: int
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SyncStatusSnapshot:
    status: SyncStatus
    pending_count: int
    failed_count: int
    online: bool
    last_sync_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "pending_count": self.pending_count,
            "failed_count": self.failed_count,
            "online": self.online,
            "last_sync_at": to_rfc3339_utc(self.last_sync_at),
        }


__all__ = ["StatusChanged", "SyncCompleted", "SyncStatus", "SyncStatusSnapshot"]
