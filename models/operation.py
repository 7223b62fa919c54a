"""Domain types for queued offline writes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from datetime_utils import parse_rfc3339, to_rfc3339_utc


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"
    COMPLETED = "completed"


# Failed -> Pending is only reachable through an explicit retry, see OperationQueue.retry.
LEGAL_TRANSITIONS = {
    QueueStatus.PENDING: frozenset({QueueStatus.PROCESSING}),
    QueueStatus.PROCESSING: frozenset(
        {QueueStatus.COMPLETED, QueueStatus.PENDING, QueueStatus.FAILED}
    ),
    QueueStatus.FAILED: frozenset(),
    QueueStatus.COMPLETED: frozenset(),
}


def is_legal_transition(current: QueueStatus, target: QueueStatus) -> bool:
    return target in LEGAL_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class Operation:
    """One intended write against a remote resource."""

    id: str
    kind: OperationKind
    resource_type: str
    payload: Any
    created_at: datetime


@dataclass
class QueueItem:
    """Tracking record for an :class:`Operation` inside the queue."""

    operation: Operation
    attempts: int = 0
    priority: int = 5
    status: QueueStatus = QueueStatus.PENDING
    last_error: Optional[str] = None
    seq: int = field(default=0, compare=False)

    @property
    def id(self) -> str:
        return self.operation.id

    @property
    def created_at(self) -> datetime:
        return self.operation.created_at

    def to_dict(self) -> Dict[str, Any]:
        op = self.operation
        return {
            "id": op.id,
            "kind": op.kind.value,
            "resource_type": op.resource_type,
            "payload": op.payload,
            "created_at": to_rfc3339_utc(op.created_at),
            "attempts": self.attempts,
            "priority": self.priority,
            "status": self.status.value,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], *, seq: int = 0) -> "QueueItem":
        created_at = data["created_at"]
        if isinstance(created_at, str):
            created_at = parse_rfc3339(created_at)
        if created_at is None:
            raise ValueError(f"Invalid created_at for queue item {data.get('id')!r}")
        operation = Operation(
            id=str(data["id"]),
            kind=OperationKind(data["kind"]),
            resource_type=str(data["resource_type"]),
            payload=data.get("payload"),
            created_at=created_at,
        )
        return cls(
            operation=operation,
            attempts=int(data.get("attempts") or 0),
            priority=int(data.get("priority") or 0),
            status=QueueStatus(data.get("status") or QueueStatus.PENDING.value),
            last_error=data.get("last_error"),
            seq=seq,
        )


__all__ = [
    "LEGAL_TRANSITIONS",
    "Operation",
    "OperationKind",
    "QueueItem",
    "QueueStatus",
    "is_legal_transition",
]
