"""Domain types and ORM tables exposed by CareQueue."""
from .operation import Operation, OperationKind, QueueItem, QueueStatus
from .queue_record import QueueRecord, SyncMetaRecord

__all__ = [
    "Operation",
    "OperationKind",
    "QueueItem",
    "QueueStatus",
    "QueueRecord",
    "SyncMetaRecord",
]
