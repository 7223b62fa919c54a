from __future__ import annotations

import json
import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from core.priorities import normalize_priority
from core.settings import SYNC, SyncSettings
from datetime_utils import utc_now
from models.operation import (
    Operation,
    OperationKind,
    QueueItem,
    QueueStatus,
    is_legal_transition,
)
from storage.queue_store import QueueStore, encode_payload


logger = logging.getLogger("carequeue.sync.queue")

QueueListener = Callable[[Dict[str, int]], None]


def _error_text(error: Any) -> Optional[str]:
    if error is None:
        return None
    text = str(error) or error.__class__.__name__
    return text[:1000]


class OperationQueue:
    """Persistent, priority-ordered queue of offline writes.

    Usage:
        queue = OperationQueue(QueueStore(session_factory))
        op_id = queue.enqueue("create", "Patient", {"name": "P1"})

        for item in queue.pending():
            queue.mark(item.id, QueueStatus.PROCESSING)
            ...
            queue.mark(item.id, QueueStatus.COMPLETED)
            queue.remove(item.id)

    Every mutation is committed to the store before the call returns. A single
    lock guards the store for the duration of one mutation only.
    """

    def __init__(
        self,
        store: Optional[QueueStore] = None,
        settings: SyncSettings = SYNC,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store or QueueStore()
        self.settings = settings
        self.max_retries = settings.max_retries
        self._clock = clock
        self._lock = threading.RLock()
        self._listeners: List[QueueListener] = []

    # ------------------------------------------------------------------
    # Listeners
    def add_listener(self, listener: QueueListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: QueueListener) -> None:
        self._listeners = [cb for cb in self._listeners if cb != listener]

    def _notify(self) -> None:
        if not self._listeners:
            return
        counts = self.counts()
        for listener in list(self._listeners):
            try:
                listener(counts)
            except Exception:
                logger.exception("Queue listener %r failed", listener)

    # ------------------------------------------------------------------
    # Mutations
    def enqueue(
        self,
        kind: OperationKind | str,
        resource_type: str,
        payload: Any,
        priority: Optional[int] = None,
    ) -> str:
        try:
            op_kind = OperationKind(kind)
        except ValueError:
            raise ValueError(f"Unsupported operation kind: {kind}") from None
        if not resource_type or not str(resource_type).strip():
            raise ValueError("resource_type must be a non-empty string")
        try:
            encoded = encode_payload(payload)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Payload is not JSON serialisable: {exc}") from exc
        # tuples, non-string keys and NaN would come back altered
        if json.loads(encoded) != payload:
            raise ValueError("Payload does not survive a JSON round trip")
        item_priority = normalize_priority(priority, self.settings.default_priority)

        operation = Operation(
            id=uuid.uuid4().hex,
            kind=op_kind,
            resource_type=str(resource_type).strip(),
            payload=payload,
            created_at=self._clock(),
        )
        with self._lock:
            item = QueueItem(
                operation=operation,
                priority=item_priority,
                seq=self.store.next_seq(),
            )
            self.store.put(item)
        logger.debug(
            "Enqueued %s %s id=%s priority=%s",
            op_kind.value,
            operation.resource_type,
            operation.id,
            item.priority,
        )
        self._notify()
        return operation.id

    def mark(self, item_id: str, status: QueueStatus | str, error: Any = None) -> bool:
        """Move an item to ``status``; illegal transitions return False."""
        try:
            target = QueueStatus(status)
        except ValueError:
            logger.warning("Rejected unknown status %r for %s", status, item_id)
            return False

        with self._lock:
            item = self.store.get(item_id)
            if item is None:
                return False
            if not is_legal_transition(item.status, target):
                logger.warning(
                    "Rejected transition %s -> %s for %s",
                    item.status.value,
                    target.value,
                    item_id,
                )
                return False
            if target is QueueStatus.PENDING and item.attempts >= self.max_retries:
                logger.warning(
                    "Rejected transition to pending for %s: %s attempts reached the cap",
                    item_id,
                    item.attempts,
                )
                return False

            if target is QueueStatus.PROCESSING:
                item.attempts += 1
            if error is not None:
                item.last_error = _error_text(error)
            item.status = target
            self.store.put(item)
        self._notify()
        return True

    def remove(self, item_id: str) -> bool:
        with self._lock:
            removed = self.store.delete(item_id)
        if removed:
            self._notify()
        return removed

    def retry(self, item_id: str) -> bool:
        """Move one failed item back to pending, keeping its attempt count."""
        with self._lock:
            item = self.store.get(item_id)
            if item is None or item.status is not QueueStatus.FAILED:
                return False
            item.status = QueueStatus.PENDING
            self.store.put(item)
        logger.info("Failed item %s re-queued (attempts=%s)", item_id, item.attempts)
        self._notify()
        return True

    def retry_all_failed(self) -> int:
        count = 0
        with self._lock:
            for item in self.store.load_by_status(QueueStatus.FAILED):
                item.status = QueueStatus.PENDING
                self.store.put(item)
                count += 1
        if count:
            logger.info("Re-queued %s failed items", count)
            self._notify()
        return count

    def cleanup(self, retain_failed_for: Optional[timedelta] = None) -> int:
        """Drop completed items and failed items older than the retention window."""
        if retain_failed_for is None:
            retain_failed_for = timedelta(days=self.settings.failed_retention_days)
        cutoff = self._clock() - retain_failed_for
        with self._lock:
            doomed = [item.id for item in self.store.load_by_status(QueueStatus.COMPLETED)]
            doomed.extend(
                item.id
                for item in self.store.load_by_status(QueueStatus.FAILED)
                if item.created_at < cutoff
            )
            removed = self.store.delete_many(doomed)
        if removed:
            logger.info("Queue cleanup removed %s items", removed)
            self._notify()
        return removed

    def clear(self) -> None:
        with self._lock:
            removed = self.store.delete_all()
            self.store.clear_meta()
        logger.warning("Queue cleared (%s items dropped)", removed)
        self._notify()

    def recover_interrupted(self) -> int:
        """Return items a crash left in ``processing`` to the queue."""
        recovered = 0
        with self._lock:
            for item in self.store.load_by_status(QueueStatus.PROCESSING):
                if item.attempts >= self.max_retries:
                    item.status = QueueStatus.FAILED
                    item.last_error = item.last_error or "Interrupted after final attempt"
                else:
                    item.status = QueueStatus.PENDING
                self.store.put(item)
                recovered += 1
        if recovered:
            logger.warning("Recovered %s interrupted queue items", recovered)
            self._notify()
        return recovered

    # ------------------------------------------------------------------
    # Queries
    def get(self, item_id: str) -> Optional[QueueItem]:
        return self.store.get(item_id)

    def all_items(self) -> List[QueueItem]:
        return self.store.load_all()

    def pending(self) -> List[QueueItem]:
        return self.store.load_by_status(QueueStatus.PENDING)

    def failed(self) -> List[QueueItem]:
        return self.store.load_by_status(QueueStatus.FAILED)

    def counts(self) -> Dict[str, int]:
        return self.store.count_by_status()

    def pending_count(self) -> int:
        return self.counts()[QueueStatus.PENDING.value]

    def processing_count(self) -> int:
        return self.counts()[QueueStatus.PROCESSING.value]

    def failed_count(self) -> int:
        return self.counts()[QueueStatus.FAILED.value]

    def completed_count(self) -> int:
        return self.counts()[QueueStatus.COMPLETED.value]

    def has_reached_max_retries(self, item_id: str) -> bool:
        item = self.store.get(item_id)
        return item.attempts >= self.max_retries if item else False

    # ----- sync anchors -----
    def last_sync_at(self) -> Optional[datetime]:
        return self.store.get_last_sync_at()

    def record_sync(self, timestamp: Optional[datetime] = None) -> None:
        with self._lock:
            self.store.set_last_sync_at(timestamp or self._clock())


__all__ = ["OperationQueue", "QueueListener"]
