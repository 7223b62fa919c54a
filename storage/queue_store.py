"""Durable SQLite store for offline queue items."""
from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from datetime_utils import ensure_utc
from models.operation import Operation, OperationKind, QueueItem, QueueStatus
from models.queue_record import QueueRecord, SyncMetaRecord
from storage.db import get_session


logger = logging.getLogger("carequeue.sync.store")


class QueueStoreError(RuntimeError):
    """Raised when the durable store cannot read or commit queue state."""


def encode_payload(payload) -> str:
    """JSON text as persisted in the ``payload`` column."""
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _deserialise_payload(raw: Optional[str], item_id: str):
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Queue item %s has an unreadable payload; keeping raw text", item_id)
        return raw


def _to_item(row: QueueRecord) -> QueueItem:
    operation = Operation(
        id=row.id,
        kind=OperationKind(row.kind),
        resource_type=row.resource_type,
        payload=_deserialise_payload(row.payload, row.id),
        created_at=ensure_utc(row.created_at),
    )
    return QueueItem(
        operation=operation,
        attempts=row.attempts,
        priority=row.priority,
        status=QueueStatus(row.status),
        last_error=row.last_error,
        seq=row.seq,
    )


def _apply_to_row(row: QueueRecord, item: QueueItem) -> QueueRecord:
    op = item.operation
    row.kind = op.kind.value
    row.resource_type = op.resource_type
    row.payload = encode_payload(op.payload)
    row.created_at = ensure_utc(op.created_at)
    row.attempts = item.attempts
    row.priority = item.priority
    row.status = item.status.value
    row.last_error = item.last_error
    row.seq = item.seq
    return row


def _ordered(stmt):
    return stmt.order_by(
        QueueRecord.priority.desc(),
        QueueRecord.created_at.asc(),
        QueueRecord.seq.asc(),
    )


class QueueStore:
    """Write-through persistence for :class:`QueueItem` records.

    Every mutating call commits its own session before returning. Failures are
    re-raised as :class:`QueueStoreError` so callers never lose a write silently.
    """

    def __init__(self, session_factory: Callable[[], Session] = get_session):
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                yield session
        except SQLAlchemyError as exc:
            raise QueueStoreError(f"Queue store failure: {exc}") from exc

    # ----- items -----
    def get(self, item_id: str) -> Optional[QueueItem]:
        with self._session() as session:
            row = session.get(QueueRecord, item_id)
            return _to_item(row) if row else None

    def load_all(self) -> List[QueueItem]:
        with self._session() as session:
            rows = session.exec(_ordered(select(QueueRecord))).all()
            return [_to_item(row) for row in rows]

    def load_by_status(self, status: QueueStatus) -> List[QueueItem]:
        with self._session() as session:
            stmt = _ordered(select(QueueRecord).where(QueueRecord.status == status.value))
            return [_to_item(row) for row in session.exec(stmt).all()]

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in QueueStatus}
        with self._session() as session:
            stmt = select(QueueRecord.status, func.count()).group_by(QueueRecord.status)
            for status, total in session.exec(stmt).all():
                counts[status] = int(total)
        return counts

    def put(self, item: QueueItem) -> None:
        try:
            payload = encode_payload(item.operation.payload)
        except (TypeError, ValueError) as exc:
            raise QueueStoreError(f"Payload of {item.id} is not serialisable: {exc}") from exc
        with self._session() as session:
            row = session.get(QueueRecord, item.id)
            if row is None:
                row = QueueRecord(id=item.id, kind=item.operation.kind.value,
                                  resource_type=item.operation.resource_type, payload=payload)
            session.add(_apply_to_row(row, item))
            session.commit()

    def delete(self, item_id: str) -> bool:
        with self._session() as session:
            row = session.get(QueueRecord, item_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    def delete_many(self, item_ids: Iterable[str]) -> int:
        ids = list(item_ids)
        if not ids:
            return 0
        with self._session() as session:
            rows = session.exec(select(QueueRecord).where(QueueRecord.id.in_(ids))).all()
            for row in rows:
                session.delete(row)
            session.commit()
            return len(rows)

    def delete_all(self) -> int:
        with self._session() as session:
            rows = session.exec(select(QueueRecord)).all()
            for row in rows:
                session.delete(row)
            session.commit()
            return len(rows)

    def next_seq(self) -> int:
        with self._session() as session:
            current = session.exec(select(func.max(QueueRecord.seq))).one()
            return int(current or 0) + 1

    # ----- metadata -----
    def get_last_sync_at(self) -> Optional[datetime]:
        with self._session() as session:
            meta = session.get(SyncMetaRecord, 1)
            return ensure_utc(meta.last_sync_at) if meta else None

    def set_last_sync_at(self, timestamp: datetime) -> None:
        with self._session() as session:
            meta = session.get(SyncMetaRecord, 1)
            if meta is None:
                meta = SyncMetaRecord(id=1)
            meta.last_sync_at = ensure_utc(timestamp)
            session.add(meta)
            session.commit()

    def clear_meta(self) -> None:
        with self._session() as session:
            meta = session.get(SyncMetaRecord, 1)
            if meta is not None:
                session.delete(meta)
                session.commit()


__all__ = ["QueueStore", "QueueStoreError", "encode_payload"]
