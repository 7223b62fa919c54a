from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import Session

from models.operation import Operation, OperationKind, QueueItem, QueueStatus
from models.queue_record import QueueRecord
from services.operation_queue import OperationQueue
from storage.db import create_queue_engine, session_factory_for
from storage.queue_store import QueueStore, QueueStoreError


def _item(item_id="a1", **overrides):
    operation = Operation(
        id=item_id,
        kind=OperationKind.UPDATE,
        resource_type="Patient",
        payload={"id": "P1", "name": [{"family": "Доу"}]},
        created_at=datetime(2024, 3, 1, 9, 0, 0, 123456, tzinfo=timezone.utc),
    )
    fields = dict(attempts=2, priority=7, status=QueueStatus.FAILED, last_error="HTTP 503", seq=1)
    fields.update(overrides)
    return QueueItem(operation=operation, **fields)


def test_put_and_get_round_trip_flat_layout(store):
    item = _item()
    store.put(item)

    loaded = store.get("a1")
    assert loaded.to_dict() == item.to_dict()
    assert loaded.created_at.tzinfo is not None
    assert set(loaded.to_dict()) == {
        "id",
        "kind",
        "resource_type",
        "payload",
        "created_at",
        "attempts",
        "priority",
        "status",
        "last_error",
    }


def test_from_dict_restores_item():
    item = _item()
    assert QueueItem.from_dict(item.to_dict(), seq=1) == item


def test_put_updates_existing_row(store):
    store.put(_item(status=QueueStatus.PENDING, attempts=0))
    store.put(_item(status=QueueStatus.PROCESSING, attempts=1))

    loaded = store.get("a1")
    assert loaded.status is QueueStatus.PROCESSING
    assert loaded.attempts == 1
    assert len(store.load_all()) == 1


def test_enqueue_survives_crash_and_reload(db_path, settings):
    first_engine = create_queue_engine(db_path)
    queue = OperationQueue(QueueStore(session_factory_for(first_engine)), settings)
    payload = {"resourceType": "Patient", "name": [{"given": ["Ada"]}], "active": True}
    op_id = queue.enqueue("create", "Patient", payload, priority=5)
    first_engine.dispose()

    second_engine = create_queue_engine(db_path)
    reloaded = OperationQueue(QueueStore(session_factory_for(second_engine)), settings)
    pending = reloaded.pending()
    second_engine.dispose()

    assert [item.id for item in pending] == [op_id]
    assert pending[0].operation.payload == payload
    assert pending[0].operation.kind is OperationKind.CREATE
    assert pending[0].attempts == 0


def test_timestamps_round_trip_as_aware_utc(db_path, settings, clock):
    engine = create_queue_engine(db_path)
    queue = OperationQueue(QueueStore(session_factory_for(engine)), settings, clock)
    op_id = queue.enqueue("create", "Patient", {"name": "Ada"})
    created_at = queue.get(op_id).created_at
    synced_at = datetime(2024, 3, 2, 10, 30, 15, 250000, tzinfo=timezone(timedelta(hours=3)))
    queue.record_sync(synced_at)
    engine.dispose()

    reopened = create_queue_engine(db_path)
    store = QueueStore(session_factory_for(reopened))
    item = store.get(op_id)
    last_sync_at = store.get_last_sync_at()
    reopened.dispose()

    assert item.created_at == created_at == datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
    assert item.created_at.utcoffset() == timedelta(0)
    assert last_sync_at == synced_at
    assert last_sync_at.utcoffset() == timedelta(0)


def test_unreadable_payload_is_kept_as_text(store, engine):
    store.put(_item())
    with Session(engine) as session:
        row = session.get(QueueRecord, "a1")
        row.payload = "{not json"
        session.add(row)
        session.commit()

    assert store.get("a1").operation.payload == "{not json"


def test_count_by_status_includes_every_status(store):
    store.put(_item("a1", status=QueueStatus.PENDING))
    store.put(_item("a2", status=QueueStatus.FAILED))
    store.put(_item("a3", status=QueueStatus.FAILED))

    assert store.count_by_status() == {
        "pending": 1,
        "processing": 0,
        "failed": 2,
        "completed": 0,
    }


def test_delete_helpers(store):
    for idx in range(3):
        store.put(_item(f"a{idx}", seq=idx + 1))

    assert store.delete("a0") is True
    assert store.delete("a0") is False
    assert store.delete_many(["a1", "missing"]) == 1
    assert store.delete_all() == 1
    assert store.load_all() == []


def test_next_seq_is_monotonic(store):
    assert store.next_seq() == 1
    store.put(_item("a1", seq=4))
    assert store.next_seq() == 5


def test_last_sync_at_round_trip(store):
    assert store.get_last_sync_at() is None
    stamp = datetime(2024, 3, 2, 10, 30, tzinfo=timezone.utc)
    store.set_last_sync_at(stamp)
    assert store.get_last_sync_at() == stamp
    store.clear_meta()
    assert store.get_last_sync_at() is None


def test_unserialisable_payload_raises_store_error(store):
    item = _item()
    object.__setattr__(item.operation, "payload", {"when": object()})
    with pytest.raises(QueueStoreError):
        store.put(item)


def test_write_failure_propagates_to_caller(tmp_path, settings):
    from sqlmodel import create_engine

    broken = create_engine(f"sqlite:///{(tmp_path / 'missing' / 'queue.db').as_posix()}")
    queue = OperationQueue(QueueStore(session_factory_for(broken)), settings)

    with pytest.raises(QueueStoreError):
        queue.enqueue("create", "Patient", {"name": "x"})
