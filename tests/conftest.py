"""Shared pytest fixtures."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.settings import SyncSettings
from services.apply_port import ApplySuccess, ResourceApplyPort
from services.connectivity import ManualConnectivity
from services.operation_queue import OperationQueue
from services.status_tracker import StatusTracker
from services.sync_coordinator import SyncCoordinator
from storage.db import create_queue_engine, session_factory_for
from storage.queue_store import QueueStore


class FixedClock:
    """Deterministic clock; advances by ``step`` on every call."""

    def __init__(self, start=None, step=timedelta(0)):
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self):
        value = self.now
        self.now = self.now + self.step
        return value

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class _Handle:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if self.cancelled or self.fired:
            return
        self.fired = True
        self.callback()


class ManualScheduler:
    """Records timers instead of starting threads."""

    def __init__(self):
        self.handles = []

    def __call__(self, delay, callback):
        handle = _Handle(delay, callback)
        self.handles.append(handle)
        return handle

    def pending(self):
        return [h for h in self.handles if not h.cancelled and not h.fired]

    def delays(self):
        return [h.delay for h in self.pending()]

    def run_pending(self):
        for handle in list(self.pending()):
            handle.fire()


class FakePort(ResourceApplyPort):
    """Apply port returning scripted outcomes per resource id (or a default)."""

    def __init__(self, default=None):
        self.default = default or ApplySuccess()
        self.scripts = {}
        self.applied = []
        self.before_apply = None

    def script(self, key, *outcomes):
        self.scripts.setdefault(key, []).extend(outcomes)

    def apply(self, operation):
        self.applied.append(operation)
        if self.before_apply:
            self.before_apply(operation)
        payload = operation.payload if isinstance(operation.payload, dict) else {}
        queue = self.scripts.get(payload.get("id")) or self.scripts.get(operation.resource_type)
        outcome = queue.pop(0) if queue else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.fixture()
def db_path(tmp_path):
    return tmp_path / "queue.db"


@pytest.fixture()
def engine(db_path):
    eng = create_queue_engine(db_path)
    yield eng
    eng.dispose()


@pytest.fixture()
def store(engine):
    return QueueStore(session_factory_for(engine))


@pytest.fixture()
def clock():
    return FixedClock(step=timedelta(milliseconds=1))


@pytest.fixture()
def settings():
    return SyncSettings(
        max_retries=3,
        retry_delay_sec=5.0,
        max_retry_delay_sec=60.0,
        periodic_interval_sec=30.0,
        enqueue_flush_delay_sec=0.1,
        failed_retention_days=3,
    )


@pytest.fixture()
def queue(store, settings, clock):
    return OperationQueue(store, settings, clock)


@pytest.fixture()
def connectivity():
    return ManualConnectivity(online=False)


@pytest.fixture()
def scheduler():
    return ManualScheduler()


@pytest.fixture()
def port():
    return FakePort()


@pytest.fixture()
def coordinator(queue, port, connectivity, settings, clock, scheduler):
    coord = SyncCoordinator(
        queue,
        port,
        connectivity,
        tracker=StatusTracker(clock),
        settings=settings,
        clock=clock,
        scheduler=scheduler,
    )
    yield coord
    coord.stop()
