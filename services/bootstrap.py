"""Wiring for the one sync coordinator a process owns."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from core.settings import SYNC, SyncSettings
from datetime_utils import utc_now
from services.apply_port import ResourceApplyPort, RoutingApplyPort
from services.connectivity import ConnectivitySource
from services.operation_queue import OperationQueue
from services.status_tracker import StatusTracker
from services.sync_coordinator import Scheduler, SyncCoordinator
from storage.db import create_queue_engine, get_engine, session_factory_for
from storage.queue_store import QueueStore


def build_queue(
    *,
    engine=None,
    db_path: Optional[Path] = None,
    settings: SyncSettings = SYNC,
    clock: Callable[[], datetime] = utc_now,
) -> OperationQueue:
    if engine is None:
        engine = create_queue_engine(db_path) if db_path else get_engine()
    store = QueueStore(session_factory_for(engine))
    return OperationQueue(store, settings, clock)


def build_sync_coordinator(
    port: ResourceApplyPort,
    connectivity: ConnectivitySource,
    *,
    engine=None,
    db_path: Optional[Path] = None,
    settings: SyncSettings = SYNC,
    clock: Callable[[], datetime] = utc_now,
    scheduler: Optional[Scheduler] = None,
    start: bool = True,
) -> SyncCoordinator:
    """Assemble store, queue, tracker and coordinator around ``port``.

    Routing ports get their cache refresh wired as the post-flush hook and their
    cache clear as the reset hook.
    """

    queue = build_queue(engine=engine, db_path=db_path, settings=settings, clock=clock)
    coordinator = SyncCoordinator(
        queue,
        port,
        connectivity,
        tracker=StatusTracker(clock),
        settings=settings,
        clock=clock,
        scheduler=scheduler,
    )
    if isinstance(port, RoutingApplyPort):
        coordinator.add_post_flush_hook(port.refresh_caches)
        coordinator.add_reset_hook(port.clear_caches)
    if start:
        coordinator.start()
    return coordinator


__all__ = ["build_queue", "build_sync_coordinator"]
