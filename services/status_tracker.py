"""Coarse sync status derived from connectivity and queue counts."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, List, Optional

from datetime_utils import utc_now
from models.events import StatusChanged, SyncStatus


logger = logging.getLogger("carequeue.sync.status")

StatusListener = Callable[[StatusChanged], None]


def compute_status(online: bool, pending_count: int, failed_count: int) -> SyncStatus:
    if not online:
        return SyncStatus.OFFLINE
    if pending_count > 0:
        return SyncStatus.PENDING
    if failed_count > 0:
        return SyncStatus.ERROR
    return SyncStatus.SYNCED


class StatusTracker:
    """Emits :class:`StatusChanged` only when ``(status, pending, failed)`` changes."""

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._listeners: List[StatusListener] = []
        self._last: Optional[StatusChanged] = None

    def subscribe(self, listener: StatusListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: StatusListener) -> None:
        self._listeners = [cb for cb in self._listeners if cb != listener]

    @property
    def last(self) -> Optional[StatusChanged]:
        return self._last

    def update(self, online: bool, pending_count: int, failed_count: int) -> Optional[StatusChanged]:
        """Recompute and notify; returns the event, or None when suppressed."""
        status = compute_status(online, pending_count, failed_count)
        with self._lock:
            key = (status, pending_count, failed_count)
            if self._last is not None and self._last.key() == key:
                return None
            event = StatusChanged(
                status=status,
                pending_count=pending_count,
                failed_count=failed_count,
                timestamp=self._clock(),
            )
            self._last = event

        logger.info(
            "Sync status %s (pending=%s failed=%s)", status.value, pending_count, failed_count
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Status listener %r failed", listener)
        return event

    def reset(self) -> None:
        with self._lock:
            self._last = None


__all__ = ["StatusListener", "StatusTracker", "compute_status"]
