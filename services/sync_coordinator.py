from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from logging.handlers import RotatingFileHandler
from typing import Any, Callable, List, Optional

from core.settings import LOGGING, SYNC, SyncSettings
from datetime_utils import utc_now
from models.events import SyncCompleted, SyncStatusSnapshot
from models.operation import Operation, OperationKind, QueueItem, QueueStatus
from services.apply_port import (
    ApplySuccess,
    PermanentFailure,
    ResourceApplyPort,
    RetryableFailure,
)
from services.connectivity import ConnectivitySource
from services.error_policy import PermanentApplyError
from services.operation_queue import OperationQueue
from services.status_tracker import StatusListener, StatusTracker, compute_status
from storage.queue_store import QueueStoreError


Scheduler = Callable[[float, Callable[[], None]], Any]
CompletedListener = Callable[[SyncCompleted], None]


class OfflineError(RuntimeError):
    """Raised when a sync is forced while connectivity is down."""


def _ensure_logger() -> logging.Logger:
    logger = logging.getLogger("carequeue.sync")
    if not logger.handlers:
        LOGGING.path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            LOGGING.path,
            maxBytes=LOGGING.max_bytes,
            backupCount=LOGGING.backup_count,
            encoding="utf-8",
        )
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(LOGGING.level)
    return logger


def _start_timer(delay: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(max(delay, 0.0), callback)
    timer.daemon = True
    timer.start()
    return timer


def _cancel(handle: Any) -> None:
    if handle is not None:
        handle.cancel()


@dataclass
class FlushResult:
    reason: str
    attempted: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    interrupted: bool = False
    pending_count: int = 0
    failed_count: int = 0


class SyncCoordinator:
    """Drains the offline queue through a :class:`ResourceApplyPort`.

    Passes are single-flight: a trigger that arrives while a pass is running is
    ignored, and items enqueued meanwhile wait for the next pass. Triggers are
    connectivity coming back, the periodic timer, :meth:`wake`, :meth:`force_sync`
    and a short delayed flush after new writes. The queue lock is never held
    across ``port.apply``.
    """

    def __init__(
        self,
        queue: OperationQueue,
        port: ResourceApplyPort,
        connectivity: ConnectivitySource,
        tracker: Optional[StatusTracker] = None,
        settings: SyncSettings = SYNC,
        clock: Callable[[], datetime] = utc_now,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.queue = queue
        self.port = port
        self.connectivity = connectivity
        self.tracker = tracker or StatusTracker(clock)
        self.settings = settings
        self.logger = _ensure_logger()
        self._clock = clock
        self._schedule = scheduler or _start_timer

        self._flush_lock = threading.Lock()
        self._timer_lock = threading.Lock()
        self._status_lock = threading.RLock()
        self._retry_handle: Any = None
        self._periodic_handle: Any = None
        self._kick_handle: Any = None
        self._backoff_level = 0
        self._running = False

        self._post_flush_hooks: List[Callable[[], None]] = []
        self._reset_hooks: List[Callable[[], None]] = []
        self._completed_listeners: List[CompletedListener] = []

        self.queue.add_listener(self._on_queue_changed)

    # ------------------------------------------------------------------
    # Lifecycle
    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self.connectivity.subscribe(self._on_connectivity_change)
        self.queue.recover_interrupted()
        self.refresh_status()
        self._arm_periodic()
        self.logger.info("Sync coordinator started (online=%s)", self.is_online())
        if self.is_online() and self.queue.pending_count() > 0:
            self._kick("startup")

    def stop(self) -> None:
        self._running = False
        self.connectivity.unsubscribe(self._on_connectivity_change)
        with self._timer_lock:
            for handle in (self._retry_handle, self._periodic_handle, self._kick_handle):
                _cancel(handle)
            self._retry_handle = self._periodic_handle = self._kick_handle = None
        self.logger.info("Sync coordinator stopped")

    @property
    def is_flushing(self) -> bool:
        return self._flush_lock.locked()

    def is_online(self) -> bool:
        return self.connectivity.is_online()

    # ------------------------------------------------------------------
    # Subscriptions
    def on_status_changed(self, listener: StatusListener) -> None:
        self.tracker.subscribe(listener)

    def on_sync_completed(self, listener: CompletedListener) -> None:
        if listener not in self._completed_listeners:
            self._completed_listeners.append(listener)

    def add_post_flush_hook(self, hook: Callable[[], None]) -> None:
        """Run ``hook`` after a pass that leaves nothing pending."""
        self._post_flush_hooks.append(hook)

    def add_reset_hook(self, hook: Callable[[], None]) -> None:
        self._reset_hooks.append(hook)

    # ------------------------------------------------------------------
    # Public API
    def enqueue(
        self,
        kind: OperationKind | str,
        resource_type: str,
        payload: Any,
        priority: Optional[int] = None,
    ) -> str:
        op_id = self.queue.enqueue(kind, resource_type, payload, priority)
        if self.is_online():
            self._kick("enqueue", self.settings.enqueue_flush_delay_sec)
        return op_id

    def force_sync(self) -> Optional[FlushResult]:
        if not self.is_online():
            raise OfflineError("Cannot force sync while offline")
        self._backoff_level = 0
        return self.flush("force")

    def wake(self) -> Optional[FlushResult]:
        """Entry point for external background-sync signals."""
        return self._tick("wake")

    def retry(self, item_id: str) -> bool:
        result = self.queue.retry(item_id)
        if result and self.is_online():
            self._kick("retry")
        return result

    def retry_all_failed(self) -> int:
        count = self.queue.retry_all_failed()
        if count and self.is_online():
            self._kick("retry_all")
        return count

    def get_status(self) -> SyncStatusSnapshot:
        counts = self.queue.counts()
        pending = counts[QueueStatus.PENDING.value] + counts[QueueStatus.PROCESSING.value]
        failed = counts[QueueStatus.FAILED.value]
        online = self.is_online()
        return SyncStatusSnapshot(
            status=compute_status(online, pending, failed),
            pending_count=pending,
            failed_count=failed,
            online=online,
            last_sync_at=self.queue.last_sync_at(),
        )

    def pending_operations(self) -> List[Operation]:
        return [item.operation for item in self.queue.pending()]

    def failed_operations(self) -> List[QueueItem]:
        return self.queue.failed()

    def clear_all(self) -> None:
        """Hard reset: drop every queued write and read-side cache."""
        self.logger.warning("Clearing offline queue and caches")
        with self._timer_lock:
            _cancel(self._retry_handle)
            self._retry_handle = None
        self._backoff_level = 0
        self.queue.clear()
        for hook in list(self._reset_hooks):
            try:
                hook()
            except Exception:
                self.logger.exception("Reset hook %r failed", hook)
        self.tracker.reset()
        self.refresh_status()

    def refresh_status(self) -> None:
        # counts are read under the lock so a late notifier cannot publish a stale tuple
        with self._status_lock:
            counts = self.queue.counts()
            pending = counts[QueueStatus.PENDING.value] + counts[QueueStatus.PROCESSING.value]
            self.tracker.update(self.is_online(), pending, counts[QueueStatus.FAILED.value])

    # ------------------------------------------------------------------
    # Flush
    def flush(self, reason: str = "manual") -> Optional[FlushResult]:
        if not self.is_online():
            self.logger.debug("Skipping %s flush while offline", reason)
            return None
        if not self._flush_lock.acquire(blocking=False):
            self.logger.debug("Flush already in progress, ignoring %s trigger", reason)
            return None
        try:
            return self._run_pass(reason)
        finally:
            self._flush_lock.release()

    def _run_pass(self, reason: str) -> FlushResult:
        result = FlushResult(reason=reason)
        snapshot = self.queue.pending()
        if not snapshot:
            self.logger.debug("Sync queue is empty, nothing to process (%s)", reason)
            result.failed_count = self.queue.failed_count()
            return result

        self.logger.info("Starting sync pass (%s): %s items", reason, len(snapshot))
        try:
            for item in snapshot:
                if not self.is_online():
                    result.interrupted = True
                    self.logger.info("Connection lost during sync, pausing queue processing")
                    break
                self._process_item(item, result)
            self.queue.cleanup(timedelta(days=self.settings.failed_retention_days))
            counts = self.queue.counts()
        except QueueStoreError as exc:
            self.logger.error("Sync pass (%s) aborted: %s", reason, exc)
            last = self.tracker.last
            self._emit_completed(
                SyncCompleted(
                    success=False,
                    pending_count=last.pending_count if last else 0,
                    failed_count=last.failed_count if last else 0,
                    error=str(exc),
                )
            )
            raise

        self.refresh_status()
        result.pending_count = counts[QueueStatus.PENDING.value]
        result.failed_count = counts[QueueStatus.FAILED.value]
        self.logger.info(
            "Sync pass (%s) done: %s ok, %s retry, %s failed; remaining %s pending, %s failed",
            reason,
            result.succeeded,
            result.retried,
            result.failed,
            result.pending_count,
            result.failed_count,
        )

        if result.pending_count > 0:
            if self.is_online() and result.retried > 0:
                self._schedule_retry()
            elif self.is_online():
                # only writes enqueued during the pass remain
                self._kick("follow-up")
        else:
            self._backoff_level = 0
            self.queue.record_sync()
            self._run_post_flush_hooks()

        self._emit_completed(
            SyncCompleted(
                success=True,
                pending_count=result.pending_count,
                failed_count=result.failed_count,
            )
        )
        return result

    def _process_item(self, item: QueueItem, result: FlushResult) -> None:
        if not self.queue.mark(item.id, QueueStatus.PROCESSING):
            # retried, cleared or removed since the snapshot
            result.skipped += 1
            return
        result.attempted += 1

        try:
            outcome = self.port.apply(item.operation)
        except PermanentApplyError as exc:
            outcome = PermanentFailure(str(exc) or exc.__class__.__name__)
        except Exception as exc:
            outcome = RetryableFailure(f"{exc.__class__.__name__}: {exc}")

        if isinstance(outcome, ApplySuccess):
            self.queue.mark(item.id, QueueStatus.COMPLETED)
            self.queue.remove(item.id)
            result.succeeded += 1
            self.logger.debug("Applied %s %s id=%s", item.operation.kind.value,
                              item.operation.resource_type, item.id)
            return

        if isinstance(outcome, PermanentFailure):
            reason = outcome.reason
            final = True
        elif isinstance(outcome, RetryableFailure):
            reason = outcome.reason
            final = self.queue.has_reached_max_retries(item.id)
        else:
            reason = f"Unexpected apply outcome: {outcome!r}"
            final = self.queue.has_reached_max_retries(item.id)

        self.logger.warning(
            "Apply %s failed: id=%s resource_type=%s attempts=%s error=%s",
            item.operation.kind.value,
            item.id,
            item.operation.resource_type,
            item.attempts + 1,
            reason,
        )
        if final:
            self.queue.mark(item.id, QueueStatus.FAILED, reason)
            result.failed += 1
        else:
            self.queue.mark(item.id, QueueStatus.PENDING, reason)
            result.retried += 1

    def _run_post_flush_hooks(self) -> None:
        for hook in list(self._post_flush_hooks):
            try:
                hook()
            except Exception:
                self.logger.exception("Post-flush hook %r failed", hook)

    def _emit_completed(self, event: SyncCompleted) -> None:
        for listener in list(self._completed_listeners):
            try:
                listener(event)
            except Exception:
                self.logger.exception("Sync-completed listener %r failed", listener)

    # ------------------------------------------------------------------
    # Triggers
    def _on_queue_changed(self, counts) -> None:
        self.refresh_status()

    def _on_connectivity_change(self, online: bool) -> None:
        self.refresh_status()
        if online:
            self.logger.info("Connection restored. Processing sync queue")
            self._backoff_level = 0
            self._kick("online")
        else:
            self.logger.info("Connection lost. Switching to offline mode")
            with self._timer_lock:
                _cancel(self._retry_handle)
                self._retry_handle = None

    def _tick(self, reason: str) -> Optional[FlushResult]:
        try:
            if not self.is_online() or self.queue.pending_count() == 0:
                return None
            return self.flush(reason)
        except Exception:
            self.logger.exception("Sync trigger %s failed", reason)
            return None

    def _run_trigger(self, reason: str) -> None:
        try:
            self.flush(reason)
        except Exception:
            self.logger.exception("Sync trigger %s failed", reason)

    def _kick(self, reason: str, delay: float = 0.0) -> None:
        with self._timer_lock:
            if self._kick_handle is not None:
                return

            def fire() -> None:
                with self._timer_lock:
                    self._kick_handle = None
                self._run_trigger(reason)

            self._kick_handle = self._schedule(delay, fire)

    def _schedule_retry(self) -> None:
        delay = min(
            self.settings.retry_delay_sec * (2 ** self._backoff_level),
            self.settings.max_retry_delay_sec,
        )
        self._backoff_level += 1

        def fire() -> None:
            with self._timer_lock:
                self._retry_handle = None
            self._run_trigger("retry")

        with self._timer_lock:
            _cancel(self._retry_handle)
            self._retry_handle = self._schedule(delay, fire)
        self.logger.debug("Retry pass scheduled in %.1fs", delay)

    def _arm_periodic(self) -> None:
        if not self._running or self.settings.periodic_interval_sec <= 0:
            return

        def fire() -> None:
            with self._timer_lock:
                self._periodic_handle = None
            try:
                self._tick("timer")
            finally:
                with self._timer_lock:
                    rearm = self._running and self._periodic_handle is None
                if rearm:
                    self._arm_periodic()

        with self._timer_lock:
            self._periodic_handle = self._schedule(self.settings.periodic_interval_sec, fire)


__all__ = ["FlushResult", "OfflineError", "Scheduler", "SyncCoordinator"]
