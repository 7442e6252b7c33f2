# backend/app/services/operation_queue.py
"""
Durable queues for deferred storage writes and notifications.

An operation lands here once its immediate retry budget is spent. Each
queue is drained by one pass at a time: items are attempted oldest first,
removed on success, and moved to the failed list once their own attempt
budget is exhausted. A transient failure with attempts left ends the pass
so the remaining items keep their order until the next drain.

The notification queue additionally abandons items older than its maximum
age instead of retrying them forever.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Protocol

from ..core.clock import Clock, ensure_utc, system_clock
from ..core.config import settings
from ..core.enums import QueuedOperationStatus, QueueKind, Severity
from ..core.ulid_helper import generate_prefixed_id
from ..monitoring.prometheus_metrics import prometheus_metrics
from .alerting import AlertManager
from .retry import is_retryable

logger = logging.getLogger(__name__)

Executor = Callable[[Dict[str, Any]], Any]

# Called as listener(outcome, item) with outcome completed | failed | abandoned
QueueListener = Callable[[str, "QueuedItem"], None]


@dataclass
class QueuedItem:
    queue: str
    operation: str
    payload: Dict[str, Any]
    enqueued_at: datetime
    id: str = field(default_factory=lambda: generate_prefixed_id("op"))
    attempts: int = 0
    status: str = QueuedOperationStatus.PENDING.value
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "queue": self.queue,
            "operation": self.operation,
            "payload": dict(self.payload),
            "enqueued_at": self.enqueued_at.isoformat(),
            "attempts": self.attempts,
            "status": self.status,
            "last_error": self.last_error,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
        }


class QueueStore(Protocol):
    def add(self, item: QueuedItem) -> None:
        ...

    def update(self, item: QueuedItem) -> None:
        ...

    def remove(self, item_id: str) -> None:
        ...

    def list(self, queue: str, status: str) -> List[QueuedItem]:
        """Items in enqueue order."""
        ...


class InMemoryQueueStore:
    """Process-local queue store; items are copied in and out."""

    def __init__(self) -> None:
        self._items: Dict[str, QueuedItem] = {}
        self._lock = threading.Lock()

    def add(self, item: QueuedItem) -> None:
        with self._lock:
            self._items[item.id] = replace(item, payload=dict(item.payload))

    def update(self, item: QueuedItem) -> None:
        with self._lock:
            if item.id in self._items:
                self._items[item.id] = replace(item, payload=dict(item.payload))

    def remove(self, item_id: str) -> None:
        with self._lock:
            self._items.pop(item_id, None)

    def list(self, queue: str, status: str) -> List[QueuedItem]:
        with self._lock:
            items = [
                replace(item, payload=dict(item.payload))
                for item in self._items.values()
                if item.queue == queue and item.status == status
            ]
        return sorted(items, key=lambda item: (item.enqueued_at, item.id))


@dataclass(frozen=True)
class DrainResult:
    queue: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    abandoned: int = 0
    remaining: int = 0
    skipped: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return {
            "queue": self.queue,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "abandoned": self.abandoned,
            "remaining": self.remaining,
            "skipped": self.skipped,
        }


@dataclass(frozen=True)
class QueueStatus:
    queue: str
    pending: int
    failed: int
    abandoned: int
    oldest_pending: Optional[datetime]
    draining: bool

    def to_payload(self) -> Dict[str, Any]:
        return {
            "queue": self.queue,
            "pending": self.pending,
            "failed": self.failed,
            "abandoned": self.abandoned,
            "oldest_pending": self.oldest_pending.isoformat() if self.oldest_pending else None,
            "draining": self.draining,
        }


class OperationQueue:
    """Queue of deferred storage operations with a non-overlapping drain."""

    kind = QueueKind.STORAGE

    def __init__(
        self,
        store: Optional[QueueStore] = None,
        clock: Optional[Clock] = None,
        max_attempts: Optional[int] = None,
        max_age: Optional[timedelta] = None,
        alert_manager: Optional[AlertManager] = None,
    ) -> None:
        self.name = self.kind.value
        self.store = store or InMemoryQueueStore()
        self.clock = clock or system_clock
        self.max_attempts = max_attempts or settings.retry_max_attempts
        self.max_age = max_age
        self.alert_manager = alert_manager
        self._executors: Dict[str, Executor] = {}
        self._listeners: List[QueueListener] = []
        self._drain_lock = threading.Lock()

    def register(self, operation: str, executor: Executor) -> None:
        """Executor used to replay queued items of this operation type."""
        self._executors[operation] = executor

    def add_listener(self, listener: QueueListener) -> None:
        self._listeners.append(listener)

    def _notify(self, outcome: str, item: QueuedItem) -> None:
        for listener in list(self._listeners):
            try:
                listener(outcome, item)
            except Exception:
                logger.exception("Queue listener failed for %s item %s", self.name, item.id)

    def enqueue(
        self,
        operation: str,
        payload: Dict[str, Any],
        error: Optional[BaseException] = None,
    ) -> QueuedItem:
        item = QueuedItem(
            queue=self.name,
            operation=operation,
            payload=dict(payload),
            enqueued_at=self.clock.now(),
            last_error=str(error) if error is not None else None,
        )
        self.store.add(item)
        logger.warning(
            "Queued %s operation %s",
            self.name,
            operation,
            extra={"queue": self.name, "item_id": item.id, "error": item.last_error},
        )
        self._publish_depth()
        return item

    def drain(self) -> DrainResult:
        """Attempt pending items oldest first; a no-op while another drain runs."""
        if not self._drain_lock.acquire(blocking=False):
            logger.info("Drain of %s queue already in progress; skipping", self.name)
            return DrainResult(queue=self.name, skipped=True)
        try:
            return self._drain_locked()
        finally:
            self._drain_lock.release()
            self._publish_depth()

    def _drain_locked(self) -> DrainResult:
        processed = succeeded = failed = abandoned = 0
        pending = self.store.list(self.name, QueuedOperationStatus.PENDING.value)
        for item in pending:
            now = self.clock.now()
            if self.max_age is not None and now - ensure_utc(item.enqueued_at) > self.max_age:
                item.status = QueuedOperationStatus.ABANDONED.value
                self.store.update(item)
                abandoned += 1
                self._notify("abandoned", item)
                logger.error(
                    "Abandoned %s item %s after %s",
                    self.name,
                    item.id,
                    self.max_age,
                    extra={"queue": self.name, "item_id": item.id, "attempts": item.attempts},
                )
                continue

            processed += 1
            item.attempts += 1
            item.last_attempt_at = now
            executor = self._executors.get(item.operation)
            try:
                if executor is None:
                    raise LookupError(f"No executor registered for {item.operation}")
                executor(item.payload)
            except Exception as exc:
                item.last_error = str(exc)
                permanent = isinstance(exc, LookupError) or not is_retryable(exc)
                if permanent or item.attempts >= self.max_attempts:
                    self._move_to_failed(item)
                    failed += 1
                    continue
                self.store.update(item)
                logger.warning(
                    "Queued %s item %s failed (attempt %d/%d): %s",
                    self.name,
                    item.id,
                    item.attempts,
                    self.max_attempts,
                    exc,
                )
                break

            self.store.remove(item.id)
            succeeded += 1
            self._notify("completed", item)
            logger.info(
                "Queued %s item %s completed after %d attempts",
                self.name,
                item.id,
                item.attempts,
            )

        remaining = len(self.store.list(self.name, QueuedOperationStatus.PENDING.value))
        return DrainResult(
            queue=self.name,
            processed=processed,
            succeeded=succeeded,
            failed=failed,
            abandoned=abandoned,
            remaining=remaining,
        )

    def _move_to_failed(self, item: QueuedItem) -> None:
        item.status = QueuedOperationStatus.FAILED.value
        self.store.update(item)
        self._notify("failed", item)
        logger.error(
            "Queued %s item %s moved to failed list after %d attempts: %s",
            self.name,
            item.id,
            item.attempts,
            item.last_error,
        )
        if self.alert_manager is not None:
            self.alert_manager.send_alert(
                f"{self.name}_queue_item_failed",
                f"Queued {item.operation} exhausted its retries",
                Severity.HIGH,
                {"item_id": item.id, "attempts": item.attempts, "error": item.last_error},
            )

    def pending_items(self) -> List[QueuedItem]:
        return self.store.list(self.name, QueuedOperationStatus.PENDING.value)

    def failed_items(self) -> List[QueuedItem]:
        return self.store.list(self.name, QueuedOperationStatus.FAILED.value)

    def get_status(self) -> QueueStatus:
        pending = self.pending_items()
        return QueueStatus(
            queue=self.name,
            pending=len(pending),
            failed=len(self.failed_items()),
            abandoned=len(self.store.list(self.name, QueuedOperationStatus.ABANDONED.value)),
            oldest_pending=pending[0].enqueued_at if pending else None,
            draining=self._drain_lock.locked(),
        )

    def _publish_depth(self) -> None:
        prometheus_metrics.set_queue_depth(
            self.name,
            len(self.pending_items()),
            len(self.failed_items()),
        )


class NotificationQueue(OperationQueue):
    """Failed outbound notifications; items older than the max age are abandoned."""

    kind = QueueKind.NOTIFICATION

    def __init__(
        self,
        store: Optional[QueueStore] = None,
        clock: Optional[Clock] = None,
        max_attempts: Optional[int] = None,
        max_age: Optional[timedelta] = None,
        alert_manager: Optional[AlertManager] = None,
    ) -> None:
        max_age = max_age or timedelta(hours=settings.notification_max_age_hours)
        if max_attempts is None:
            # One attempt per drain until the item ages out
            interval = settings.notification_queue_drain_interval_seconds
            max_attempts = max(1, int(max_age.total_seconds() // interval))
        super().__init__(
            store=store,
            clock=clock,
            max_attempts=max_attempts,
            max_age=max_age,
            alert_manager=alert_manager,
        )
