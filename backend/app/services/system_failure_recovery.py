# backend/app/services/system_failure_recovery.py
"""
System failure recovery for the flow integrity engine.

Responsibilities:
- Retry with exponential backoff for arbitrary operations
- Storage failover: a write that keeps failing on a transient error is
  queued with a snapshot of its intent instead of failing the caller
- Notification delivery with retry, then the notification queue
- Consecutive-failure alerting per failure kind
- Storage and notification-channel health checks

"Queued" is a successful, eventually consistent outcome for callers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Any, Callable, Dict, List, Optional, TypeVar

from ..core.clock import Clock
from ..core.enums import QueueKind
from ..core.exceptions import (
    NotificationPermanentError,
    RepositoryException,
    is_transient_failure,
)
from ..monitoring.prometheus_metrics import prometheus_metrics
from .alerting import AlertManager
from .base import BaseService
from .notification_provider import (
    LoggingNotificationSender,
    NotificationMessage,
    NotificationSender,
)
from .operation_queue import (
    DrainResult,
    NotificationQueue,
    OperationQueue,
    QueuedItem,
)
from .retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEND_NOTIFICATION = "send_notification"

STORAGE_FAILURE = "storage"
NOTIFICATION_FAILURE = "notification"


@dataclass(frozen=True)
class RecoveryOutcome:
    """Result of an operation run through recovery: completed, queued or failed."""

    status: str
    operation: str
    result: Any = None
    queued_item_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def queued(self) -> bool:
        return self.status == "queued"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "operation": self.operation,
            "queued_item_id": self.queued_item_id,
            "error": self.error,
        }


@dataclass(frozen=True)
class RecoveryEvent:
    """A recovery attempt worth recording with the monitor."""

    kind: str
    operation: str
    success: bool
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HealthCheckResult:
    name: str
    healthy: bool
    details: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {"name": self.name, "healthy": self.healthy, "details": dict(self.details)}


RecoveryListener = Callable[[RecoveryEvent], None]


class SystemFailureRecoveryService(BaseService):
    """Retries, queues and alerts on infrastructure failures."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        retry_policy: Optional[RetryPolicy] = None,
        alert_manager: Optional[AlertManager] = None,
        operation_queue: Optional[OperationQueue] = None,
        notification_queue: Optional[NotificationQueue] = None,
        notification_sender: Optional[NotificationSender] = None,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        super().__init__(clock)
        self.retry_policy = retry_policy or RetryPolicy()
        self.alert_manager = alert_manager or AlertManager(self.clock)
        self.operation_queue = operation_queue or OperationQueue(
            clock=self.clock, alert_manager=self.alert_manager
        )
        self.notification_queue = notification_queue or NotificationQueue(
            clock=self.clock, alert_manager=self.alert_manager
        )
        self.notification_sender = notification_sender or LoggingNotificationSender()
        self._sleep = sleep
        self._listeners: List[RecoveryListener] = []

        self.notification_queue.register(SEND_NOTIFICATION, self._deliver_queued_notification)
        self.operation_queue.add_listener(self._on_queue_outcome)
        self.notification_queue.add_listener(self._on_queue_outcome)

    # Events

    def add_listener(self, listener: RecoveryListener) -> None:
        self._listeners.append(listener)

    def _emit(self, event: RecoveryEvent) -> None:
        prometheus_metrics.record_recovery("success" if event.success else "failed")
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Recovery listener failed for %s", event.operation)

    def _on_queue_outcome(self, outcome: str, item: QueuedItem) -> None:
        kind = STORAGE_FAILURE if item.queue == QueueKind.STORAGE.value else NOTIFICATION_FAILURE
        success = outcome == "completed"
        if success:
            self.alert_manager.record_success(kind)
        self._emit(
            RecoveryEvent(
                kind=f"queue_{outcome}",
                operation=item.operation,
                success=success,
                details={"item_id": item.id, "queue": item.queue, "attempts": item.attempts},
            )
        )

    # Retry

    def with_retry(
        self,
        operation: Callable[[], T],
        operation_name: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
        retry_on: Optional[Callable[[BaseException], bool]] = None,
    ) -> T:
        """Run ``operation`` with backoff; re-raises the last error once the budget is spent."""
        attempts: List[int] = []

        def _track(attempt: int, exc: BaseException, delay: float) -> None:
            attempts.append(attempt)

        kwargs: Dict[str, Any] = {}
        if retry_on is not None:
            kwargs["retry_on"] = retry_on
        result = with_retry(
            operation,
            policy or self.retry_policy,
            operation_name=operation_name,
            on_retry=_track,
            sleep=self._sleep,
            **kwargs,
        )
        if attempts:
            self._emit(
                RecoveryEvent(
                    kind="retry",
                    operation=operation_name or getattr(operation, "__name__", "operation"),
                    success=True,
                    details={"attempts": len(attempts) + 1},
                )
            )
        return result

    # Storage

    def register_operation(self, operation: str, executor: Callable[[Dict[str, Any]], Any]) -> None:
        self.operation_queue.register(operation, executor)

    def enqueue_operation(
        self,
        operation: str,
        payload: Dict[str, Any],
        error: Optional[BaseException] = None,
    ) -> QueuedItem:
        return self.operation_queue.enqueue(operation, payload, error)

    @BaseService.measure_operation("execute_with_storage_failover")
    def execute_with_storage_failover(
        self,
        operation: str,
        func: Callable[[], T],
        payload: Dict[str, Any],
    ) -> RecoveryOutcome:
        """
        Run a storage write with retry; queue it if the store stays unavailable.

        Only transient failures are retried and queued. Anything else (for
        example a constraint violation) propagates to the caller.
        """
        try:
            result = self.with_retry(func, operation, retry_on=is_transient_failure)
        except Exception as exc:
            if not is_transient_failure(exc):
                raise
            self.alert_manager.record_failure(STORAGE_FAILURE, exc, {"operation": operation})
            item = self.enqueue_operation(operation, payload, exc)
            return RecoveryOutcome(
                status="queued", operation=operation, queued_item_id=item.id, error=str(exc)
            )
        self.alert_manager.record_success(STORAGE_FAILURE)
        return RecoveryOutcome(status="completed", operation=operation, result=result)

    # Notifications

    def enqueue_notification(
        self,
        message: NotificationMessage,
        error: Optional[BaseException] = None,
    ) -> QueuedItem:
        return self.notification_queue.enqueue(SEND_NOTIFICATION, message.to_dict(), error)

    @BaseService.measure_operation("send_notification")
    def send_notification(self, message: NotificationMessage) -> RecoveryOutcome:
        """Send now with retry; queue on transient failure, drop on permanent rejection."""
        try:
            self.with_retry(
                lambda: self.notification_sender.send(message),
                f"notify:{message.event_type}",
                retry_on=is_transient_failure,
            )
        except NotificationPermanentError as exc:
            logger.error(
                "Notification permanently rejected: %s",
                exc,
                extra={"event_type": message.event_type, "key": message.idempotency_key},
            )
            self._emit(
                RecoveryEvent(
                    kind="notification_rejected",
                    operation=message.event_type,
                    success=False,
                    details={"error": str(exc)},
                )
            )
            return RecoveryOutcome(
                status="failed", operation=SEND_NOTIFICATION, error=str(exc)
            )
        except Exception as exc:
            if not is_transient_failure(exc):
                raise
            self.alert_manager.record_failure(
                NOTIFICATION_FAILURE, exc, {"event_type": message.event_type}
            )
            item = self.enqueue_notification(message, exc)
            return RecoveryOutcome(
                status="queued",
                operation=SEND_NOTIFICATION,
                queued_item_id=item.id,
                error=str(exc),
            )
        self.alert_manager.record_success(NOTIFICATION_FAILURE)
        return RecoveryOutcome(status="completed", operation=SEND_NOTIFICATION)

    def _deliver_queued_notification(self, payload: Dict[str, Any]) -> None:
        self.notification_sender.send(NotificationMessage.from_dict(payload))

    # Drains

    def drain_operation_queue(self) -> DrainResult:
        return self.operation_queue.drain()

    def drain_notification_queue(self) -> DrainResult:
        return self.notification_queue.drain()

    def get_queue_status(self) -> Dict[str, Any]:
        storage = self.operation_queue.get_status()
        notification = self.notification_queue.get_status()
        return {
            "storage": storage.to_payload(),
            "notification": notification.to_payload(),
            "total_pending": storage.pending + notification.pending,
            "total_failed": storage.failed + notification.failed,
        }

    def total_queue_depth(self) -> int:
        return (
            self.operation_queue.get_status().pending
            + self.notification_queue.get_status().pending
        )

    # Health

    def check_storage_health(self, store: Any) -> HealthCheckResult:
        """Ping the entity store; failures are reported, never raised."""
        try:
            store.ping()
        except (RepositoryException, ConnectionError, TimeoutError) as exc:
            return HealthCheckResult("storage", False, {"error": str(exc)})
        return HealthCheckResult("storage", True, {})

    def check_notification_health(self) -> HealthCheckResult:
        failures = self.alert_manager.consecutive_failures(NOTIFICATION_FAILURE)
        healthy = failures < self.alert_manager.failure_threshold
        return HealthCheckResult(
            "notification_channel",
            healthy,
            {"consecutive_failures": failures},
        )
