# backend/app/services/flow_integrity_engine.py
"""
Flow integrity engine container.

Builds the collaborating services around one clock, one alert manager and
one session store, and wires them together:

- Recovery replays queued ``save_session`` writes through the flow service,
  which refuses snapshots the stored row has moved past
- The monitor listens to recovery events and runs the consistency scan
- The scheduler owns the periodic jobs (health check, queue drains,
  monitor pruning, booking lock sweep, stuck state scan)

``get_flow_integrity_engine()`` returns the process-wide instance used by
the routes and Celery tasks. Tests build their own with ``build_engine``.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from ..core.booking_lock import BookingLockManager, build_lock_store
from ..core.clock import Clock, system_clock
from ..core.config import settings
from ..core.integrity_config import IntegrityConfig
from ..repositories.session_repository import SessionRepository, SessionStore
from .alerting import AlertManager
from .edge_case_handler import SAVE_SESSION, EdgeCaseHandler
from .flow_integrity_monitor import FlowIntegrityMonitor
from .integrity_scheduler import IntegrityScheduler
from .intake_forms import FormsCompletionChecker
from .notification_provider import LoggingNotificationSender, NotificationSender
from .operation_queue import InMemoryQueueStore, NotificationQueue, OperationQueue, QueueStore
from .retry import RetryPolicy
from .session_flow_service import SessionFlowService
from .stuck_state_detector import StuckStateDetector
from .system_failure_recovery import SystemFailureRecoveryService
from .transition_validator import TransitionValidator

logger = logging.getLogger(__name__)


@dataclass
class FlowIntegrityEngine:
    clock: Clock
    store: SessionStore
    integrity_config: IntegrityConfig
    validator: TransitionValidator
    alert_manager: AlertManager
    recovery: SystemFailureRecoveryService
    monitor: FlowIntegrityMonitor
    lock_manager: BookingLockManager
    edge_cases: EdgeCaseHandler
    flow: SessionFlowService
    stuck_states: StuckStateDetector
    scheduler: IntegrityScheduler

    def tick(self) -> list[str]:
        """Run whichever periodic jobs are due."""
        return self.scheduler.run_due()

    def get_status(self) -> Dict[str, Any]:
        return {
            "enforcement": self.integrity_config.get_stats(),
            "queues": self.recovery.get_queue_status(),
            "monitor": self.monitor.get_counters(),
            "jobs": [job.to_payload() for job in self.scheduler.jobs()],
        }


def _default_queue_store() -> QueueStore:
    if settings.queue_persistence == "database":
        from ..repositories.queued_operation_repository import SqlAlchemyQueueStore

        return SqlAlchemyQueueStore()
    return InMemoryQueueStore()


def build_engine(
    store: Optional[SessionStore] = None,
    clock: Optional[Clock] = None,
    notification_sender: Optional[NotificationSender] = None,
    integrity_config: Optional[IntegrityConfig] = None,
    lock_manager: Optional[BookingLockManager] = None,
    forms_checker: Optional[FormsCompletionChecker] = None,
    retry_policy: Optional[RetryPolicy] = None,
    queue_store: Optional[QueueStore] = None,
    sleep: Callable[[float], Any] = time.sleep,
) -> FlowIntegrityEngine:
    clock = clock or system_clock
    store = store if store is not None else SessionRepository()
    integrity_config = integrity_config or IntegrityConfig(clock=clock)
    validator = TransitionValidator(integrity_config)
    alert_manager = AlertManager(clock)

    operation_queue = OperationQueue(
        store=queue_store or _default_queue_store(), clock=clock, alert_manager=alert_manager
    )
    notification_queue = NotificationQueue(
        store=queue_store or _default_queue_store(), clock=clock, alert_manager=alert_manager
    )
    recovery = SystemFailureRecoveryService(
        clock=clock,
        retry_policy=retry_policy,
        alert_manager=alert_manager,
        operation_queue=operation_queue,
        notification_queue=notification_queue,
        notification_sender=notification_sender or LoggingNotificationSender(),
        sleep=sleep,
    )

    lock_manager = lock_manager or BookingLockManager(store=build_lock_store(clock), clock=clock)
    edge_cases = EdgeCaseHandler(
        store,
        clock=clock,
        validator=validator,
        lock_manager=lock_manager,
        recovery=recovery,
    )
    monitor = FlowIntegrityMonitor(
        clock=clock,
        alert_manager=alert_manager,
        recovery=recovery,
        session_store=store,
        consistency_scanner=edge_cases.scan_consistency,
    )
    edge_cases.monitor = monitor

    flow = SessionFlowService(
        store,
        recovery,
        monitor,
        validator=validator,
        forms_checker=forms_checker,
        clock=clock,
    )
    recovery.register_operation(SAVE_SESSION, flow.replay_save)
    stuck_states = StuckStateDetector(store, clock)

    scheduler = IntegrityScheduler(clock)
    scheduler.add_job(
        "health_check", settings.health_check_interval_seconds, monitor.run_health_check
    )
    scheduler.add_job(
        "drain_operation_queue",
        settings.operation_queue_drain_interval_seconds,
        recovery.drain_operation_queue,
    )
    scheduler.add_job(
        "drain_notification_queue",
        settings.notification_queue_drain_interval_seconds,
        recovery.drain_notification_queue,
    )
    scheduler.add_job("prune_monitor", 3600, monitor.prune)
    scheduler.add_job("sweep_booking_locks", 60, lock_manager.sweep)
    scheduler.add_job("scan_stuck_states", 300, stuck_states.scan)

    return FlowIntegrityEngine(
        clock=clock,
        store=store,
        integrity_config=integrity_config,
        validator=validator,
        alert_manager=alert_manager,
        recovery=recovery,
        monitor=monitor,
        lock_manager=lock_manager,
        edge_cases=edge_cases,
        flow=flow,
        stuck_states=stuck_states,
        scheduler=scheduler,
    )


_engine: Optional[FlowIntegrityEngine] = None
_engine_lock = threading.Lock()


def get_flow_integrity_engine() -> FlowIntegrityEngine:
    """Process-wide engine, built on first use."""
    global _engine
    if _engine is None:
        with _engine_lock:
            if _engine is None:
                _engine = build_engine()
                logger.info(
                    "Flow integrity engine initialized (enforcement=%s)",
                    _engine.integrity_config.enforcement_level.value,
                )
    return _engine


def set_flow_integrity_engine(engine: Optional[FlowIntegrityEngine]) -> None:
    """Replace the process-wide engine (tests, app startup)."""
    global _engine
    with _engine_lock:
        _engine = engine
