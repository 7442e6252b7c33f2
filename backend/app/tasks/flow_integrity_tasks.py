"""
Celery tasks for the flow integrity engine's periodic jobs.

Each task delegates to the process-wide engine and returns a JSON-safe
summary for Flower.
"""

import logging
from typing import Any, Dict

from app.services.flow_integrity_engine import get_flow_integrity_engine
from app.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.flow_integrity_tasks.run_health_check")
def run_health_check() -> Dict[str, Any]:
    report = get_flow_integrity_engine().monitor.run_health_check()
    return report.to_payload()


@celery_app.task(name="app.tasks.flow_integrity_tasks.drain_operation_queue")
def drain_operation_queue() -> Dict[str, Any]:
    result = get_flow_integrity_engine().recovery.drain_operation_queue()
    if result.failed or result.abandoned:
        logger.warning("Operation queue drain: %s", result.to_payload())
    return result.to_payload()


@celery_app.task(name="app.tasks.flow_integrity_tasks.drain_notification_queue")
def drain_notification_queue() -> Dict[str, Any]:
    result = get_flow_integrity_engine().recovery.drain_notification_queue()
    if result.failed or result.abandoned:
        logger.warning("Notification queue drain: %s", result.to_payload())
    return result.to_payload()


@celery_app.task(name="app.tasks.flow_integrity_tasks.scan_stuck_states")
def scan_stuck_states() -> Dict[str, Any]:
    stuck = get_flow_integrity_engine().stuck_states.scan()
    return {"stuck": len(stuck), "states": [result.to_payload() for result in stuck]}


@celery_app.task(name="app.tasks.flow_integrity_tasks.sweep_booking_locks")
def sweep_booking_locks() -> Dict[str, int]:
    return {"removed": get_flow_integrity_engine().lock_manager.sweep()}


@celery_app.task(name="app.tasks.flow_integrity_tasks.prune_monitor_logs")
def prune_monitor_logs() -> Dict[str, int]:
    return get_flow_integrity_engine().monitor.prune()
