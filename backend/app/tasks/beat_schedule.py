# backend/app/tasks/beat_schedule.py
"""
Celery Beat schedule for the flow integrity engine.

Intervals come from settings so beat and the in-process IntegrityScheduler
run the same jobs at the same cadence.
"""

from datetime import timedelta
from typing import Any, Dict

from celery.schedules import crontab

from app.core.config import settings


def get_beat_schedule() -> Dict[str, Dict[str, Any]]:
    return {
        "flow-integrity-health-check": {
            "task": "app.tasks.flow_integrity_tasks.run_health_check",
            "schedule": timedelta(seconds=settings.health_check_interval_seconds),
            "options": {"queue": "flow_integrity", "priority": 9},
        },
        "drain-operation-queue": {
            "task": "app.tasks.flow_integrity_tasks.drain_operation_queue",
            "schedule": timedelta(seconds=settings.operation_queue_drain_interval_seconds),
            "options": {"queue": "flow_integrity", "priority": 8},
        },
        "drain-notification-queue": {
            "task": "app.tasks.flow_integrity_tasks.drain_notification_queue",
            "schedule": timedelta(seconds=settings.notification_queue_drain_interval_seconds),
            "options": {"queue": "notifications", "priority": 6},
        },
        "scan-stuck-states": {
            "task": "app.tasks.flow_integrity_tasks.scan_stuck_states",
            "schedule": crontab(minute="*/5"),
            "options": {"queue": "flow_integrity", "priority": 5},
        },
        "sweep-booking-locks": {
            "task": "app.tasks.flow_integrity_tasks.sweep_booking_locks",
            "schedule": crontab(minute="*"),
            "options": {"queue": "flow_integrity", "priority": 2},
        },
        # Hourly at :05, after the health check has run at least once
        "prune-monitor-logs": {
            "task": "app.tasks.flow_integrity_tasks.prune_monitor_logs",
            "schedule": crontab(minute=5),
            "options": {"queue": "flow_integrity", "priority": 1},
        },
    }
