# backend/app/tasks/__init__.py
"""
Celery tasks package for Smiling Steps.

This package contains the flow integrity engine's periodic jobs:
- Health checks
- Operation and notification queue drains
- Stuck state scans, booking lock sweeps and monitor log pruning
"""

from app.tasks.celery_app import BaseTask, celery_app
from app.tasks.flow_integrity_tasks import (
    drain_notification_queue,
    drain_operation_queue,
    prune_monitor_logs,
    run_health_check,
    scan_stuck_states,
    sweep_booking_locks,
)

__all__ = [
    "celery_app",
    "BaseTask",
    "run_health_check",
    "drain_operation_queue",
    "drain_notification_queue",
    "scan_stuck_states",
    "sweep_booking_locks",
    "prune_monitor_logs",
]

# This allows running celery with: celery -A app.tasks worker
