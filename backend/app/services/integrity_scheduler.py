"""
Periodic jobs owned by the flow integrity engine.

``IntegrityScheduler.run_due()`` runs whichever registered jobs are due
against the injected clock; tests advance a ManualClock and call it
directly. In deployed environments Celery beat triggers the same jobs
through ``app.tasks.flow_integrity_tasks``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from ..core.clock import Clock, system_clock

logger = logging.getLogger(__name__)


@dataclass
class ScheduledJob:
    name: str
    interval: timedelta
    func: Callable[[], Any]
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    last_error: Optional[str] = None
    runs: int = 0
    failures: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval.total_seconds(),
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_error": self.last_error,
            "runs": self.runs,
            "failures": self.failures,
        }


class IntegrityScheduler:
    """Fixed-interval ticker; a failing job is logged and rescheduled."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self.clock = clock or system_clock
        self._jobs: Dict[str, ScheduledJob] = {}
        self._lock = threading.Lock()

    def add_job(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Any],
        run_immediately: bool = False,
    ) -> ScheduledJob:
        interval = timedelta(seconds=interval_seconds)
        now = self.clock.now()
        job = ScheduledJob(
            name=name,
            interval=interval,
            func=func,
            next_run=now if run_immediately else now + interval,
        )
        with self._lock:
            self._jobs[name] = job
        return job

    def remove_job(self, name: str) -> bool:
        with self._lock:
            return self._jobs.pop(name, None) is not None

    def jobs(self) -> List[ScheduledJob]:
        with self._lock:
            return list(self._jobs.values())

    def run_due(self) -> List[str]:
        """Run every job whose next run time has passed. Returns the names run."""
        now = self.clock.now()
        with self._lock:
            due = [job for job in self._jobs.values() if job.next_run and job.next_run <= now]

        ran: List[str] = []
        for job in due:
            self._run(job, now)
            ran.append(job.name)
        return ran

    def run_job(self, name: str) -> Any:
        with self._lock:
            job = self._jobs[name]
        return self._run(job, self.clock.now())

    def _run(self, job: ScheduledJob, now: datetime) -> Any:
        job.last_run = now
        job.next_run = now + job.interval
        job.runs += 1
        try:
            result = job.func()
        except Exception as exc:
            job.failures += 1
            job.last_error = str(exc)
            logger.exception("Scheduled job %s failed", job.name)
            return None
        job.last_error = None
        return result
