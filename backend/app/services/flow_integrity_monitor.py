# backend/app/services/flow_integrity_monitor.py
"""
Flow Integrity Monitor

Event sink and read model for the flow integrity engine:
- Records every applied transition and every rejected transition as
  immutable entries, retained for a bounded window and pruned after it
- Records recovery attempts reported by system failure recovery
- Records data-integrity anomalies from the consistency scan as violations,
  once per session and issue code while the anomaly persists
- Keeps aggregate counters and a derived recovery success rate
- Runs health checks (storage, notification channel, state consistency,
  queue depth, recent violations) and rates the system healthy, degraded
  or unhealthy
- Raises alerts through the shared AlertManager (same cooldown rules)
- Broadcasts events to subscribers
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
import logging
import threading
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from ..core.clock import Clock
from ..core.config import settings
from ..core.constants import DASHBOARD_RECENT_LIMIT, RECENT_VIOLATION_WINDOW_SECONDS
from ..core.enums import EntityType, HealthState, Severity
from ..core.exceptions import DomainException
from ..core.ulid_helper import generate_prefixed_id
from ..monitoring.prometheus_metrics import prometheus_metrics
from .alerting import Alert, AlertManager
from .base import BaseService
from .system_failure_recovery import (
    HealthCheckResult,
    RecoveryEvent,
    SystemFailureRecoveryService,
)
from .transition_validator import violation_severity

logger = logging.getLogger(__name__)


def _frozen(values: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(values or {}))


@dataclass(frozen=True)
class TransitionRecord:
    entity_type: str
    entity_id: str
    previous_state: str
    new_state: str
    actor: str
    timestamp: datetime
    metadata: Mapping[str, Any] = field(default_factory=lambda: _frozen(None))
    id: str = field(default_factory=lambda: generate_prefixed_id("trans"))

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "previous_state": self.previous_state,
            "new_state": self.new_state,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat(),
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class ViolationRecord:
    entity_type: str
    entity_id: Optional[str]
    current_state: Optional[str]
    attempted_state: Optional[str]
    reason: str
    severity: str
    actor: str
    timestamp: datetime
    details: Mapping[str, Any] = field(default_factory=lambda: _frozen(None))
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: generate_prefixed_id("viol"))

    @property
    def attempted_transition(self) -> str:
        return f"{self.current_state} -> {self.attempted_state}"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "attempted_transition": self.attempted_transition,
            "reason": self.reason,
            "severity": self.severity,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat(),
            "details": dict(self.details),
            "resolved": self.resolved,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass(frozen=True)
class RecoveryRecord:
    kind: str
    operation: str
    success: bool
    timestamp: datetime
    details: Mapping[str, Any] = field(default_factory=lambda: _frozen(None))
    id: str = field(default_factory=lambda: generate_prefixed_id("recov"))

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "operation": self.operation,
            "success": self.success,
            "timestamp": self.timestamp.isoformat(),
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class HealthReport:
    status: HealthState
    checks: Tuple[HealthCheckResult, ...]
    checked_at: datetime

    @property
    def failing(self) -> List[str]:
        return [check.name for check in self.checks if not check.healthy]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "checked_at": self.checked_at.isoformat(),
            "failing_checks": self.failing,
            "checks": {check.name: check.to_payload() for check in self.checks},
        }


@dataclass(frozen=True)
class MonitorEvent:
    kind: str  # transition | violation | recovery | health | alert
    payload: Dict[str, Any]


MonitorSubscriber = Callable[[MonitorEvent], None]
ConsistencyScanner = Callable[[], Sequence[Any]]

# Consistency issue code -> severity of the violation it is recorded as
CONSISTENCY_SEVERITIES: Mapping[str, Severity] = MappingProxyType(
    {
        "paid_but_cancelled": Severity.CRITICAL,
        "in_progress_unpaid": Severity.HIGH,
        "completed_without_end": Severity.MEDIUM,
        "call_end_before_start": Severity.MEDIUM,
    }
)


def rate_health(failing_checks: int) -> HealthState:
    if failing_checks == 0:
        return HealthState.HEALTHY
    if failing_checks == 1:
        return HealthState.DEGRADED
    return HealthState.UNHEALTHY


class FlowIntegrityMonitor(BaseService):
    """Records transitions, violations and recoveries; reports health."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        alert_manager: Optional[AlertManager] = None,
        recovery: Optional[SystemFailureRecoveryService] = None,
        session_store: Any = None,
        consistency_scanner: Optional[ConsistencyScanner] = None,
    ) -> None:
        super().__init__(clock)
        self.alert_manager = alert_manager or (
            recovery.alert_manager if recovery is not None else AlertManager(self.clock)
        )
        self.recovery = recovery
        self.session_store = session_store
        self.consistency_scanner = consistency_scanner
        self.retention = timedelta(hours=settings.log_retention_hours)

        self._lock = threading.Lock()
        self._transitions: List[TransitionRecord] = []
        self._violations: List[ViolationRecord] = []
        self._recoveries: List[RecoveryRecord] = []
        self._subscribers: List[MonitorSubscriber] = []
        self._reported_issues: Set[Tuple[str, str]] = set()
        self._counters: Dict[str, int] = {
            "total_transitions": 0,
            "total_violations": 0,
            "total_recoveries": 0,
            "failed_recoveries": 0,
        }
        self.last_health: Optional[HealthReport] = None

        if recovery is not None:
            recovery.add_listener(self._on_recovery_event)
        self.alert_manager.subscribe(self._on_alert)

    # Subscribers

    def subscribe(self, callback: MonitorSubscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def _publish(self, kind: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        event = MonitorEvent(kind, payload)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:
                logger.exception("Monitor subscriber %r failed on %s event", subscriber, kind)

    def _on_alert(self, alert: Alert) -> None:
        self._publish("alert", alert.to_payload())

    # Recording

    def log_transition(
        self,
        entity_type: str,
        entity_id: str,
        previous_state: str,
        new_state: str,
        actor: str = "system",
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Optional[TransitionRecord]:
        """Record an applied transition. Same-state no-ops are not recorded."""
        if previous_state == new_state:
            return None
        record = TransitionRecord(
            entity_type=str(entity_type),
            entity_id=str(entity_id),
            previous_state=str(previous_state),
            new_state=str(new_state),
            actor=actor,
            timestamp=self.now(),
            metadata=_frozen(metadata),
        )
        with self._lock:
            self._transitions.append(record)
            self._counters["total_transitions"] += 1
        prometheus_metrics.record_transition(record.entity_type)
        logger.info(
            "State transition: %s %s %s -> %s",
            record.entity_type,
            record.entity_id,
            record.previous_state,
            record.new_state,
            extra={"actor": actor, "transition_id": record.id},
        )
        self._publish("transition", record.to_payload())
        return record

    def log_violation(
        self,
        entity_type: str,
        reason: str,
        severity: Severity | str = Severity.MEDIUM,
        entity_id: Optional[str] = None,
        current_state: Optional[str] = None,
        attempted_state: Optional[str] = None,
        actor: str = "system",
        details: Optional[Mapping[str, Any]] = None,
    ) -> ViolationRecord:
        severity_value = str(getattr(severity, "value", severity))
        record = ViolationRecord(
            entity_type=str(entity_type),
            entity_id=entity_id,
            current_state=current_state,
            attempted_state=attempted_state,
            reason=reason,
            severity=severity_value,
            actor=actor,
            timestamp=self.now(),
            details=_frozen(details),
        )
        with self._lock:
            self._violations.append(record)
            self._counters["total_violations"] += 1
        prometheus_metrics.record_violation(record.entity_type, severity_value)
        logger.error(
            "Flow integrity violation: %s",
            reason,
            extra={
                "violation_id": record.id,
                "entity_type": record.entity_type,
                "entity_id": entity_id,
                "severity": severity_value,
            },
        )
        self._publish("violation", record.to_payload())
        self._check_violation_alerts(record)
        return record

    def log_rejection(
        self,
        exc: DomainException,
        entity_id: Optional[str] = None,
        actor: str = "system",
    ) -> ViolationRecord:
        """Record a validation error raised by the transition validator."""
        details = dict(exc.details)
        return self.log_violation(
            entity_type=str(details.get("entity_type", "unknown")),
            reason=exc.message,
            severity=violation_severity(exc),
            entity_id=entity_id,
            current_state=details.get("current_state"),
            attempted_state=details.get("new_state"),
            actor=actor,
            details={"code": exc.code, **details},
        )

    def _check_violation_alerts(self, record: ViolationRecord) -> None:
        if record.severity == Severity.CRITICAL.value:
            self.alert_manager.send_alert(
                "critical_violation",
                f"Critical flow violation: {record.reason}",
                Severity.CRITICAL,
                {"violation_id": record.id, "entity_id": record.entity_id},
            )
            return
        recent = self.recent_violation_count()
        if recent >= settings.max_violations_before_alert:
            self.alert_manager.send_alert(
                "violation_threshold",
                f"{recent} flow violations in the last hour",
                Severity.HIGH,
                {"recent_violations": recent},
            )

    def resolve_violation(self, violation_id: str) -> Optional[ViolationRecord]:
        """Replace a violation with a resolved copy; the original entry is not mutated."""
        with self._lock:
            for index, record in enumerate(self._violations):
                if record.id == violation_id:
                    resolved = replace(record, resolved=True, resolved_at=self.now())
                    self._violations[index] = resolved
                    return resolved
        return None

    def log_recovery(
        self,
        kind: str,
        operation: str,
        success: bool,
        details: Optional[Mapping[str, Any]] = None,
    ) -> RecoveryRecord:
        record = RecoveryRecord(
            kind=kind,
            operation=operation,
            success=success,
            timestamp=self.now(),
            details=_frozen(details),
        )
        with self._lock:
            self._recoveries.append(record)
            self._counters["total_recoveries"] += 1
            if not success:
                self._counters["failed_recoveries"] += 1
        log = logger.info if success else logger.warning
        log("Recovery %s for %s: %s", kind, operation, "succeeded" if success else "failed")
        self._publish("recovery", record.to_payload())
        return record

    def _on_recovery_event(self, event: RecoveryEvent) -> None:
        self.log_recovery(event.kind, event.operation, event.success, event.details)

    # Read model

    def recent_violation_count(self, window_seconds: int = RECENT_VIOLATION_WINDOW_SECONDS) -> int:
        cutoff = self.now() - timedelta(seconds=window_seconds)
        with self._lock:
            return sum(1 for record in self._violations if record.timestamp >= cutoff)

    def get_violations_by_type(self, hours: int = 24) -> Dict[str, int]:
        cutoff = self.now() - timedelta(hours=hours)
        counts: Dict[str, int] = {}
        with self._lock:
            for record in self._violations:
                if record.timestamp >= cutoff:
                    counts[record.entity_type] = counts.get(record.entity_type, 0) + 1
        return counts

    def get_counters(self) -> Dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
        total = counters["total_recoveries"]
        successful = total - counters["failed_recoveries"]
        rate = round(successful / total * 100, 2) if total else 100.0
        return {**counters, "recovery_success_rate": rate}

    def transitions(self) -> List[TransitionRecord]:
        with self._lock:
            return list(self._transitions)

    def violations(self) -> List[ViolationRecord]:
        with self._lock:
            return list(self._violations)

    def recoveries(self) -> List[RecoveryRecord]:
        with self._lock:
            return list(self._recoveries)

    def get_dashboard_snapshot(self) -> Dict[str, Any]:
        with self._lock:
            violations = list(self._violations[-DASHBOARD_RECENT_LIMIT:])
            recoveries = list(self._recoveries[-DASHBOARD_RECENT_LIMIT:])
        health = self.last_health
        return {
            "generated_at": self.now().isoformat(),
            "health": health.to_payload() if health else None,
            "metrics": self.get_counters(),
            "recent_violations": [record.to_payload() for record in reversed(violations)],
            "recent_recoveries": [record.to_payload() for record in reversed(recoveries)],
            "violations_by_type": self.get_violations_by_type(),
            "queues": self.recovery.get_queue_status() if self.recovery else None,
            "recent_alerts": [alert.to_payload() for alert in self.alert_manager.recent_alerts()],
        }

    # Health

    @BaseService.measure_operation("run_health_check")
    def run_health_check(self) -> HealthReport:
        checks: List[HealthCheckResult] = []

        if self.session_store is not None and self.recovery is not None:
            checks.append(self.recovery.check_storage_health(self.session_store))
        if self.recovery is not None:
            checks.append(self.recovery.check_notification_health())
        if self.consistency_scanner is not None:
            checks.append(self._check_state_consistency())
        if self.recovery is not None:
            depth = self.recovery.total_queue_depth()
            checks.append(
                HealthCheckResult(
                    "queue_depth",
                    depth < settings.health_queue_depth_limit,
                    {"depth": depth, "limit": settings.health_queue_depth_limit},
                )
            )
        recent = self.recent_violation_count()
        checks.append(
            HealthCheckResult(
                "recent_violations",
                recent < settings.health_recent_violation_limit,
                {"count": recent, "limit": settings.health_recent_violation_limit},
            )
        )

        failing = sum(1 for check in checks if not check.healthy)
        report = HealthReport(
            status=rate_health(failing), checks=tuple(checks), checked_at=self.now()
        )
        self.last_health = report
        for check in checks:
            prometheus_metrics.set_health_check(check.name, check.healthy)

        if report.status != HealthState.HEALTHY:
            logger.warning("Health check %s: failing %s", report.status.value, report.failing)
        if report.status == HealthState.UNHEALTHY:
            self.alert_manager.send_alert(
                "system_unhealthy",
                f"System health unhealthy: {', '.join(report.failing)}",
                Severity.CRITICAL,
                {"failing_checks": report.failing},
            )
        self._publish("health", report.to_payload())
        return report

    def _check_state_consistency(self) -> HealthCheckResult:
        scanner = self.consistency_scanner
        assert scanner is not None
        try:
            issues = list(scanner())
        except Exception as exc:
            logger.warning("State consistency scan failed: %s", exc)
            return HealthCheckResult("state_consistency", False, {"error": str(exc)})
        self._record_consistency_issues(issues)
        sessions = sorted({str(getattr(issue, "session_id", "")) for issue in issues})
        return HealthCheckResult(
            "state_consistency", not issues, {"issues": len(issues), "sessions": sessions}
        )

    def _record_consistency_issues(self, issues: Sequence[Any]) -> None:
        """
        Record each newly found data-integrity anomaly as a violation.

        An issue is reported once while it persists across scans. Once a scan
        no longer finds it, a later recurrence is reported again.
        """
        current = {(str(issue.session_id), str(issue.code)): issue for issue in issues}
        with self._lock:
            new_keys = [key for key in current if key not in self._reported_issues]
            self._reported_issues = set(current)

        for key in new_keys:
            issue = current[key]
            self.log_violation(
                entity_type=EntityType.SESSION.value,
                reason=issue.message,
                severity=CONSISTENCY_SEVERITIES.get(issue.code, Severity.LOW),
                entity_id=issue.session_id,
                actor="consistency_scan",
                details={"code": issue.code, "source": "state_consistency"},
            )

    # Retention

    def prune(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Drop entries older than the retention window."""
        cutoff = (now or self.now()) - self.retention
        with self._lock:
            before = (len(self._transitions), len(self._violations), len(self._recoveries))
            self._transitions = [r for r in self._transitions if r.timestamp >= cutoff]
            self._violations = [r for r in self._violations if r.timestamp >= cutoff]
            self._recoveries = [r for r in self._recoveries if r.timestamp >= cutoff]
            removed = {
                "transitions": before[0] - len(self._transitions),
                "violations": before[1] - len(self._violations),
                "recoveries": before[2] - len(self._recoveries),
            }
        if any(removed.values()):
            logger.info("Pruned monitor entries older than %s: %s", cutoff.isoformat(), removed)
        return removed
