"""
Unit tests for the Flow Integrity Monitor.

Coverage:
1) Transition, violation and recovery records
2) Alerts on critical violations and violation bursts
3) Health rating (healthy / degraded / unhealthy)
4) Retention pruning and the dashboard read model
"""

from datetime import timedelta

import pytest

from app.core.enums import HealthState, Severity
from app.core.exceptions import InvalidTransition, PreconditionNotMet, StorageUnavailableError
from app.repositories.session_repository import InMemorySessionStore
from app.services.alerting import AlertManager
from app.services.edge_case_handler import ConsistencyIssue
from app.services.flow_integrity_monitor import FlowIntegrityMonitor, rate_health
from app.services.system_failure_recovery import SystemFailureRecoveryService


@pytest.fixture
def alerts(clock):
    return AlertManager(clock, cooldown_seconds=300, failure_threshold=3)


@pytest.fixture
def recovery(clock, alerts, fast_retry, sender, sleeps):
    return SystemFailureRecoveryService(
        clock=clock,
        retry_policy=fast_retry,
        alert_manager=alerts,
        notification_sender=sender,
        sleep=sleeps.append,
    )


@pytest.fixture
def issues():
    return []


@pytest.fixture
def monitor(clock, alerts, recovery, issues):
    return FlowIntegrityMonitor(
        clock=clock,
        alert_manager=alerts,
        recovery=recovery,
        session_store=InMemorySessionStore(),
        consistency_scanner=lambda: issues,
    )


def _alert_types(alerts):
    return [alert.alert_type for alert in alerts.recent_alerts()]


class TestTransitions:
    def test_records_transition(self, monitor, clock):
        record = monitor.log_transition("session", "S1", "ready", "in_progress", "therapist-1")

        assert record.timestamp == clock.now()
        assert record.id.startswith("trans_")
        assert monitor.get_counters()["total_transitions"] == 1
        assert monitor.transitions() == [record]

    def test_same_state_is_not_recorded(self, monitor):
        assert monitor.log_transition("session", "S1", "ready", "ready") is None
        assert monitor.get_counters()["total_transitions"] == 0

    def test_records_are_immutable(self, monitor):
        record = monitor.log_transition("payment", "S1", "pending", "submitted", metadata={"a": 1})

        with pytest.raises(TypeError):
            record.metadata["a"] = 2
        with pytest.raises(AttributeError):
            record.new_state = "confirmed"


class TestViolations:
    def test_critical_violation_alerts_immediately(self, monitor, alerts):
        monitor.log_violation("session", "paid without payment", Severity.CRITICAL, "S1")

        assert _alert_types(alerts) == ["critical_violation"]

    def test_burst_of_violations_alerts(self, monitor, alerts):
        for _ in range(3):
            monitor.log_violation("session", "forbidden transition", Severity.MEDIUM)

        assert _alert_types(alerts) == ["violation_threshold"]
        assert monitor.recent_violation_count() == 3

    def test_old_violations_leave_the_window(self, monitor, clock):
        monitor.log_violation("video", "x")
        clock.advance(hours=2)

        assert monitor.recent_violation_count() == 0
        assert monitor.get_violations_by_type(hours=24) == {"video": 1}
        assert monitor.get_violations_by_type(hours=1) == {}

    def test_log_rejection_from_precondition_failure(self, monitor):
        exc = PreconditionNotMet("session", "ready", "in_progress", ["payment_confirmed"])

        record = monitor.log_rejection(exc, entity_id="S1", actor="client-1")

        assert record.severity == "critical"
        assert record.entity_type == "session"
        assert record.attempted_transition == "ready -> in_progress"
        assert record.details["code"] == "PRECONDITION_NOT_MET"

    def test_resolve_replaces_record(self, monitor, clock):
        original = monitor.log_rejection(InvalidTransition("session", "completed", "ready"))
        clock.advance(minutes=5)

        resolved = monitor.resolve_violation(original.id)

        assert resolved.resolved is True
        assert resolved.resolved_at == clock.now()
        assert original.resolved is False
        assert monitor.violations() == [resolved]
        assert monitor.resolve_violation("viol_missing") is None


class TestRecoveries:
    def test_recovery_events_are_recorded(self, monitor, recovery):
        recovery.register_operation("save_session", lambda payload: None)

        def down():
            raise StorageUnavailableError("down")

        recovery.execute_with_storage_failover("save_session", down, {})
        recovery.drain_operation_queue()

        records = monitor.recoveries()
        assert [(r.kind, r.success) for r in records] == [("queue_completed", True)]

    def test_success_rate(self, monitor):
        assert monitor.get_counters()["recovery_success_rate"] == 100.0

        monitor.log_recovery("retry", "save_session", True)
        monitor.log_recovery("queue_failed", "save_session", False)

        counters = monitor.get_counters()
        assert counters["total_recoveries"] == 2
        assert counters["failed_recoveries"] == 1
        assert counters["recovery_success_rate"] == 50.0


class TestHealth:
    @pytest.mark.parametrize(
        "failing, expected",
        [(0, HealthState.HEALTHY), (1, HealthState.DEGRADED), (2, HealthState.UNHEALTHY)],
    )
    def test_rate_health(self, failing, expected):
        assert rate_health(failing) == expected

    def test_all_checks_pass(self, monitor):
        report = monitor.run_health_check()

        assert report.status == HealthState.HEALTHY
        assert {check.name for check in report.checks} == {
            "storage",
            "notification_channel",
            "state_consistency",
            "queue_depth",
            "recent_violations",
        }
        assert monitor.last_health is report

    def test_one_failing_check_is_degraded(self, monitor, issues):
        issues.append(ConsistencyIssue("S1", "client_missing", "Client reference missing"))

        report = monitor.run_health_check()

        assert report.status == HealthState.DEGRADED
        assert report.failing == ["state_consistency"]
        assert report.to_payload()["checks"]["state_consistency"]["details"]["sessions"] == ["S1"]

    def test_two_failing_checks_are_unhealthy_and_alert(self, monitor, issues, alerts):
        issues.append(ConsistencyIssue("S1", "client_missing", "Client reference missing"))
        monitor.session_store.set_available(False)

        report = monitor.run_health_check()

        assert report.status == HealthState.UNHEALTHY
        assert "system_unhealthy" in _alert_types(alerts)

    def test_scanner_failure_counts_as_failing(self, clock, alerts, recovery):
        def broken_scan():
            raise RuntimeError("scan crashed")

        monitor = FlowIntegrityMonitor(
            clock=clock, alert_manager=alerts, recovery=recovery, consistency_scanner=broken_scan
        )

        report = monitor.run_health_check()

        assert report.failing == ["state_consistency"]

    def test_consistency_issues_are_recorded_once_as_violations(self, monitor, issues, alerts):
        issues.append(
            ConsistencyIssue(
                "S1",
                "paid_but_cancelled",
                "Inconsistent state: Payment confirmed but session cancelled",
            )
        )
        issues.append(
            ConsistencyIssue("S2", "completed_without_end", "Completed session missing end time")
        )

        monitor.run_health_check()
        monitor.run_health_check()

        violations = monitor.violations()
        assert [(v.entity_id, v.severity) for v in violations] == [
            ("S1", "critical"),
            ("S2", "medium"),
        ]
        assert violations[0].details["code"] == "paid_but_cancelled"
        assert monitor.get_violations_by_type() == {"session": 2}
        assert "critical_violation" in _alert_types(alerts)

    def test_cleared_issue_is_reported_again_when_it_recurs(self, monitor, issues):
        issue = ConsistencyIssue("S1", "in_progress_unpaid", "Session in progress without payment")
        issues.append(issue)
        monitor.run_health_check()
        issues.clear()
        monitor.run_health_check()
        issues.append(issue)

        monitor.run_health_check()

        assert [v.severity for v in monitor.violations()] == ["high", "high"]


class TestRetentionAndDashboard:
    def test_prune_drops_entries_past_retention(self, monitor, clock):
        monitor.log_transition("session", "S1", "requested", "approved")
        monitor.log_violation("session", "x")
        clock.advance(hours=73)
        monitor.log_transition("session", "S2", "requested", "approved")

        removed = monitor.prune()

        assert removed == {"transitions": 1, "violations": 1, "recoveries": 0}
        assert [r.entity_id for r in monitor.transitions()] == ["S2"]

    def test_dashboard_snapshot(self, monitor, clock):
        monitor.log_violation("payment", "first")
        clock.advance(seconds=1)
        monitor.log_violation("payment", "second")
        monitor.run_health_check()

        snapshot = monitor.get_dashboard_snapshot()

        assert [v["reason"] for v in snapshot["recent_violations"]] == ["second", "first"]
        assert snapshot["violations_by_type"] == {"payment": 2}
        assert snapshot["health"]["status"] == "healthy"
        assert snapshot["queues"]["total_pending"] == 0
        assert snapshot["metrics"]["total_violations"] == 2

    def test_subscribers_receive_events(self, monitor):
        received = []

        def broken(event):
            raise RuntimeError("socket closed")

        monitor.subscribe(broken)
        unsubscribe = monitor.subscribe(received.append)

        monitor.log_transition("video", "S1", "not_started", "waiting_for_participants")
        unsubscribe()
        monitor.log_transition("video", "S1", "waiting_for_participants", "active")

        assert [event.kind for event in received] == ["transition"]

    def test_alerts_are_broadcast(self, monitor, alerts):
        received = []
        monitor.subscribe(received.append)

        alerts.send_alert("storage_failure", "db down")

        assert [event.kind for event in received] == ["alert"]
        assert received[0].payload["type"] == "storage_failure"

    def test_retention_defaults_to_settings(self, monitor):
        assert monitor.retention == timedelta(hours=72)
