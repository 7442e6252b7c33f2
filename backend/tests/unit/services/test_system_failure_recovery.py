"""
Unit tests for system failure recovery.

Coverage:
1) Storage failover: retry, then queue on transient failure
2) Non-transient storage errors propagate
3) Notification delivery with retry, queueing and permanent rejection
4) Queue replay and recovery events
5) Health checks
"""

import pytest

from app.core.exceptions import (
    NotificationPermanentError,
    NotificationTemporaryError,
    RepositoryException,
    StorageUnavailableError,
)
from app.repositories.session_repository import InMemorySessionStore
from app.services.alerting import AlertManager
from app.services.notification_provider import NotificationMessage
from app.services.system_failure_recovery import SystemFailureRecoveryService


@pytest.fixture
def recovery(clock, fast_retry, sender, sleeps):
    return SystemFailureRecoveryService(
        clock=clock,
        retry_policy=fast_retry,
        alert_manager=AlertManager(clock, cooldown_seconds=300, failure_threshold=2),
        notification_sender=sender,
        sleep=sleeps.append,
    )


@pytest.fixture
def events(recovery):
    received = []
    recovery.add_listener(received.append)
    return received


def _always(error):
    def _operation():
        raise error

    return _operation


class TestStorageFailover:
    def test_successful_write_completes(self, recovery, sleeps):
        outcome = recovery.execute_with_storage_failover("save_session", lambda: "saved", {})

        assert outcome.status == "completed"
        assert outcome.result == "saved"
        assert sleeps == []

    def test_persistent_outage_queues_the_write(self, recovery, sleeps):
        outcome = recovery.execute_with_storage_failover(
            "save_session", _always(StorageUnavailableError("db down")), {"session": {"id": "S1"}}
        )

        assert outcome.status == "queued"
        assert outcome.queued is True
        assert outcome.error == "db down"
        assert sleeps == [1.0, 2.0]
        pending = recovery.operation_queue.pending_items()
        assert [item.id for item in pending] == [outcome.queued_item_id]
        assert pending[0].payload == {"session": {"id": "S1"}}
        assert recovery.alert_manager.consecutive_failures("storage") == 1

    def test_non_transient_error_propagates(self, recovery):
        with pytest.raises(RepositoryException):
            recovery.execute_with_storage_failover(
                "save_session", _always(RepositoryException("constraint violated")), {}
            )

        assert recovery.operation_queue.pending_items() == []

    def test_retry_that_succeeds_emits_event(self, recovery, events):
        calls = {"n": 0}

        def flaky():
            calls["n"] += 1
            if calls["n"] == 1:
                raise StorageUnavailableError("blip")
            return "saved"

        outcome = recovery.execute_with_storage_failover("save_session", flaky, {})

        assert outcome.status == "completed"
        assert [(e.kind, e.success, e.details["attempts"]) for e in events] == [
            ("retry", True, 2)
        ]

    def test_queued_write_is_replayed_on_drain(self, recovery, events):
        replayed = []
        recovery.register_operation("save_session", replayed.append)
        recovery.execute_with_storage_failover(
            "save_session", _always(StorageUnavailableError("db down")), {"session": {"id": "S1"}}
        )

        result = recovery.drain_operation_queue()

        assert result.succeeded == 1
        assert replayed == [{"session": {"id": "S1"}}]
        assert events[-1].kind == "queue_completed"
        assert events[-1].success is True
        assert recovery.alert_manager.consecutive_failures("storage") == 0


class TestNotifications:
    def _message(self, recipient="client-1"):
        return NotificationMessage(recipient, "session.status_changed", {"session_id": "S1"})

    def test_delivered(self, recovery, sender):
        outcome = recovery.send_notification(self._message())

        assert outcome.status == "completed"
        assert sender.event_types() == ["session.status_changed"]

    def test_transient_failure_is_queued_then_delivered(self, recovery, sender):
        sender.error = NotificationTemporaryError("provider timeout")

        outcome = recovery.send_notification(self._message())

        assert outcome.status == "queued"
        assert sender.calls == 3
        assert recovery.notification_queue.get_status().pending == 1

        sender.error = None
        result = recovery.drain_notification_queue()

        assert result.succeeded == 1
        assert [message.recipient for message in sender.sent] == ["client-1"]

    def test_idempotency_key_survives_the_queue(self, recovery, sender):
        sender.error = NotificationTemporaryError("provider timeout")
        message = self._message()
        recovery.send_notification(message)

        sender.error = None
        recovery.drain_notification_queue()

        assert sender.sent[0].idempotency_key == message.idempotency_key

    def test_permanent_rejection_is_not_queued(self, recovery, sender, events):
        sender.error = NotificationPermanentError("invalid address")

        outcome = recovery.send_notification(self._message())

        assert outcome.status == "failed"
        assert sender.calls == 1
        assert recovery.notification_queue.get_status().pending == 0
        assert events[-1].kind == "notification_rejected"

    def test_repeated_failures_raise_an_alert(self, recovery, sender):
        alerts = []
        recovery.alert_manager.subscribe(alerts.append)
        sender.error = NotificationTemporaryError("provider timeout")

        recovery.send_notification(self._message())
        recovery.send_notification(self._message())

        assert [alert.alert_type for alert in alerts] == ["notification_failure"]


class TestQueueStatusAndHealth:
    def test_queue_status_totals(self, recovery, sender):
        sender.error = NotificationTemporaryError("provider timeout")
        recovery.send_notification(NotificationMessage("c", "x", {}))
        recovery.execute_with_storage_failover(
            "save_session", _always(StorageUnavailableError("db down")), {}
        )

        status = recovery.get_queue_status()

        assert status["total_pending"] == 2
        assert status["storage"]["pending"] == 1
        assert status["notification"]["pending"] == 1
        assert recovery.total_queue_depth() == 2

    def test_storage_health(self, recovery):
        store = InMemorySessionStore()
        assert recovery.check_storage_health(store).healthy is True

        store.set_available(False)
        result = recovery.check_storage_health(store)

        assert result.healthy is False
        assert result.details["error"] == "Session store unavailable"

    def test_notification_health_tracks_consecutive_failures(self, recovery, sender):
        sender.error = NotificationTemporaryError("provider timeout")
        recovery.send_notification(NotificationMessage("c", "x", {}))
        assert recovery.check_notification_health().healthy is True

        recovery.send_notification(NotificationMessage("c", "x", {}))

        result = recovery.check_notification_health()
        assert result.healthy is False
        assert result.details == {"consecutive_failures": 2}
