"""
Unit tests for SessionFlowService.

Coverage:
1) Applied transitions: timestamps, side effects, monitor records, notifications
2) Rejected transitions propagate and are recorded as violations
3) Same-state requests are no-ops
4) Storage outage during the write queues it for replay; stale replays are refused
5) Enforcement levels and the intake forms capability
"""

from datetime import timedelta

import pytest

from app.core.enums import EntityType, PaymentStatus, SessionStatus, VideoCallStatus
from app.core.exceptions import (
    InvalidStateValue,
    InvalidTransition,
    NotFoundException,
    NotificationTemporaryError,
    PreconditionNotMet,
    StorageUnavailableError,
)
from app.services.intake_forms import SessionFlagFormsChecker
from tests.helpers.flow import CLIENT_ID, START, THERAPIST_ID, build_session


@pytest.fixture
def flow(engine):
    return engine.flow


class TestAppliedTransitions:
    def test_approve_request(self, flow, engine, make_session, session_store, sender, clock):
        session = make_session()
        clock.advance(minutes=5)

        outcome = flow.transition(session.id, SessionStatus.APPROVED, actor=THERAPIST_ID)

        assert outcome.persisted.status == "completed"
        stored = session_store.find_by_id(session.id)
        assert stored.status == SessionStatus.APPROVED.value
        assert stored.status_changed_at == clock.now()
        record = engine.monitor.transitions()[-1]
        assert (record.previous_state, record.new_state, record.actor) == (
            "requested",
            "approved",
            THERAPIST_ID,
        )
        assert sender.event_types() == ["session.status_changed"] * 2
        assert [m.recipient for m in sender.sent] == [CLIENT_ID, THERAPIST_ID]

    def test_starting_a_paid_session_sets_actual_start(self, flow, make_session, clock):
        session = make_session(
            status=SessionStatus.READY.value, payment_status=PaymentStatus.CONFIRMED.value
        )

        outcome = flow.transition(session.id, SessionStatus.IN_PROGRESS)

        assert outcome.session.actual_start == clock.now()

    def test_completion_sets_actual_end(self, flow, make_session, clock):
        session = make_session(
            status=SessionStatus.IN_PROGRESS.value,
            payment_status=PaymentStatus.CONFIRMED.value,
            actual_start=START,
        )
        clock.advance(minutes=60)

        outcome = flow.transition(session.id, SessionStatus.COMPLETED)

        assert outcome.session.actual_end == START + timedelta(minutes=60)

    def test_cancellation_records_who_cancelled(self, flow, make_session, clock):
        session = make_session(status=SessionStatus.APPROVED.value)

        outcome = flow.transition(
            session.id, SessionStatus.CANCELLED, actor=CLIENT_ID, metadata={"reason": "ill"}
        )

        assert outcome.session.cancelled_at == clock.now()
        assert outcome.session.cancelled_by == CLIENT_ID
        assert outcome.session.flow_metadata == {"reason": "ill"}

    def test_video_call_timestamps(self, flow, make_session, session_store, clock):
        session = make_session(
            status=SessionStatus.READY.value,
            payment_status=PaymentStatus.CONFIRMED.value,
            video_status=VideoCallStatus.WAITING_FOR_PARTICIPANTS.value,
        )

        flow.transition(session.id, VideoCallStatus.ACTIVE, entity_type=EntityType.VIDEO)
        clock.advance(minutes=50)
        flow.transition(session.id, VideoCallStatus.ENDED, entity_type="video")

        stored = session_store.find_by_id(session.id)
        assert stored.call_started_at == START
        assert stored.call_ended_at == START + timedelta(minutes=50)
        assert stored.call_duration_minutes == 50
        assert stored.video_status_changed_at == clock.now()

    def test_refund_clears_refund_flag(self, flow, make_session, sender):
        session = make_session(
            status=SessionStatus.CANCELLED_DURING_SESSION.value,
            payment_status=PaymentStatus.CONFIRMED.value,
            refund_required=True,
        )

        outcome = flow.transition(session.id, PaymentStatus.REFUNDED, entity_type="payment")

        assert outcome.session.payment_status == PaymentStatus.REFUNDED.value
        assert outcome.session.refund_required is False
        assert sender.event_types()[0] == "payment.status_changed"

    def test_notification_failure_does_not_fail_the_transition(
        self, flow, make_session, sender, engine
    ):
        session = make_session()
        sender.error = NotificationTemporaryError("provider down")

        outcome = flow.transition(session.id, SessionStatus.APPROVED, notify=True)

        assert outcome.persisted.status == "completed"
        assert outcome.notification.status == "queued"
        assert engine.recovery.notification_queue.get_status().pending == 2

    def test_notify_false_sends_nothing(self, flow, make_session, sender):
        session = make_session()

        outcome = flow.transition(session.id, SessionStatus.APPROVED, notify=False)

        assert outcome.notification is None
        assert sender.sent == []


class TestRejectedTransitions:
    def test_paid_requires_confirmed_payment(self, flow, engine, make_session, session_store):
        session = make_session(status=SessionStatus.PAYMENT_PENDING.value)

        with pytest.raises(PreconditionNotMet) as exc_info:
            flow.transition(session.id, SessionStatus.PAID, actor=CLIENT_ID)

        assert exc_info.value.failed == ["payment_confirmed"]
        assert session_store.find_by_id(session.id).status == SessionStatus.PAYMENT_PENDING.value
        violation = engine.monitor.violations()[-1]
        assert violation.severity == "critical"
        assert violation.entity_id == session.id

    def test_waived_payment_satisfies_the_precondition(self, flow, make_session):
        session = make_session(status=SessionStatus.PAYMENT_PENDING.value, payment_waived=True)

        outcome = flow.transition(session.id, SessionStatus.PAID)

        assert outcome.session.status == SessionStatus.PAID.value

    def test_terminal_state_cannot_be_left(self, flow, engine, make_session):
        session = make_session(status=SessionStatus.COMPLETED.value)

        with pytest.raises(InvalidTransition):
            flow.transition(session.id, SessionStatus.READY)

        assert engine.monitor.violations()[-1].attempted_transition == "completed -> ready"

    def test_unknown_state_value(self, flow, make_session):
        session = make_session()

        with pytest.raises(InvalidStateValue):
            flow.transition(session.id, "teleported")

    def test_missing_session(self, flow):
        with pytest.raises(NotFoundException) as exc_info:
            flow.transition("missing", SessionStatus.APPROVED)

        assert exc_info.value.code == "SESSION_NOT_FOUND"

    def test_incomplete_forms_block_ready(self, engine, make_session):
        engine.flow.forms_checker = SessionFlagFormsChecker()
        session = make_session(
            status=SessionStatus.PAID.value, payment_status=PaymentStatus.CONFIRMED.value
        )

        with pytest.raises(PreconditionNotMet) as exc_info:
            engine.flow.transition(session.id, SessionStatus.READY)

        assert exc_info.value.failed == ["forms_complete"]

    def test_warn_mode_lets_the_transition_through(self, flow, engine, make_session):
        engine.integrity_config.set_enforcement_level(
            "warn", "incident", "admin", {"is_admin": True}
        )
        session = make_session(status=SessionStatus.COMPLETED.value)

        outcome = flow.transition(session.id, SessionStatus.READY)

        assert outcome.session.status == SessionStatus.READY.value
        assert outcome.result.warning.startswith("Forbidden session transition")
        assert engine.monitor.transitions()[-1].metadata["warning"] == outcome.result.warning
        assert engine.integrity_config.get_stats()["stats"]["warnings_issued"] == 1
        violation = engine.monitor.violations()[-1]
        assert violation.severity == "low"
        assert violation.attempted_transition == "completed -> ready"
        assert violation.details["enforcement"] == "warn"

    def test_off_mode_records_no_violation(self, flow, engine, make_session):
        engine.integrity_config.emergency_disable("incident")
        session = make_session(status=SessionStatus.COMPLETED.value)

        outcome = flow.transition(session.id, SessionStatus.READY)

        assert outcome.session.status == SessionStatus.READY.value
        assert engine.monitor.violations() == []

    @pytest.mark.parametrize("level", ["warn", "off"])
    def test_unknown_state_is_never_persisted(
        self, flow, engine, make_session, session_store, level
    ):
        engine.integrity_config.set_enforcement_level(
            level, "incident", "admin", {"is_admin": True}
        )
        session = make_session()

        with pytest.raises(InvalidStateValue):
            flow.transition(session.id, "bogus_state")

        assert session_store.find_by_id(session.id).status == SessionStatus.REQUESTED.value
        assert engine.monitor.transitions() == []


class TestNoOpAndOutage:
    def test_same_state_is_a_no_op(self, flow, engine, make_session, session_store, sender):
        session = make_session()
        saves = session_store.save_count

        outcome = flow.transition(session.id, SessionStatus.REQUESTED)

        assert outcome.result.no_op is True
        assert outcome.persisted.status == "completed"
        assert session_store.save_count == saves
        assert engine.monitor.transitions() == []
        assert sender.sent == []

    def test_write_during_outage_is_queued_and_replayed(
        self, flow, engine, make_session, session_store, monkeypatch
    ):
        session = make_session()

        def unavailable(_session):
            raise StorageUnavailableError("db down")

        monkeypatch.setattr(session_store, "save", unavailable)
        outcome = flow.transition(session.id, SessionStatus.APPROVED)
        monkeypatch.undo()

        assert outcome.persisted.status == "queued"
        assert session_store.find_by_id(session.id).status == SessionStatus.REQUESTED.value

        result = engine.recovery.drain_operation_queue()

        assert result.succeeded == 1
        assert session_store.find_by_id(session.id).status == SessionStatus.APPROVED.value

    def _approve_during_outage(self, flow, session, session_store, monkeypatch):
        def unavailable(_session):
            raise StorageUnavailableError("db down")

        monkeypatch.setattr(session_store, "save", unavailable)
        outcome = flow.transition(session.id, SessionStatus.APPROVED)
        monkeypatch.undo()
        assert outcome.persisted.status == "queued"

    def test_replay_never_reopens_a_terminal_session(
        self, flow, engine, make_session, session_store, monkeypatch
    ):
        session = make_session()
        self._approve_during_outage(flow, session, session_store, monkeypatch)
        flow.transition(session.id, SessionStatus.CANCELLED, actor=CLIENT_ID)

        result = engine.recovery.drain_operation_queue()

        assert result.failed == 1
        assert session_store.find_by_id(session.id).status == SessionStatus.CANCELLED.value
        assert len(engine.recovery.operation_queue.failed_items()) == 1
        violation = engine.monitor.violations()[-1]
        assert violation.attempted_transition == "cancelled -> approved"
        assert violation.details["code"] == "INVALID_TRANSITION"

    def test_replay_of_a_superseded_snapshot_is_refused(
        self, flow, engine, make_session, session_store, monkeypatch, clock
    ):
        session = make_session()
        self._approve_during_outage(flow, session, session_store, monkeypatch)
        clock.advance(minutes=1)
        flow.transition(session.id, SessionStatus.DECLINED, actor=THERAPIST_ID)

        result = engine.recovery.drain_operation_queue()

        assert result.failed == 1
        assert session_store.find_by_id(session.id).status == SessionStatus.DECLINED.value
        assert engine.monitor.violations()[-1].details["code"] == "STALE_QUEUED_WRITE"

    def test_create_session(self, flow, session_store, clock):
        session = build_session(created_at=None)

        outcome = flow.create_session(session, actor=CLIENT_ID)

        assert outcome.status == "completed"
        stored = session_store.find_by_id(session.id)
        assert stored.created_at == clock.now()
        assert stored.status_changed_at == clock.now()

    def test_context_includes_forms_checker(self, flow, make_session):
        session = make_session(forms_complete=False)

        context = flow.build_context(session)

        assert context["forms_complete"] is True
        assert context["payment_status"] == PaymentStatus.PENDING.value
