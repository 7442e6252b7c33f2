"""
Unit tests for transition_validator.py.

Coverage:
1) State table lookups (valid, no-op, terminal, unknown values)
2) Session lifecycle: happy path, cancellation, terminal states, determinism
3) Cross-entity preconditions, only when a context is supplied
4) Payment/session/video sync rules
5) Enforcement levels applied by TransitionValidator
6) Violation severity
"""

import pytest

from app.constants.flow_states import (
    SESSION_ACTIVE_STATES,
    SESSION_TERMINAL_STATES,
    STATE_TABLES,
    allowed_transitions,
    is_terminal,
)
from app.core.enums import EntityType, SessionStatus, Severity
from app.core.exceptions import (
    InvalidStateValue,
    InvalidTransition,
    PreconditionNotMet,
    StateSyncViolation,
    ValidationException,
)
from app.core.integrity_config import IntegrityConfig
from app.services.transition_validator import (
    TransitionValidator,
    validate_cross_state_sync,
    validate_transition,
    violation_severity,
)


class TestStateTables:
    def test_every_target_is_a_known_state(self):
        for entity, table in STATE_TABLES.items():
            for state, targets in table.items():
                assert targets <= set(table), f"{entity}.{state} points outside its table"

    def test_session_terminal_states(self):
        assert SESSION_TERMINAL_STATES == {
            "completed",
            "cancelled",
            "auto_cancelled",
            "cancelled_during_session",
            "no_show_client",
            "no_show_therapist",
            "declined",
        }

    def test_allowed_transitions_for_unknown_state_is_empty(self):
        assert allowed_transitions("session", "bogus") == frozenset()
        assert is_terminal(EntityType.PAYMENT, "refunded") is True
        assert is_terminal("payment", "confirmed") is False


class TestValidateTransition:
    def test_allowed_transition(self):
        result = validate_transition("session", "requested", "approved")

        assert result.valid is True
        assert result.no_op is False
        assert result.transition == "requested -> approved"

    def test_accepts_enum_members(self):
        result = validate_transition(
            EntityType.SESSION, SessionStatus.READY, SessionStatus.IN_PROGRESS
        )
        assert result.entity_type == "session"
        assert result.new_state == "in_progress"

    def test_same_state_is_a_no_op(self):
        result = validate_transition("payment", "pending", "pending")

        assert result.valid is True
        assert result.no_op is True

    def test_terminal_state_cannot_move(self):
        with pytest.raises(InvalidTransition) as exc_info:
            validate_transition("session", "completed", "in_progress")

        exc = exc_info.value
        assert exc.allowed == []
        assert exc.message == (
            "Forbidden session transition: completed -> in_progress. Allowed transitions: []"
        )
        assert exc.code == "INVALID_TRANSITION"

    def test_skipping_states_is_forbidden(self):
        with pytest.raises(InvalidTransition) as exc_info:
            validate_transition("session", "requested", "paid")

        assert exc_info.value.allowed == sorted(
            ["approved", "declined", "cancelled", "auto_cancelled"]
        )

    def test_unknown_current_state(self):
        with pytest.raises(InvalidStateValue) as exc_info:
            validate_transition("video", "buffering", "active")

        assert exc_info.value.which == "current"
        assert exc_info.value.value == "buffering"

    def test_unknown_new_state(self):
        with pytest.raises(InvalidStateValue) as exc_info:
            validate_transition("payment", "pending", "settled")

        assert exc_info.value.which == "new"

    def test_unknown_entity_type(self):
        with pytest.raises(ValidationException) as exc_info:
            validate_transition("invoice", "draft", "sent")

        assert exc_info.value.code == "UNKNOWN_ENTITY_TYPE"

    def test_no_op_is_checked_after_state_membership(self):
        with pytest.raises(InvalidStateValue):
            validate_transition("session", "bogus", "bogus")


HAPPY_PATH = [
    "requested",
    "approved",
    "payment_pending",
    "paid",
    "ready",
    "in_progress",
    "completed",
]


class TestSessionLifecycle:
    def test_happy_path_is_accepted_in_order(self):
        context = {"payment_status": "confirmed", "forms_complete": True}

        for current, new in zip(HAPPY_PATH, HAPPY_PATH[1:]):
            result = validate_transition("session", current, new, context)
            assert result.valid is True
            assert result.no_op is False

    def test_approved_cannot_jump_to_ready(self):
        with pytest.raises(InvalidTransition) as exc_info:
            validate_transition("session", "approved", "ready")

        assert "ready" not in exc_info.value.allowed

    @pytest.mark.parametrize("state", sorted(SESSION_ACTIVE_STATES))
    def test_cancellation_is_accepted_from_every_active_state(self, state):
        assert validate_transition("session", state, "cancelled").valid is True

    @pytest.mark.parametrize(
        "entity,state,target",
        [
            (entity, state, target)
            for entity, table in STATE_TABLES.items()
            for state, allowed in table.items()
            if not allowed
            for target in table
            if target != state
        ],
    )
    def test_terminal_states_reject_every_other_target(self, entity, state, target):
        with pytest.raises(InvalidTransition):
            validate_transition(entity, state, target)

    @pytest.mark.parametrize(
        "entity,state,target",
        [
            (entity, state, target)
            for entity, table in STATE_TABLES.items()
            for state in table
            for target in table
        ],
    )
    def test_repeated_calls_give_the_same_answer(self, entity, state, target):
        def outcome():
            try:
                return validate_transition(entity, state, target)
            except InvalidTransition as exc:
                return (exc.code, exc.message)

        assert outcome() == outcome()


class TestPreconditions:
    def test_paid_requires_confirmed_payment(self):
        with pytest.raises(PreconditionNotMet) as exc_info:
            validate_transition(
                "session", "payment_pending", "paid", {"payment_status": "submitted"}
            )

        assert exc_info.value.failed == ["payment_confirmed"]
        assert exc_info.value.code == "PRECONDITION_NOT_MET"

    def test_waived_payment_satisfies_payment_precondition(self):
        result = validate_transition(
            "session",
            "payment_pending",
            "paid",
            {"payment_status": "pending", "payment_waived": True},
        )
        assert result.valid is True

    def test_preconditions_skipped_without_context(self):
        assert validate_transition("session", "payment_pending", "paid").valid is True

    def test_ready_requires_payment_and_forms(self):
        with pytest.raises(PreconditionNotMet) as exc_info:
            validate_transition(
                "session",
                "paid",
                "ready",
                {"payment_status": "pending", "forms_complete": False},
            )

        assert exc_info.value.failed == ["payment_confirmed", "forms_complete"]

    def test_ready_with_confirmed_payment_and_forms(self):
        result = validate_transition(
            "session",
            "forms_required",
            "ready",
            {"payment_status": "confirmed", "forms_complete": True},
        )
        assert result.valid is True

    def test_video_activation_requires_joinable_session(self):
        with pytest.raises(PreconditionNotMet) as exc_info:
            validate_transition(
                "video",
                "waiting_for_participants",
                "active",
                {"session_status": "approved", "forms_complete": True},
            )

        assert exc_info.value.failed == ["session_joinable"]

    def test_video_activation_for_ready_session(self):
        result = validate_transition(
            "video",
            "waiting_for_participants",
            "active",
            {"session_status": "ready", "forms_complete": True},
        )
        assert result.valid is True


class TestCrossStateSync:
    def test_confirmed_payment_with_paid_session(self):
        result = validate_cross_state_sync("confirmed", "paid")

        assert result.valid is True
        assert result.required_actions == ()

    def test_failed_payment_requires_client_retry(self):
        result = validate_cross_state_sync("failed", "payment_pending")

        assert result.required_actions == ("alert_client_retry",)

    def test_submitted_payment_with_paid_session_is_a_violation(self):
        with pytest.raises(StateSyncViolation) as exc_info:
            validate_cross_state_sync("submitted", "paid")

        assert exc_info.value.details["pair"] == "Payment-session"
        assert exc_info.value.details["allowed"] == ["payment_pending"]

    def test_completed_session_with_active_call_is_a_violation(self):
        with pytest.raises(StateSyncViolation) as exc_info:
            validate_cross_state_sync("confirmed", "completed", "active")

        assert exc_info.value.details["pair"] == "Session-video"

    def test_unknown_payment_state(self):
        with pytest.raises(InvalidStateValue):
            validate_cross_state_sync("settled", "paid")


class TestEnforcementLevels:
    def test_strict_blocks_and_counts(self):
        config = IntegrityConfig("strict")
        validator = TransitionValidator(config)

        with pytest.raises(InvalidTransition):
            validator.check("session", "completed", "ready")

        assert config.stats.total_checks == 1
        assert config.stats.transitions_blocked == 1

    def test_warn_allows_with_warning(self):
        config = IntegrityConfig("warn")
        validator = TransitionValidator(config)

        result = validator.check("session", "completed", "ready")

        assert result.valid is True
        assert result.enforcement_level == "warn"
        assert "Forbidden session transition" in result.warning
        assert config.stats.warnings_issued == 1

    def test_off_skips_checks(self):
        config = IntegrityConfig("off")
        validator = TransitionValidator(config)

        result = validator.check("session", "completed", "ready")

        assert result.valid is True
        assert result.warning == "Validation skipped - enforcement disabled"
        assert config.stats.checks_skipped == 1
        assert config.stats.total_checks == 0

    @pytest.mark.parametrize("level", ["strict", "warn", "off"])
    def test_unknown_new_state_is_rejected_at_every_level(self, level):
        config = IntegrityConfig(level)

        with pytest.raises(InvalidStateValue) as exc_info:
            TransitionValidator(config).check("session", "requested", "bogus_state")

        assert exc_info.value.which == "new"
        assert config.stats.warnings_issued == 0
        assert config.stats.checks_skipped == 0

    @pytest.mark.parametrize("level", ["warn", "off"])
    def test_unknown_current_state_is_rejected_when_relaxed(self, level):
        with pytest.raises(InvalidStateValue) as exc_info:
            TransitionValidator(IntegrityConfig(level)).check("payment", "settled", "refunded")

        assert exc_info.value.which == "current"

    def test_unknown_entity_type_is_rejected_when_off(self):
        with pytest.raises(ValidationException) as exc_info:
            TransitionValidator(IntegrityConfig("off")).check("invoice", "draft", "sent")

        assert exc_info.value.code == "UNKNOWN_ENTITY_TYPE"

    def test_valid_transition_reports_level(self):
        validator = TransitionValidator(IntegrityConfig("strict"))

        result = validator.check("payment", "pending", "submitted")

        assert result.enforcement_level == "strict"
        assert result.warning is None


class TestViolationSeverity:
    def test_missing_payment_is_critical(self):
        exc = PreconditionNotMet("session", "ready", "in_progress", ["payment_confirmed"])
        assert violation_severity(exc) == Severity.CRITICAL

    def test_missing_forms_is_high(self):
        exc = PreconditionNotMet("session", "paid", "ready", ["forms_complete"])
        assert violation_severity(exc) == Severity.HIGH

    def test_unknown_state_is_low(self):
        assert violation_severity(InvalidStateValue("session", "new", "x")) == Severity.LOW

    def test_forbidden_transition_is_medium(self):
        exc = InvalidTransition("session", "completed", "ready")
        assert violation_severity(exc) == Severity.MEDIUM
