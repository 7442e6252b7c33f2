# backend/app/services/edge_case_handler.py
"""
Edge Case Handler for the session flow.

Resolves the situations a bare transition check cannot:

- Late joins (duration shortened by the lateness, refused past the threshold)
- Overtime (free grace window, then billed extension pending approval)
- Mid-session cancellation with a tiered partial refund
- Booking races: availability conflict check, alternative slots, booking locks
- Payments arriving after a session was cancelled
- Deletion requests against active or upcoming paid sessions
- Data consistency checks for the monitor
- Page refresh while a payment is in flight

Every operation returns an ``EdgeCaseDecision`` instead of raising for an
expected business condition, so callers can explain the outcome. Only
infrastructure errors propagate, and storage writes go through system
failure recovery when it is wired in.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..constants.flow_states import SESSION_CANCELLED_STATES, SESSION_NON_BLOCKING_STATES
from ..core.booking_lock import BookingLockManager, BookingLockResult
from ..core.clock import Clock, ensure_utc, minutes_between
from ..core.config import settings
from ..core.constants import (
    ALTERNATIVE_SLOT_FIRST_HOUR,
    ALTERNATIVE_SLOT_LAST_HOUR,
    ALTERNATIVE_SLOT_SEARCH_DAYS,
    DEFAULT_MAX_ALTERNATIVES,
    MID_SESSION_REFUND_TIERS,
)
from ..core.enums import EntityType, PaymentStatus, SessionStatus
from ..core.exceptions import DomainException
from ..models.therapy_session import TherapySession
from ..repositories.session_repository import SessionStore
from .base import BaseService
from .notification_provider import NotificationMessage
from .system_failure_recovery import SystemFailureRecoveryService
from .transition_validator import TransitionValidator

logger = logging.getLogger(__name__)

SAVE_SESSION = "save_session"


@dataclass(frozen=True)
class EdgeCaseDecision:
    """Structured outcome: whether the action may proceed, why, and what to do next."""

    allowed: bool
    status: str
    message: str = ""
    session_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    recommendations: Tuple[str, ...] = ()
    persisted: Optional[str] = None  # completed | queued when the session was written

    def to_payload(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "status": self.status,
            "message": self.message,
            "session_id": self.session_id,
            "recommendations": list(self.recommendations),
            "persisted": self.persisted,
            **self.data,
        }


@dataclass(frozen=True)
class ConsistencyIssue:
    session_id: str
    code: str
    message: str

    def to_payload(self) -> Dict[str, str]:
        return {"session_id": self.session_id, "code": self.code, "message": self.message}


def refund_percentage_for(completion_percentage: int) -> int:
    """Tiered mid-session refund; a boundary value belongs to the lower refund."""
    for upper_bound, refund in MID_SESSION_REFUND_TIERS:
        if completion_percentage < upper_bound:
            return refund
    return 0


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _overlaps(start: datetime, end: datetime, other_start: datetime, other_end: datetime) -> bool:
    return other_start < end and other_end > start


def _not_found(session_id: str) -> EdgeCaseDecision:
    return EdgeCaseDecision(
        allowed=False,
        status="not_found",
        message="Session not found",
        session_id=session_id,
    )


class EdgeCaseHandler(BaseService):
    """Non-happy-path session handling on top of the transition validator."""

    def __init__(
        self,
        store: SessionStore,
        clock: Optional[Clock] = None,
        validator: Optional[TransitionValidator] = None,
        lock_manager: Optional[BookingLockManager] = None,
        recovery: Optional[SystemFailureRecoveryService] = None,
        monitor: Any = None,
    ) -> None:
        super().__init__(clock)
        self.store = store
        self.validator = validator or TransitionValidator()
        self.lock_manager = lock_manager or BookingLockManager(clock=self.clock)
        self.recovery = recovery
        self.monitor = monitor

    # Helpers

    def _persist(self, session: TherapySession) -> str:
        """Save through recovery when available. Returns completed or queued."""
        session.updated_at = self.now()
        if self.recovery is None:
            self.store.save(session)
            return "completed"
        outcome = self.recovery.execute_with_storage_failover(
            SAVE_SESSION, lambda: self.store.save(session), {"session": session.to_dict()}
        )
        return outcome.status

    def _notify(self, recipient: Optional[str], event_type: str, payload: Dict[str, Any]) -> None:
        if self.recovery is None:
            return
        self.recovery.send_notification(NotificationMessage(recipient, event_type, payload))

    def _apply_session_transition(
        self, session: TherapySession, new_status: str, actor: str
    ) -> Optional[EdgeCaseDecision]:
        """Validate and apply a status change; returns a refusal decision on violation."""
        previous = session.status
        try:
            self.validator.check(
                EntityType.SESSION, previous, new_status, session.state_context()
            )
        except DomainException as exc:
            if self.monitor is not None:
                self.monitor.log_rejection(exc, entity_id=session.id, actor=actor)
            return EdgeCaseDecision(
                allowed=False,
                status="invalid_transition",
                message=exc.message,
                session_id=session.id,
                data={"code": exc.code},
            )
        session.status = new_status
        session.status_changed_at = self.now()
        return None

    def _log_transition(self, session: TherapySession, previous: str, actor: str) -> None:
        if self.monitor is not None:
            self.monitor.log_transition(
                EntityType.SESSION.value, session.id, previous, session.status, actor
            )

    # Session edge cases

    @BaseService.measure_operation("handle_late_join")
    def handle_late_join(self, session_id: str, participant: str = "client") -> EdgeCaseDecision:
        session = self.store.find_by_id(session_id)
        if session is None:
            return _not_found(session_id)

        now = self.now()
        minutes_late = minutes_between(session.scheduled_start, now)
        if minutes_late <= 0:
            return EdgeCaseDecision(
                allowed=True,
                status="on_time",
                session_id=session.id,
                data={"minutes_early": abs(minutes_late)},
            )

        threshold = settings.late_join_threshold_minutes
        if minutes_late > threshold:
            return EdgeCaseDecision(
                allowed=False,
                status="too_late",
                message=f"Session join window expired ({threshold} min limit)",
                session_id=session.id,
                data={"minutes_late": minutes_late},
                recommendations=("reschedule", "contact_support"),
            )

        adjusted = max(0, int(session.duration_minutes) - minutes_late)
        session.adjusted_duration_minutes = adjusted
        session.late_join_minutes = minutes_late
        session.late_join_by = participant
        session.actual_start = session.actual_start or now
        persisted = self._persist(session)
        logger.info(
            "Late join for session %s: %d minutes late, duration adjusted to %d",
            session.id,
            minutes_late,
            adjusted,
            extra={"participant": participant},
        )
        return EdgeCaseDecision(
            allowed=True,
            status="late_join",
            message=(
                f"Session started {minutes_late} minutes late. "
                f"Duration adjusted to {adjusted} minutes."
            ),
            session_id=session.id,
            data={
                "minutes_late": minutes_late,
                "adjusted_duration": adjusted,
                "late_join_by": participant,
                "billing_adjusted": True,
            },
            persisted=persisted,
        )

    @BaseService.measure_operation("handle_overtime")
    def handle_overtime(
        self,
        session_id: str,
        requested_extension_minutes: Optional[int] = None,
        requested_by: str = "therapist",
    ) -> EdgeCaseDecision:
        """
        Evaluate time past the scheduled end.

        Within the grace window the overtime is free. Beyond it, the extension
        (requested minutes, or the overtime so far) is billed per minute and
        held as pending until the counterpart approves it.
        """
        session = self.store.find_by_id(session_id)
        if session is None:
            return _not_found(session_id)

        start = ensure_utc(session.actual_start or session.scheduled_start)
        scheduled_end = start + timedelta(minutes=session.effective_duration_minutes)
        overtime = max(0, minutes_between(scheduled_end, self.now()))
        grace = settings.overtime_grace_minutes

        if overtime <= grace:
            return EdgeCaseDecision(
                allowed=True,
                status="within_grace",
                session_id=session.id,
                data={"overtime_minutes": overtime, "no_extra_charge": True},
            )

        extension = requested_extension_minutes or overtime
        if session.session_rate:
            rate = session.session_rate / 60
        else:
            rate = settings.overtime_default_rate_per_minute
        charge = math.ceil(extension * rate)

        session.overtime_minutes = extension
        session.overtime_charge = charge
        session.overtime_approval_pending = True
        session.overtime_requested_at = self.now()
        persisted = self._persist(session)

        counterpart = session.client_id if requested_by == "therapist" else session.therapist_id
        self._notify(
            counterpart,
            "session.overtime_requested",
            {"session_id": session.id, "minutes": extension, "charge": charge},
        )
        return EdgeCaseDecision(
            allowed=True,
            status="overtime_pending_approval",
            message=(
                f"Overtime of {extension} minutes requires approval. "
                f"Additional charge: {charge}"
            ),
            session_id=session.id,
            data={
                "overtime_minutes": extension,
                "overtime_charge": charge,
                "requires_approval": True,
            },
            persisted=persisted,
        )

    @BaseService.measure_operation("approve_overtime")
    def approve_overtime(
        self, session_id: str, approved: bool = True, approved_by: str = "client"
    ) -> EdgeCaseDecision:
        session = self.store.find_by_id(session_id)
        if session is None:
            return _not_found(session_id)
        if not session.overtime_approval_pending:
            return EdgeCaseDecision(
                allowed=False,
                status="no_pending_overtime",
                message="No overtime request is awaiting approval",
                session_id=session.id,
            )

        session.overtime_approval_pending = False
        if approved:
            session.overtime_approved_at = self.now()
            session.annotate(overtime_approved_by=approved_by)
        else:
            session.overtime_minutes = 0
            session.overtime_charge = 0
            session.annotate(overtime_declined_by=approved_by)
        persisted = self._persist(session)
        return EdgeCaseDecision(
            allowed=approved,
            status="overtime_approved" if approved else "overtime_declined",
            session_id=session.id,
            data={
                "overtime_minutes": session.overtime_minutes,
                "overtime_charge": session.overtime_charge,
            },
            persisted=persisted,
        )

    @BaseService.measure_operation("handle_mid_session_cancellation")
    def handle_mid_session_cancellation(
        self, session_id: str, cancelled_by: str, reason: Optional[str] = None
    ) -> EdgeCaseDecision:
        session = self.store.find_by_id(session_id)
        if session is None:
            return _not_found(session_id)
        if session.status != SessionStatus.IN_PROGRESS.value:
            return EdgeCaseDecision(
                allowed=False,
                status="not_in_progress",
                message="Session is not in progress",
                session_id=session.id,
                data={"session_status": session.status},
            )

        now = self.now()
        start = session.actual_start or session.scheduled_start
        elapsed = max(0, minutes_between(start, now))
        duration = session.effective_duration_minutes or 1
        completion = min(100, round_half_up(elapsed / duration * 100))
        refund_pct = refund_percentage_for(completion)
        refund_amount = round_half_up((session.price or 0) * refund_pct / 100)

        previous = session.status
        refusal = self._apply_session_transition(
            session, SessionStatus.CANCELLED_DURING_SESSION.value, cancelled_by
        )
        if refusal is not None:
            return refusal

        session.cancelled_at = now
        session.cancelled_by = cancelled_by
        session.cancellation_reason = reason
        session.actual_end = now
        session.elapsed_minutes_at_cancellation = elapsed
        session.completion_percentage = completion
        session.partial_refund_percentage = refund_pct
        session.refund_amount = refund_amount
        session.refund_required = refund_amount > 0
        persisted = self._persist(session)
        self._log_transition(session, previous, cancelled_by)

        return EdgeCaseDecision(
            allowed=True,
            status=SessionStatus.CANCELLED_DURING_SESSION.value,
            message=(
                f"Session cancelled after {elapsed} minutes. "
                f"{refund_pct}% refund ({refund_amount}) will be processed."
            ),
            session_id=session.id,
            data={
                "elapsed_minutes": elapsed,
                "completion_percentage": completion,
                "refund_percentage": refund_pct,
                "refund_amount": refund_amount,
            },
            persisted=persisted,
        )

    # Booking races

    def _blocking_sessions(
        self, therapist_id: str, exclude_session_id: Optional[str] = None
    ) -> List[TherapySession]:
        return [
            s
            for s in self.store.find(therapist_id=therapist_id)
            if s.status not in SESSION_NON_BLOCKING_STATES and s.id != exclude_session_id
        ]

    @staticmethod
    def _conflicts(
        sessions: Sequence[TherapySession], start: datetime, duration_minutes: int
    ) -> List[TherapySession]:
        start = ensure_utc(start)
        end = start + timedelta(minutes=duration_minutes)
        return [
            s
            for s in sessions
            if _overlaps(start, end, ensure_utc(s.scheduled_start), s.scheduled_end)
        ]

    @BaseService.measure_operation("check_availability_conflict")
    def check_availability_conflict(
        self,
        therapist_id: str,
        start: datetime,
        duration_minutes: int,
        exclude_session_id: Optional[str] = None,
        max_alternatives: int = DEFAULT_MAX_ALTERNATIVES,
    ) -> EdgeCaseDecision:
        """Detect overlap with the therapist's active sessions; propose alternatives on conflict."""
        sessions = self._blocking_sessions(therapist_id, exclude_session_id)
        conflicts = self._conflicts(sessions, start, duration_minutes)
        if not conflicts:
            return EdgeCaseDecision(allowed=True, status="available", data={"has_conflict": False})

        alternatives = self._alternative_slots(sessions, start, duration_minutes, max_alternatives)
        logger.info(
            "Availability conflict for therapist %s at %s (%d overlapping)",
            therapist_id,
            ensure_utc(start).isoformat(),
            len(conflicts),
        )
        return EdgeCaseDecision(
            allowed=False,
            status="slot_conflict",
            message="The requested time overlaps an existing session",
            data={
                "has_conflict": True,
                "conflicting_sessions": [
                    {
                        "id": s.id,
                        "start": ensure_utc(s.scheduled_start).isoformat(),
                        "duration_minutes": s.duration_minutes,
                    }
                    for s in conflicts
                ],
                "alternatives": [
                    {"start": slot.isoformat(), "duration_minutes": duration_minutes}
                    for slot in alternatives
                ],
            },
            recommendations=("choose_alternative_slot",),
        )

    def find_alternative_slots(
        self,
        therapist_id: str,
        preferred_start: datetime,
        duration_minutes: int,
        max_alternatives: int = DEFAULT_MAX_ALTERNATIVES,
    ) -> List[datetime]:
        sessions = self._blocking_sessions(therapist_id)
        return self._alternative_slots(
            sessions, preferred_start, duration_minutes, max_alternatives
        )

    def _alternative_slots(
        self,
        sessions: Sequence[TherapySession],
        preferred_start: datetime,
        duration_minutes: int,
        max_alternatives: int,
    ) -> List[datetime]:
        """On-the-hour slots over the following days, future and conflict-free only."""
        now = self.now()
        base = ensure_utc(preferred_start).replace(hour=0, minute=0, second=0, microsecond=0)
        slots: List[datetime] = []
        for day_offset in range(ALTERNATIVE_SLOT_SEARCH_DAYS):
            day = base + timedelta(days=day_offset)
            for hour in range(ALTERNATIVE_SLOT_FIRST_HOUR, ALTERNATIVE_SLOT_LAST_HOUR + 1):
                if len(slots) >= max_alternatives:
                    return slots
                slot = day.replace(hour=hour)
                if slot <= now:
                    continue
                if not self._conflicts(sessions, slot, duration_minutes):
                    slots.append(slot)
        return slots

    def acquire_booking_lock(self, therapist_id: str, slot_start: datetime) -> BookingLockResult:
        return self.lock_manager.acquire(therapist_id, slot_start)

    def release_booking_lock(self, lock_key: str, token: Optional[str] = None) -> bool:
        return self.lock_manager.release(lock_key, token)

    # Payments

    @BaseService.measure_operation("handle_payment_after_cancellation")
    def handle_payment_after_cancellation(
        self,
        session_id: str,
        payment_reference: Optional[str] = None,
        amount: Optional[int] = None,
    ) -> EdgeCaseDecision:
        """
        Handle a payment notification for a session that may already be cancelled.

        A cancelled session is never moved out of its terminal state: the payment
        is recorded as late, a refund is flagged and priority rebooking offered.
        """
        session = self.store.find_by_id(session_id)
        if session is None:
            return EdgeCaseDecision(
                allowed=False,
                status="refund",
                message="Session not found",
                session_id=session_id,
                data={"refund_required": True, "refund_amount": amount},
            )

        if session.status not in SESSION_CANCELLED_STATES:
            return EdgeCaseDecision(allowed=True, status="process_normally", session_id=session.id)

        session.late_payment_received = True
        session.late_payment_received_at = self.now()
        session.late_payment_reference = payment_reference
        session.refund_required = True
        session.rebooking_priority = True
        session.annotate(refund_reason="Payment received after session cancellation")
        persisted = self._persist(session)
        logger.warning(
            "Late payment received for cancelled session %s",
            session.id,
            extra={"session_status": session.status, "payment_reference": payment_reference},
        )
        self._notify(
            session.client_id,
            "payment.late_received",
            {"session_id": session.id, "refund_amount": amount, "offer_rebooking": True},
        )
        return EdgeCaseDecision(
            allowed=False,
            status="refund",
            message=(
                "Payment received for cancelled session. Refund will be processed "
                "and priority rebooking offered."
            ),
            session_id=session.id,
            data={
                "refund_required": True,
                "refund_amount": amount,
                "offer_rebooking": True,
                "session_status": session.status,
            },
            recommendations=("refund", "offer_priority_rebooking"),
            persisted=persisted,
        )

    @BaseService.measure_operation("handle_page_refresh_during_payment")
    def handle_page_refresh_during_payment(self, session_id: str) -> EdgeCaseDecision:
        session = self.store.find_by_id(session_id)
        if session is None:
            return _not_found(session_id)

        if session.payment_status == PaymentStatus.CONFIRMED.value:
            return EdgeCaseDecision(
                allowed=True,
                status="payment_complete",
                message="Payment already confirmed",
                session_id=session.id,
            )

        if session.payment_status == PaymentStatus.SUBMITTED.value:
            submitted_at = session.payment_status_changed_at or session.updated_at
            window = timedelta(minutes=settings.payment_resume_window_minutes)
            if submitted_at is not None and self.now() - ensure_utc(submitted_at) < window:
                return EdgeCaseDecision(
                    allowed=False,
                    status="payment_pending",
                    message="Payment processing. Please wait.",
                    session_id=session.id,
                    data={"can_retry": False, "check_again_in": 30},
                )
            return EdgeCaseDecision(
                allowed=True,
                status="payment_timeout",
                message="Payment timed out. You may retry.",
                session_id=session.id,
                data={"can_retry": True},
            )

        return EdgeCaseDecision(
            allowed=True,
            status="ready_for_payment",
            message="Ready to initiate payment",
            session_id=session.id,
        )

    # Data integrity

    def check_deletion_allowed(self, session_id: str) -> EdgeCaseDecision:
        session = self.store.find_by_id(session_id)
        if session is None:
            return EdgeCaseDecision(
                allowed=True, status="not_found", message="Session not found", session_id=session_id
            )

        if session.status == SessionStatus.IN_PROGRESS.value:
            return EdgeCaseDecision(
                allowed=False,
                status="blocked_active_session",
                message="Cannot delete data during active session",
                session_id=session.id,
                data={"session_status": session.status},
                recommendations=("wait_for_completion", "cancel_session"),
            )
        if session.status in (SessionStatus.READY.value, SessionStatus.PAID.value):
            return EdgeCaseDecision(
                allowed=False,
                status="blocked_upcoming_paid_session",
                message="Cannot delete data with upcoming paid session",
                session_id=session.id,
                data={"session_status": session.status},
                recommendations=("cancel_and_refund",),
            )
        return EdgeCaseDecision(
            allowed=True,
            status="deletion_allowed",
            session_id=session.id,
            data={"session_status": session.status},
        )

    def validate_consistency(self, session_id: str) -> EdgeCaseDecision:
        """Read-only check of one session; findings are reported, never auto-corrected."""
        session = self.store.find_by_id(session_id)
        if session is None:
            return EdgeCaseDecision(
                allowed=False,
                status="not_found",
                message="Session not found",
                session_id=session_id,
                data={"valid": False, "errors": ["Session not found"]},
            )
        issues = consistency_issues(session)
        return EdgeCaseDecision(
            allowed=not issues,
            status="consistent" if not issues else "inconsistent",
            session_id=session.id,
            data={"valid": not issues, "errors": [issue.message for issue in issues]},
        )

    def scan_consistency(self) -> List[ConsistencyIssue]:
        """Check every stored session. Used by the monitor's health check."""
        issues: List[ConsistencyIssue] = []
        for session in self.store.find():
            issues.extend(consistency_issues(session))
        return issues


def consistency_issues(session: TherapySession) -> List[ConsistencyIssue]:
    issues: List[ConsistencyIssue] = []

    def _add(code: str, message: str) -> None:
        issues.append(ConsistencyIssue(session.id, code, message))

    if not session.client_id:
        _add("client_missing", "Client reference missing")
    if not session.therapist_id:
        _add("therapist_missing", "Therapist reference missing")
    if (
        session.payment_status == PaymentStatus.CONFIRMED.value
        and session.status == SessionStatus.CANCELLED.value
    ):
        _add("paid_but_cancelled", "Inconsistent state: Payment confirmed but session cancelled")
    if session.status == SessionStatus.COMPLETED.value and not (
        session.actual_end or session.call_ended_at
    ):
        _add("completed_without_end", "Completed session missing end time")
    if (
        session.status == SessionStatus.IN_PROGRESS.value
        and session.payment_status != PaymentStatus.CONFIRMED.value
        and not session.payment_waived
    ):
        _add("in_progress_unpaid", "Session in progress without confirmed payment")
    if (
        session.call_started_at
        and session.call_ended_at
        and ensure_utc(session.call_ended_at) < ensure_utc(session.call_started_at)
    ):
        _add("call_end_before_start", "Video call end time precedes start time")
    return issues
