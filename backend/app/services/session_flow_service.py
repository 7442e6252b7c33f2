# backend/app/services/session_flow_service.py
"""
Session Flow Service

Orchestrates a status change for a session, or for its payment or video
sub-state:

1. Load the session from the entity store
2. Validate the transition with context derived from the session
3. Apply it with the status-changed timestamp
4. Save through storage failover (retry, then queue)
5. Record the transition, or the violation, with the monitor
6. Notify both participants, queueing the notification on failure

Validation errors propagate to the caller unchanged after being recorded.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Dict, Optional

from ..core.clock import Clock, ensure_utc
from ..core.enums import (
    EnforcementLevel,
    EntityType,
    PaymentStatus,
    SessionStatus,
    Severity,
    VideoCallStatus,
)
from ..core.exceptions import ConflictException, DomainException, NotFoundException
from ..models.therapy_session import TherapySession
from ..repositories.session_repository import SessionStore
from .base import BaseService
from .edge_case_handler import SAVE_SESSION
from .flow_integrity_monitor import FlowIntegrityMonitor
from .intake_forms import AlwaysCompleteFormsChecker, FormsCompletionChecker
from .notification_provider import NotificationMessage
from .system_failure_recovery import RecoveryOutcome, SystemFailureRecoveryService
from .transition_validator import TransitionResult, TransitionValidator, validate_transition

logger = logging.getLogger(__name__)

QUEUE_REPLAY_ACTOR = "operation_queue"

# entity type -> (status attribute, status-changed attribute)
_STATUS_FIELDS: Dict[str, tuple[str, str]] = {
    EntityType.SESSION.value: ("status", "status_changed_at"),
    EntityType.PAYMENT.value: ("payment_status", "payment_status_changed_at"),
    EntityType.VIDEO.value: ("video_status", "video_status_changed_at"),
}


@dataclass(frozen=True)
class TransitionOutcome:
    session: TherapySession
    result: TransitionResult
    persisted: RecoveryOutcome
    notification: Optional[RecoveryOutcome] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "session_id": self.session.id,
            "transition": self.result.to_payload(),
            "persisted": self.persisted.to_payload(),
            "notification": self.notification.to_payload() if self.notification else None,
        }


class SessionFlowService(BaseService):
    """Validated, recorded and persisted state changes for sessions."""

    def __init__(
        self,
        store: SessionStore,
        recovery: SystemFailureRecoveryService,
        monitor: FlowIntegrityMonitor,
        validator: Optional[TransitionValidator] = None,
        forms_checker: Optional[FormsCompletionChecker] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        super().__init__(clock or recovery.clock)
        self.store = store
        self.recovery = recovery
        self.monitor = monitor
        self.validator = validator or TransitionValidator()
        self.forms_checker = forms_checker or AlwaysCompleteFormsChecker()

    def _load(self, session_id: str) -> TherapySession:
        session = self.store.find_by_id(session_id)
        if session is None:
            raise NotFoundException(
                f"Session {session_id} not found",
                code="SESSION_NOT_FOUND",
                details={"session_id": session_id},
            )
        return session

    def build_context(self, session: TherapySession) -> Dict[str, Any]:
        context = session.state_context()
        context["forms_complete"] = bool(
            session.forms_complete or self.forms_checker.is_complete(session)
        )
        return context

    @BaseService.measure_operation("transition_session")
    def transition(
        self,
        session_id: str,
        new_state: Any,
        entity_type: EntityType | str = EntityType.SESSION,
        actor: str = "system",
        metadata: Optional[Dict[str, Any]] = None,
        notify: bool = True,
    ) -> TransitionOutcome:
        """
        Move a session (or its payment or video sub-state) to ``new_state``.

        Raises:
            NotFoundException: session does not exist
            InvalidStateValue, InvalidTransition, PreconditionNotMet: the
                transition was rejected (also recorded as a violation)
        """
        entity = str(getattr(entity_type, "value", entity_type))
        status_field, changed_field = _STATUS_FIELDS[entity]
        target = str(getattr(new_state, "value", new_state))

        session = self._load(session_id)
        previous = getattr(session, status_field)

        try:
            result = self.validator.check(entity, previous, target, self.build_context(session))
        except DomainException as exc:
            self.monitor.log_rejection(exc, entity_id=session.id, actor=actor)
            raise

        if result.no_op:
            return TransitionOutcome(
                session=session,
                result=result,
                persisted=RecoveryOutcome(status="completed", operation=SAVE_SESSION),
            )

        now = self.now()
        setattr(session, status_field, target)
        setattr(session, changed_field, now)
        self._apply_side_effects(session, entity, target, actor)
        if metadata:
            session.annotate(**metadata)
        session.updated_at = now

        persisted = self.recovery.execute_with_storage_failover(
            SAVE_SESSION, lambda: self.store.save(session), {"session": session.to_dict()}
        )
        log_metadata: Dict[str, Any] = {"persisted": persisted.status}
        if result.warning:
            log_metadata["warning"] = result.warning
            self._record_relaxed_violation(entity, session.id, previous, target, actor, result)
        self.monitor.log_transition(entity, session.id, previous, target, actor, log_metadata)

        notification = None
        if notify:
            notification = self._notify_participants(session, entity, previous, target)
        return TransitionOutcome(
            session=session, result=result, persisted=persisted, notification=notification
        )

    def _record_relaxed_violation(
        self,
        entity: str,
        session_id: str,
        previous: str,
        target: str,
        actor: str,
        result: TransitionResult,
    ) -> None:
        """A violation let through by warn mode still counts as a violation."""
        if result.enforcement_level != EnforcementLevel.WARN.value:
            return
        self.monitor.log_violation(
            entity_type=entity,
            reason=result.warning or "",
            severity=Severity.LOW,
            entity_id=session_id,
            current_state=previous,
            attempted_state=target,
            actor=actor,
            details={"enforcement": EnforcementLevel.WARN.value},
        )

    def _apply_side_effects(
        self, session: TherapySession, entity: str, target: str, actor: str
    ) -> None:
        now = self.now()
        if entity == EntityType.SESSION.value:
            if target == SessionStatus.IN_PROGRESS.value and session.actual_start is None:
                session.actual_start = now
            elif target == SessionStatus.COMPLETED.value:
                session.actual_end = session.actual_end or now
            elif target in (SessionStatus.CANCELLED.value, SessionStatus.AUTO_CANCELLED.value):
                session.cancelled_at = now
                session.cancelled_by = actor
        elif entity == EntityType.VIDEO.value:
            if target == VideoCallStatus.ACTIVE.value and session.call_started_at is None:
                session.call_started_at = now
            elif target == VideoCallStatus.ENDED.value and session.call_started_at is not None:
                session.call_ended_at = now
        elif entity == EntityType.PAYMENT.value and target == PaymentStatus.REFUNDED.value:
            session.refund_required = False

    def _notify_participants(
        self, session: TherapySession, entity: str, previous: str, target: str
    ) -> RecoveryOutcome:
        payload = {
            "session_id": session.id,
            "entity_type": entity,
            "previous_state": previous,
            "new_state": target,
        }
        event_type = f"{entity}.status_changed"
        outcome = self.recovery.send_notification(
            NotificationMessage(session.client_id, event_type, payload)
        )
        if session.therapist_id:
            self.recovery.send_notification(
                NotificationMessage(session.therapist_id, event_type, payload)
            )
        return outcome

    def replay_save(self, payload: Dict[str, Any]) -> Optional[TherapySession]:
        """
        Write back a session snapshot queued during a storage outage.

        The snapshot only lands if it is still a legal successor of the stored
        row. A row changed after the snapshot was taken, or a state the table
        does not allow from the stored one, is recorded as a violation and the
        replay is refused so the queue moves it to the failed list.
        """
        snapshot = TherapySession.from_dict(payload["session"])
        stored = self.store.find_by_id(snapshot.id)
        if stored is None:
            return self.store.save(snapshot)

        for entity, (status_field, changed_field) in _STATUS_FIELDS.items():
            stored_changed = getattr(stored, changed_field)
            snapshot_changed = getattr(snapshot, changed_field)
            if (
                stored_changed is not None
                and snapshot_changed is not None
                and ensure_utc(stored_changed) > ensure_utc(snapshot_changed)
            ):
                exc = ConflictException(
                    f"Queued write for session {snapshot.id} is older than the stored "
                    f"{entity} state",
                    code="STALE_QUEUED_WRITE",
                    details={
                        "entity_type": entity,
                        "current_state": getattr(stored, status_field),
                        "new_state": getattr(snapshot, status_field),
                    },
                )
                self.monitor.log_rejection(exc, entity_id=snapshot.id, actor=QUEUE_REPLAY_ACTOR)
                raise exc

        for entity, (status_field, _) in _STATUS_FIELDS.items():
            current = getattr(stored, status_field)
            target = getattr(snapshot, status_field)
            if current is None or target is None or current == target:
                continue
            try:
                validate_transition(entity, current, target)
            except DomainException as exc:
                self.monitor.log_rejection(exc, entity_id=snapshot.id, actor=QUEUE_REPLAY_ACTOR)
                raise

        return self.store.save(snapshot)

    def create_session(self, session: TherapySession, actor: str = "system") -> RecoveryOutcome:
        """Persist a newly requested session through storage failover."""
        now = self.now()
        session.created_at = session.created_at or now
        session.status_changed_at = session.status_changed_at or now
        session.updated_at = now
        outcome = self.recovery.execute_with_storage_failover(
            SAVE_SESSION, lambda: self.store.save(session), {"session": session.to_dict()}
        )
        logger.info(
            "Session %s requested for %s",
            session.id,
            session.scheduled_start,
            extra={"actor": actor, "persisted": outcome.status},
        )
        return outcome
