# backend/app/services/transition_validator.py
"""
Transition validation for sessions, payments and video calls.

``validate_transition`` is a pure function: it consults the static state
tables and, for transitions that declare a precondition, the supplied
cross-entity context. It performs no I/O and records nothing; callers
report outcomes to the FlowIntegrityMonitor.

``TransitionValidator`` wraps the pure check with the enforcement kill
switch (strict / warn / off).
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from ..constants.flow_states import (
    FORMS_COMPLETE,
    JOINABLE_SESSION_STATES,
    PAYMENT_CONFIRMED,
    PAYMENT_SESSION_SYNC,
    PAYMENT_SYNC_ACTIONS,
    PRECONDITION_INDEX,
    SESSION_JOINABLE,
    SESSION_VIDEO_SYNC,
    STATE_TABLES,
)
from ..core.enums import EnforcementLevel, EntityType, PaymentStatus, Severity
from ..core.exceptions import (
    DomainException,
    InvalidStateValue,
    InvalidTransition,
    PreconditionNotMet,
    StateSyncViolation,
    ValidationException,
)
from ..core.integrity_config import IntegrityConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionResult:
    valid: bool
    entity_type: str
    current_state: str
    new_state: str
    no_op: bool = False
    required_actions: Tuple[str, ...] = ()
    enforcement_level: str = EnforcementLevel.STRICT.value
    warning: Optional[str] = None

    @property
    def transition(self) -> str:
        return f"{self.current_state} -> {self.new_state}"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "entity_type": self.entity_type,
            "transition": self.transition,
            "no_op": self.no_op,
            "required_actions": list(self.required_actions),
            "enforcement_level": self.enforcement_level,
            "warning": self.warning,
        }


@dataclass(frozen=True)
class SyncResult:
    valid: bool
    required_actions: Tuple[str, ...] = field(default_factory=tuple)


def _value(state: Any) -> str:
    return str(getattr(state, "value", state))


def _precondition_failures(requires: Tuple[str, ...], context: Mapping[str, Any]) -> list[str]:
    failed: list[str] = []
    for name in requires:
        if name == PAYMENT_CONFIRMED:
            waived = context.get("payment_waived") is True
            confirmed = _value(context.get("payment_status")) == PaymentStatus.CONFIRMED.value
            if not (waived or confirmed):
                failed.append(PAYMENT_CONFIRMED)
        elif name == FORMS_COMPLETE:
            if context.get("forms_complete") is not True:
                failed.append(FORMS_COMPLETE)
        elif name == SESSION_JOINABLE:
            if _value(context.get("session_status")) not in JOINABLE_SESSION_STATES:
                failed.append(SESSION_JOINABLE)
        else:
            failed.append(name)
    return failed


def _state_table(entity: str, current: str, new: str) -> Mapping[str, FrozenSet[str]]:
    """The entity's state table, once both states are known members of it."""
    table = STATE_TABLES.get(entity)
    if table is None:
        raise ValidationException(
            f"Unknown entity type: {entity}",
            code="UNKNOWN_ENTITY_TYPE",
            details={"entity_type": entity},
        )
    if current not in table:
        raise InvalidStateValue(entity, "current", current)
    if new not in table:
        raise InvalidStateValue(entity, "new", new)
    return table


def validate_transition(
    entity_type: EntityType | str,
    current_state: Any,
    new_state: Any,
    context: Optional[Mapping[str, Any]] = None,
) -> TransitionResult:
    """
    Check a requested transition against the state tables.

    Args:
        entity_type: session, payment or video
        current_state: State the entity is in now
        new_state: Requested state
        context: Optional cross-entity state (payment_status, forms_complete,
            payment_waived, session_status). Declared preconditions are only
            evaluated when a context is supplied.

    Returns:
        TransitionResult (``no_op`` is True when both states are equal)

    Raises:
        InvalidStateValue: current or new state is not in the entity's table
        InvalidTransition: the table does not allow current -> new
        PreconditionNotMet: the table allows it but the context does not
    """
    entity = _value(entity_type)
    current = _value(current_state)
    new = _value(new_state)
    table = _state_table(entity, current, new)

    if current == new:
        return TransitionResult(
            valid=True, entity_type=entity, current_state=current, new_state=new, no_op=True
        )

    allowed = table[current]
    if new not in allowed:
        raise InvalidTransition(entity, current, new, allowed, context)

    requires = PRECONDITION_INDEX.get((entity, current, new))
    if requires and context is not None:
        failed = _precondition_failures(requires, context)
        if failed:
            raise PreconditionNotMet(entity, current, new, failed, context)

    return TransitionResult(valid=True, entity_type=entity, current_state=current, new_state=new)


def validate_cross_state_sync(
    payment_state: Any,
    session_state: Any,
    video_state: Any = None,
) -> SyncResult:
    """Check that payment, session and (optionally) video states may coexist."""
    payment = _value(payment_state)
    session = _value(session_state)

    allowed_sessions = PAYMENT_SESSION_SYNC.get(payment)
    if allowed_sessions is None:
        raise InvalidStateValue(EntityType.PAYMENT.value, "current", payment)
    if session not in allowed_sessions:
        raise StateSyncViolation(
            f"payment={payment}", f"session={session}", allowed_sessions, "Payment-session"
        )

    if video_state is not None:
        video = _value(video_state)
        allowed_video = SESSION_VIDEO_SYNC.get(session)
        if allowed_video is not None and video not in allowed_video:
            raise StateSyncViolation(
                f"session={session}", f"video={video}", allowed_video, "Session-video"
            )

    return SyncResult(valid=True, required_actions=PAYMENT_SYNC_ACTIONS.get(payment, ()))


class TransitionValidator:
    """
    Applies the enforcement level to the pure transition check.

    Warn and off only relax forbidden transitions and unmet preconditions.
    Unknown entity types and state values are rejected at every level.
    """

    def __init__(self, integrity_config: Optional[IntegrityConfig] = None) -> None:
        self.integrity_config = integrity_config or IntegrityConfig()

    def check(
        self,
        entity_type: EntityType | str,
        current_state: Any,
        new_state: Any,
        context: Optional[Mapping[str, Any]] = None,
    ) -> TransitionResult:
        config = self.integrity_config
        level = config.enforcement_level
        entity = _value(entity_type)
        current = _value(current_state)
        new = _value(new_state)
        _state_table(entity, current, new)

        if not config.is_enforcement_enabled():
            config.record_skip()
            return TransitionResult(
                valid=True,
                entity_type=entity,
                current_state=current,
                new_state=new,
                enforcement_level=level.value,
                warning="Validation skipped - enforcement disabled",
            )

        config.record_check()
        try:
            result = validate_transition(entity, current, new, context)
        except (InvalidTransition, PreconditionNotMet) as exc:
            config.handle_violation(
                exc,
                {
                    "entity_type": entity,
                    "current_state": current,
                    "new_state": new,
                    "context": dict(context) if context else None,
                },
            )
            return TransitionResult(
                valid=True,
                entity_type=entity,
                current_state=current,
                new_state=new,
                enforcement_level=level.value,
                warning=exc.message,
            )

        return TransitionResult(
            valid=True,
            entity_type=result.entity_type,
            current_state=result.current_state,
            new_state=result.new_state,
            no_op=result.no_op,
            enforcement_level=level.value,
        )


def violation_severity(exc: DomainException) -> Severity:
    """Severity recorded with a rejected transition."""
    if isinstance(exc, PreconditionNotMet):
        return Severity.CRITICAL if PAYMENT_CONFIRMED in exc.failed else Severity.HIGH
    if isinstance(exc, InvalidStateValue):
        return Severity.LOW
    return Severity.MEDIUM
