"""State tables for sessions, payments and video calls.

Each table maps every state of an entity to the frozen set of states it may
move to. Terminal states map to an empty set. Preconditions are declared per
transition; a transition without an entry has no cross-entity requirement.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import FrozenSet, Mapping, Tuple

from app.core.enums import EntityType, PaymentStatus, SessionStatus, VideoCallStatus

S = SessionStatus
P = PaymentStatus
V = VideoCallStatus

SESSION_TRANSITIONS: Mapping[str, FrozenSet[str]] = MappingProxyType(
    {
        S.REQUESTED.value: frozenset(
            {S.APPROVED.value, S.DECLINED.value, S.CANCELLED.value, S.AUTO_CANCELLED.value}
        ),
        S.APPROVED.value: frozenset(
            {S.PAYMENT_PENDING.value, S.CANCELLED.value, S.AUTO_CANCELLED.value}
        ),
        S.PAYMENT_PENDING.value: frozenset(
            {S.PAID.value, S.CANCELLED.value, S.AUTO_CANCELLED.value}
        ),
        S.PAID.value: frozenset({S.FORMS_REQUIRED.value, S.READY.value, S.CANCELLED.value}),
        S.FORMS_REQUIRED.value: frozenset({S.READY.value, S.CANCELLED.value}),
        S.READY.value: frozenset(
            {
                S.IN_PROGRESS.value,
                S.NO_SHOW_CLIENT.value,
                S.NO_SHOW_THERAPIST.value,
                S.CANCELLED.value,
            }
        ),
        S.IN_PROGRESS.value: frozenset(
            {S.COMPLETED.value, S.CANCELLED_DURING_SESSION.value, S.CANCELLED.value}
        ),
        S.COMPLETED.value: frozenset(),
        S.CANCELLED.value: frozenset(),
        S.AUTO_CANCELLED.value: frozenset(),
        S.CANCELLED_DURING_SESSION.value: frozenset(),
        S.NO_SHOW_CLIENT.value: frozenset(),
        S.NO_SHOW_THERAPIST.value: frozenset(),
        S.DECLINED.value: frozenset(),
    }
)

PAYMENT_TRANSITIONS: Mapping[str, FrozenSet[str]] = MappingProxyType(
    {
        P.PENDING.value: frozenset({P.SUBMITTED.value, P.FAILED.value, P.CANCELLED.value}),
        P.SUBMITTED.value: frozenset({P.CONFIRMED.value, P.FAILED.value}),
        P.FAILED.value: frozenset({P.SUBMITTED.value, P.CANCELLED.value}),
        P.CONFIRMED.value: frozenset({P.REFUNDED.value}),
        P.REFUNDED.value: frozenset(),
        P.CANCELLED.value: frozenset(),
    }
)

VIDEO_TRANSITIONS: Mapping[str, FrozenSet[str]] = MappingProxyType(
    {
        V.NOT_STARTED.value: frozenset({V.WAITING_FOR_PARTICIPANTS.value, V.ENDED.value}),
        V.WAITING_FOR_PARTICIPANTS.value: frozenset(
            {V.ACTIVE.value, V.FAILED.value, V.ENDED.value}
        ),
        V.ACTIVE.value: frozenset({V.ENDED.value, V.FAILED.value}),
        V.FAILED.value: frozenset({V.WAITING_FOR_PARTICIPANTS.value, V.ENDED.value}),
        V.ENDED.value: frozenset(),
    }
)

STATE_TABLES: Mapping[str, Mapping[str, FrozenSet[str]]] = MappingProxyType(
    {
        EntityType.SESSION.value: SESSION_TRANSITIONS,
        EntityType.PAYMENT.value: PAYMENT_TRANSITIONS,
        EntityType.VIDEO.value: VIDEO_TRANSITIONS,
    }
)


def terminal_states(entity_type: str) -> FrozenSet[str]:
    table = STATE_TABLES[_entity_key(entity_type)]
    return frozenset(state for state, allowed in table.items() if not allowed)


def active_states(entity_type: str) -> FrozenSet[str]:
    table = STATE_TABLES[_entity_key(entity_type)]
    return frozenset(state for state, allowed in table.items() if allowed)


def allowed_transitions(entity_type: str, state: str) -> FrozenSet[str]:
    """Allowed targets for a state; unknown states have none."""
    return STATE_TABLES[_entity_key(entity_type)].get(_state_key(state), frozenset())


def is_terminal(entity_type: str, state: str) -> bool:
    return _state_key(state) in terminal_states(entity_type)


def _entity_key(entity_type: object) -> str:
    return entity_type.value if isinstance(entity_type, EntityType) else str(entity_type)


def _state_key(state: object) -> str:
    value = getattr(state, "value", state)
    return str(value)


SESSION_TERMINAL_STATES = terminal_states(EntityType.SESSION.value)
SESSION_ACTIVE_STATES = active_states(EntityType.SESSION.value)

# Session states a late payment may arrive for without being applied
SESSION_CANCELLED_STATES: FrozenSet[str] = frozenset(
    {S.CANCELLED.value, S.AUTO_CANCELLED.value}
)

# Sessions in these states are ignored by availability conflict checks
SESSION_NON_BLOCKING_STATES: FrozenSet[str] = frozenset(
    {
        S.CANCELLED.value,
        S.AUTO_CANCELLED.value,
        S.DECLINED.value,
        S.NO_SHOW_CLIENT.value,
        S.NO_SHOW_THERAPIST.value,
    }
)


# Preconditions


PAYMENT_CONFIRMED = "payment_confirmed"
FORMS_COMPLETE = "forms_complete"
SESSION_JOINABLE = "session_joinable"


@dataclass(frozen=True)
class TransitionPrecondition:
    entity_type: str
    current_state: str
    new_state: str
    requires: Tuple[str, ...]


PRECONDITIONS: Tuple[TransitionPrecondition, ...] = (
    TransitionPrecondition(
        EntityType.SESSION.value, S.PAYMENT_PENDING.value, S.PAID.value, (PAYMENT_CONFIRMED,)
    ),
    TransitionPrecondition(
        EntityType.SESSION.value, S.PAID.value, S.READY.value, (PAYMENT_CONFIRMED, FORMS_COMPLETE)
    ),
    TransitionPrecondition(
        EntityType.SESSION.value,
        S.FORMS_REQUIRED.value,
        S.READY.value,
        (PAYMENT_CONFIRMED, FORMS_COMPLETE),
    ),
    TransitionPrecondition(
        EntityType.SESSION.value, S.READY.value, S.IN_PROGRESS.value, (PAYMENT_CONFIRMED,)
    ),
    TransitionPrecondition(
        EntityType.VIDEO.value,
        V.WAITING_FOR_PARTICIPANTS.value,
        V.ACTIVE.value,
        (SESSION_JOINABLE, FORMS_COMPLETE),
    ),
)

PRECONDITION_INDEX: Mapping[Tuple[str, str, str], Tuple[str, ...]] = MappingProxyType(
    {(p.entity_type, p.current_state, p.new_state): p.requires for p in PRECONDITIONS}
)

JOINABLE_SESSION_STATES: FrozenSet[str] = frozenset({S.READY.value, S.IN_PROGRESS.value})


# Cross-entity sync rules: payment state -> session states it may coexist with

PAYMENT_SESSION_SYNC: Mapping[str, FrozenSet[str]] = MappingProxyType(
    {
        P.PENDING.value: frozenset(
            {
                S.REQUESTED.value,
                S.APPROVED.value,
                S.PAYMENT_PENDING.value,
                S.DECLINED.value,
                S.CANCELLED.value,
                S.AUTO_CANCELLED.value,
            }
        ),
        P.SUBMITTED.value: frozenset({S.PAYMENT_PENDING.value}),
        P.CONFIRMED.value: frozenset(
            {
                S.PAID.value,
                S.FORMS_REQUIRED.value,
                S.READY.value,
                S.IN_PROGRESS.value,
                S.COMPLETED.value,
                S.CANCELLED_DURING_SESSION.value,
            }
        ),
        P.FAILED.value: frozenset(
            {S.PAYMENT_PENDING.value, S.CANCELLED.value, S.AUTO_CANCELLED.value}
        ),
        P.REFUNDED.value: frozenset(
            {
                S.CANCELLED.value,
                S.CANCELLED_DURING_SESSION.value,
                S.NO_SHOW_THERAPIST.value,
                S.AUTO_CANCELLED.value,
            }
        ),
        P.CANCELLED.value: frozenset(
            {S.CANCELLED.value, S.AUTO_CANCELLED.value, S.DECLINED.value}
        ),
    }
)

PAYMENT_SYNC_ACTIONS: Mapping[str, Tuple[str, ...]] = MappingProxyType(
    {P.FAILED.value: ("alert_client_retry",)}
)

# Session state -> video states it may coexist with (unlisted sessions are unconstrained)
SESSION_VIDEO_SYNC: Mapping[str, FrozenSet[str]] = MappingProxyType(
    {
        S.READY.value: frozenset({V.NOT_STARTED.value, V.WAITING_FOR_PARTICIPANTS.value}),
        S.IN_PROGRESS.value: frozenset({V.WAITING_FOR_PARTICIPANTS.value, V.ACTIVE.value}),
        S.COMPLETED.value: frozenset({V.ENDED.value}),
        S.CANCELLED.value: frozenset({V.NOT_STARTED.value, V.ENDED.value}),
    }
)


# Stuck state detection: expected minutes in a state and the resolution policy
# applied once a state has lasted longer than STUCK_STATE_MULTIPLIER times that.


@dataclass(frozen=True)
class StuckStatePolicy:
    expected_minutes: int
    resolution: str


STUCK_STATE_POLICIES: Mapping[str, Mapping[str, StuckStatePolicy]] = MappingProxyType(
    {
        EntityType.SESSION.value: MappingProxyType(
            {
                S.REQUESTED.value: StuckStatePolicy(1440, "alert_therapist"),
                S.APPROVED.value: StuckStatePolicy(60, "alert_client_payment"),
                S.PAYMENT_PENDING.value: StuckStatePolicy(10, "alert_admin_urgent"),
                S.PAID.value: StuckStatePolicy(30, "auto_advance_forms"),
                S.FORMS_REQUIRED.value: StuckStatePolicy(1440, "alert_client_forms"),
                S.READY.value: StuckStatePolicy(60, "alert_both_participants"),
                S.IN_PROGRESS.value: StuckStatePolicy(90, "auto_end_session"),
            }
        ),
        EntityType.PAYMENT.value: MappingProxyType(
            {
                P.PENDING.value: StuckStatePolicy(60, "alert_admin"),
                P.SUBMITTED.value: StuckStatePolicy(5, "alert_admin_urgent"),
                P.FAILED.value: StuckStatePolicy(1440, "auto_cleanup"),
            }
        ),
        EntityType.VIDEO.value: MappingProxyType(
            {
                V.WAITING_FOR_PARTICIPANTS.value: StuckStatePolicy(15, "alert_both_participants"),
                V.ACTIVE.value: StuckStatePolicy(90, "auto_end_call"),
                V.FAILED.value: StuckStatePolicy(5, "auto_retry"),
            }
        ),
    }
)
