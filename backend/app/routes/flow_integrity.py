# backend/app/routes/flow_integrity.py
"""
Flow integrity endpoints.

Thin HTTP surface over the engine: monitoring read models (dashboard,
health, queues, violations), transition validation and application, and
the edge case decisions. Business refusals come back as 200 with
``allowed: false``; validation errors are mapped by the DomainException
handler (400/409/422).
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status

from ..core.config import settings
from ..core.exceptions import NotFoundException
from ..schemas.flow_integrity import (
    AvailabilityCheckRequest,
    BookingLockReleaseRequest,
    BookingLockRequest,
    BookingLockResponse,
    DashboardResponse,
    DecisionResponse,
    EnforcementLevelRequest,
    EnforcementStatusResponse,
    HealthReportResponse,
    LateJoinRequest,
    LatePaymentRequest,
    MidSessionCancellationRequest,
    OvertimeApprovalRequest,
    OvertimeRequest,
    SessionTransitionRequest,
    SessionTransitionResponse,
    TransitionValidationRequest,
    TransitionValidationResponse,
    ViolationsByTypeResponse,
)
from ..services.edge_case_handler import EdgeCaseDecision
from ..services.flow_integrity_engine import FlowIntegrityEngine, get_flow_integrity_engine
from ..services.transition_validator import validate_transition

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/flow-integrity", tags=["flow-integrity"])


def get_engine() -> FlowIntegrityEngine:
    return get_flow_integrity_engine()


def verify_api_key(x_api_key: Optional[str] = Header(default=None)) -> str:
    """Admin endpoints require the configured monitoring API key."""
    expected_key = settings.monitoring_api_key
    if not expected_key or x_api_key != expected_key:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API key")
    return x_api_key


def _decision(decision: EdgeCaseDecision) -> DecisionResponse:
    return DecisionResponse(
        allowed=decision.allowed,
        status=decision.status,
        message=decision.message,
        session_id=decision.session_id,
        recommendations=list(decision.recommendations),
        persisted=decision.persisted,
        details=dict(decision.data),
    )


def _found(decision: EdgeCaseDecision) -> DecisionResponse:
    if decision.status == "not_found":
        raise NotFoundException(
            decision.message or "Session not found",
            code="SESSION_NOT_FOUND",
            details={"session_id": decision.session_id},
        )
    return _decision(decision)


# Monitoring


@router.get("/dashboard", response_model=DashboardResponse)
def get_dashboard(engine: FlowIntegrityEngine = Depends(get_engine)) -> DashboardResponse:
    return DashboardResponse(**engine.monitor.get_dashboard_snapshot())


@router.get("/health", response_model=HealthReportResponse)
def get_health(
    response: Response, engine: FlowIntegrityEngine = Depends(get_engine)
) -> HealthReportResponse:
    """Run the health checks now; unhealthy responds 503."""
    report = engine.monitor.run_health_check()
    if report.status.value == "unhealthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    response.headers["Cache-Control"] = "no-store"
    return HealthReportResponse(**report.to_payload())


@router.get("/queues")
def get_queue_status(engine: FlowIntegrityEngine = Depends(get_engine)) -> dict:
    return engine.recovery.get_queue_status()


@router.post("/queues/drain")
def drain_queues(
    engine: FlowIntegrityEngine = Depends(get_engine),
    _: str = Depends(verify_api_key),
) -> dict:
    return {
        "storage": engine.recovery.drain_operation_queue().to_payload(),
        "notification": engine.recovery.drain_notification_queue().to_payload(),
    }


@router.get("/violations/by-type", response_model=ViolationsByTypeResponse)
def get_violations_by_type(
    hours: int = Query(24, ge=1, le=24 * 30, description="Trailing window in hours"),
    engine: FlowIntegrityEngine = Depends(get_engine),
) -> ViolationsByTypeResponse:
    counts = engine.monitor.get_violations_by_type(hours)
    return ViolationsByTypeResponse(hours=hours, violations=counts, total=sum(counts.values()))


@router.get("/enforcement", response_model=EnforcementStatusResponse)
def get_enforcement(
    engine: FlowIntegrityEngine = Depends(get_engine),
) -> EnforcementStatusResponse:
    return EnforcementStatusResponse(**engine.integrity_config.get_stats())


@router.post("/enforcement", response_model=EnforcementStatusResponse)
def set_enforcement(
    payload: EnforcementLevelRequest,
    engine: FlowIntegrityEngine = Depends(get_engine),
    _: str = Depends(verify_api_key),
) -> EnforcementStatusResponse:
    engine.integrity_config.set_enforcement_level(
        payload.level, payload.reason, payload.changed_by, {"is_admin": True}
    )
    return EnforcementStatusResponse(**engine.integrity_config.get_stats())


# Transitions


@router.post("/transitions/validate", response_model=TransitionValidationResponse)
def validate_transition_endpoint(
    payload: TransitionValidationRequest,
) -> TransitionValidationResponse:
    """Pure check against the state tables; nothing is recorded."""
    result = validate_transition(
        payload.entity_type, payload.current_state, payload.new_state, payload.context
    )
    return TransitionValidationResponse(**result.to_payload())


@router.post("/sessions/{session_id}/transitions", response_model=SessionTransitionResponse)
def apply_transition(
    session_id: str,
    payload: SessionTransitionRequest,
    engine: FlowIntegrityEngine = Depends(get_engine),
) -> SessionTransitionResponse:
    outcome = engine.flow.transition(
        session_id,
        payload.new_state,
        entity_type=payload.entity_type,
        actor=payload.actor,
        metadata=payload.metadata,
    )
    return SessionTransitionResponse(**outcome.to_payload())


@router.get("/sessions/{session_id}/consistency", response_model=DecisionResponse)
def check_consistency(
    session_id: str, engine: FlowIntegrityEngine = Depends(get_engine)
) -> DecisionResponse:
    return _found(engine.edge_cases.validate_consistency(session_id))


@router.get("/sessions/{session_id}/stuck-states")
def get_stuck_states(session_id: str, engine: FlowIntegrityEngine = Depends(get_engine)) -> dict:
    session = engine.store.find_by_id(session_id)
    if session is None:
        raise NotFoundException("Session not found", code="SESSION_NOT_FOUND")
    stuck = engine.stuck_states.check_session(session)
    return {"session_id": session_id, "stuck": [result.to_payload() for result in stuck]}


# Edge cases


@router.post("/sessions/{session_id}/late-join", response_model=DecisionResponse)
def late_join(
    session_id: str,
    payload: LateJoinRequest,
    engine: FlowIntegrityEngine = Depends(get_engine),
) -> DecisionResponse:
    return _found(engine.edge_cases.handle_late_join(session_id, payload.participant))


@router.post("/sessions/{session_id}/overtime", response_model=DecisionResponse)
def overtime(
    session_id: str,
    payload: OvertimeRequest,
    engine: FlowIntegrityEngine = Depends(get_engine),
) -> DecisionResponse:
    return _found(
        engine.edge_cases.handle_overtime(
            session_id, payload.requested_extension_minutes, payload.requested_by
        )
    )


@router.post("/sessions/{session_id}/overtime/approval", response_model=DecisionResponse)
def overtime_approval(
    session_id: str,
    payload: OvertimeApprovalRequest,
    engine: FlowIntegrityEngine = Depends(get_engine),
) -> DecisionResponse:
    return _found(
        engine.edge_cases.approve_overtime(session_id, payload.approved, payload.approved_by)
    )


@router.post("/sessions/{session_id}/cancel-mid-session", response_model=DecisionResponse)
def cancel_mid_session(
    session_id: str,
    payload: MidSessionCancellationRequest,
    engine: FlowIntegrityEngine = Depends(get_engine),
) -> DecisionResponse:
    return _found(
        engine.edge_cases.handle_mid_session_cancellation(
            session_id, payload.cancelled_by, payload.reason
        )
    )


@router.post("/sessions/{session_id}/late-payment", response_model=DecisionResponse)
def late_payment(
    session_id: str,
    payload: LatePaymentRequest,
    engine: FlowIntegrityEngine = Depends(get_engine),
) -> DecisionResponse:
    decision = engine.edge_cases.handle_payment_after_cancellation(
        session_id, payload.payment_reference, payload.amount
    )
    return _decision(decision)


@router.get("/sessions/{session_id}/payment-status", response_model=DecisionResponse)
def payment_status_after_refresh(
    session_id: str, engine: FlowIntegrityEngine = Depends(get_engine)
) -> DecisionResponse:
    return _found(engine.edge_cases.handle_page_refresh_during_payment(session_id))


@router.get("/sessions/{session_id}/deletion-check", response_model=DecisionResponse)
def deletion_check(
    session_id: str, engine: FlowIntegrityEngine = Depends(get_engine)
) -> DecisionResponse:
    return _decision(engine.edge_cases.check_deletion_allowed(session_id))


@router.post("/availability/check", response_model=DecisionResponse)
def availability_check(
    payload: AvailabilityCheckRequest,
    engine: FlowIntegrityEngine = Depends(get_engine),
) -> DecisionResponse:
    decision = engine.edge_cases.check_availability_conflict(
        payload.therapist_id,
        payload.start,
        payload.duration_minutes,
        exclude_session_id=payload.exclude_session_id,
    )
    return _decision(decision)


@router.post("/booking-locks", response_model=BookingLockResponse)
def acquire_booking_lock(
    payload: BookingLockRequest,
    response: Response,
    engine: FlowIntegrityEngine = Depends(get_engine),
) -> BookingLockResponse:
    result = engine.edge_cases.acquire_booking_lock(payload.therapist_id, payload.slot_start)
    if not result.acquired:
        response.status_code = status.HTTP_409_CONFLICT
    return BookingLockResponse(token=result.token, **result.to_payload())


@router.post("/booking-locks/release")
def release_booking_lock(
    payload: BookingLockReleaseRequest,
    engine: FlowIntegrityEngine = Depends(get_engine),
    x_api_key: Optional[str] = Header(default=None),
) -> dict:
    """Release with the holder's token; a tokenless force release is an admin action."""
    if payload.token is None:
        verify_api_key(x_api_key)
    released = engine.edge_cases.release_booking_lock(payload.lock_key, payload.token)
    return {"lock_key": payload.lock_key, "released": released}
