# backend/app/schemas/__init__.py
"""
Pydantic schemas for the flow integrity API.
"""

from .flow_integrity import (
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

__all__ = [
    "AvailabilityCheckRequest",
    "BookingLockReleaseRequest",
    "BookingLockRequest",
    "BookingLockResponse",
    "DashboardResponse",
    "DecisionResponse",
    "EnforcementLevelRequest",
    "EnforcementStatusResponse",
    "HealthReportResponse",
    "LateJoinRequest",
    "LatePaymentRequest",
    "MidSessionCancellationRequest",
    "OvertimeApprovalRequest",
    "OvertimeRequest",
    "SessionTransitionRequest",
    "SessionTransitionResponse",
    "TransitionValidationRequest",
    "TransitionValidationResponse",
    "ViolationsByTypeResponse",
]
