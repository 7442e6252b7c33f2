"""
Request and response models for the flow integrity endpoints.

Edge case decisions are returned in one shape (``DecisionResponse``);
operation-specific values travel in ``details``.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field

from ..core.constants import MAX_SESSION_DURATION, MIN_SESSION_DURATION
from ..core.enums import EntityType
from ._strict_base import StrictModel, StrictRequestModel

# Requests


class TransitionValidationRequest(StrictRequestModel):
    """Dry-run check of a transition against the state tables."""

    entity_type: EntityType = Field(description="session, payment or video")
    current_state: str = Field(min_length=1)
    new_state: str = Field(min_length=1)
    context: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Cross-entity state (payment_status, forms_complete, payment_waived, "
        "session_status); preconditions are only checked when supplied",
    )


class SessionTransitionRequest(StrictRequestModel):
    entity_type: EntityType = Field(default=EntityType.SESSION)
    new_state: str = Field(min_length=1)
    actor: str = Field(default="system", min_length=1, max_length=26)
    metadata: Optional[Dict[str, Any]] = None


class LateJoinRequest(StrictRequestModel):
    participant: Literal["client", "therapist"] = "client"


class OvertimeRequest(StrictRequestModel):
    requested_extension_minutes: Optional[int] = Field(default=None, ge=1, le=MAX_SESSION_DURATION)
    requested_by: Literal["client", "therapist"] = "therapist"


class OvertimeApprovalRequest(StrictRequestModel):
    approved: bool = True
    approved_by: str = Field(default="client", min_length=1)


class MidSessionCancellationRequest(StrictRequestModel):
    cancelled_by: str = Field(min_length=1, max_length=26)
    reason: Optional[str] = Field(default=None, max_length=1000)


class AvailabilityCheckRequest(StrictRequestModel):
    therapist_id: str = Field(min_length=1)
    start: datetime
    duration_minutes: int = Field(ge=MIN_SESSION_DURATION, le=MAX_SESSION_DURATION)
    exclude_session_id: Optional[str] = None


class BookingLockRequest(StrictRequestModel):
    therapist_id: str = Field(min_length=1)
    slot_start: datetime


class BookingLockReleaseRequest(StrictRequestModel):
    lock_key: str = Field(min_length=1)
    token: Optional[str] = Field(
        default=None,
        min_length=1,
        description="Holder token from acquire; omitting it force-releases and needs the API key",
    )


class LatePaymentRequest(StrictRequestModel):
    payment_reference: Optional[str] = Field(default=None, max_length=255)
    amount: Optional[int] = Field(default=None, ge=0, description="Whole currency units")


class EnforcementLevelRequest(StrictRequestModel):
    level: Literal["strict", "warn", "off"]
    reason: str = Field(min_length=1)
    changed_by: str = Field(default="admin", min_length=1)


# Responses


class DecisionResponse(StrictModel):
    allowed: bool
    status: str
    message: str = ""
    session_id: Optional[str] = None
    recommendations: List[str] = Field(default_factory=list)
    persisted: Optional[str] = Field(
        default=None, description="completed or queued when the session was written"
    )
    details: Dict[str, Any] = Field(default_factory=dict)


class TransitionValidationResponse(StrictModel):
    valid: bool
    entity_type: str
    transition: str
    no_op: bool
    required_actions: List[str] = Field(default_factory=list)
    enforcement_level: str
    warning: Optional[str] = None


class SessionTransitionResponse(StrictModel):
    session_id: str
    transition: TransitionValidationResponse
    persisted: Dict[str, Any]
    notification: Optional[Dict[str, Any]] = None


class BookingLockResponse(StrictModel):
    acquired: bool
    lock_key: str
    token: Optional[str] = None
    expires_at: Optional[str] = None
    reason: Optional[str] = None


class HealthCheckItem(StrictModel):
    name: str
    healthy: bool
    details: Dict[str, Any] = Field(default_factory=dict)


class HealthReportResponse(StrictModel):
    status: Literal["healthy", "degraded", "unhealthy"]
    checked_at: str
    failing_checks: List[str]
    checks: Dict[str, HealthCheckItem]


class DashboardResponse(StrictModel):
    generated_at: str
    health: Optional[HealthReportResponse] = None
    metrics: Dict[str, Any]
    recent_violations: List[Dict[str, Any]]
    recent_recoveries: List[Dict[str, Any]]
    violations_by_type: Dict[str, int]
    queues: Optional[Dict[str, Any]] = None
    recent_alerts: List[Dict[str, Any]]


class ViolationsByTypeResponse(StrictModel):
    hours: int
    violations: Dict[str, int]
    total: int


class EnforcementStatusResponse(StrictModel):
    enforcement_level: str
    uptime_seconds: int
    stats: Dict[str, int]
    rates: Dict[str, float]
