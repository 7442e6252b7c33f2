# backend/app/core/enums.py
"""
Core enums for the Smiling Steps platform.

State values for the three coupled entities (session, payment, video call)
plus the labels used by monitoring, alerting and queueing.
"""

from enum import Enum


class EntityType(str, Enum):
    """Entity kinds that own a state table."""

    SESSION = "session"
    PAYMENT = "payment"
    VIDEO = "video"


class SessionStatus(str, Enum):
    """Therapy session lifecycle."""

    REQUESTED = "requested"
    APPROVED = "approved"
    DECLINED = "declined"
    PAYMENT_PENDING = "payment_pending"
    PAID = "paid"
    FORMS_REQUIRED = "forms_required"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    AUTO_CANCELLED = "auto_cancelled"
    CANCELLED_DURING_SESSION = "cancelled_during_session"
    NO_SHOW_CLIENT = "no_show_client"
    NO_SHOW_THERAPIST = "no_show_therapist"


class PaymentStatus(str, Enum):
    """Payment sub-state of a session."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class VideoCallStatus(str, Enum):
    """Video call sub-state of a session."""

    NOT_STARTED = "not_started"
    WAITING_FOR_PARTICIPANTS = "waiting_for_participants"
    ACTIVE = "active"
    ENDED = "ended"
    FAILED = "failed"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EnforcementLevel(str, Enum):
    """
    Integrity enforcement levels.

    - strict: block all invalid transitions (production)
    - warn: log the violation but allow the transition
    - off: skip checks entirely (emergency only)
    """

    STRICT = "strict"
    WARN = "warn"
    OFF = "off"


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class QueuedOperationStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"


class QueueKind(str, Enum):
    STORAGE = "storage"
    NOTIFICATION = "notification"
