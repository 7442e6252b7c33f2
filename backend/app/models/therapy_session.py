# backend/app/models/therapy_session.py
"""
Therapy session model for the Smiling Steps platform.

A session is one scheduled encounter between a client and a therapist.
Its payment and video call are kept as sub-states on the same row: each
has its own status column and status-changed timestamp, but no identity
of its own.

Fields below the "edge case" marker are written only by the edge case
handler (late join, overtime, mid-session cancellation, late payment).
"""

from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text
import ulid

from ..core.clock import ensure_utc
from ..core.enums import PaymentStatus, SessionStatus, VideoCallStatus
from ..database import Base

logger = logging.getLogger(__name__)

_DATETIME_FIELDS = (
    "scheduled_start",
    "created_at",
    "updated_at",
    "status_changed_at",
    "payment_status_changed_at",
    "video_status_changed_at",
    "actual_start",
    "actual_end",
    "call_started_at",
    "call_ended_at",
    "overtime_requested_at",
    "overtime_approved_at",
    "cancelled_at",
    "late_payment_received_at",
)


class TherapySession(Base):
    """Session record with its payment and video-call sub-states."""

    __tablename__ = "therapy_sessions"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    client_id = Column(String(26), nullable=True, index=True)
    therapist_id = Column(String(26), nullable=True, index=True)

    scheduled_start = Column(DateTime(timezone=True), nullable=False, index=True)
    duration_minutes = Column(Integer, nullable=False, default=60)
    price = Column(Integer, nullable=True, comment="Whole currency units")
    session_rate = Column(Integer, nullable=True, comment="Therapist rate per hour")

    status = Column(String(32), nullable=False, default=SessionStatus.REQUESTED.value, index=True)
    status_changed_at = Column(DateTime(timezone=True), nullable=True)

    # Payment sub-state
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    payment_status_changed_at = Column(DateTime(timezone=True), nullable=True)
    payment_reference = Column(String(255), nullable=True)
    payment_waived = Column(Boolean, nullable=False, default=False)
    forms_complete = Column(Boolean, nullable=False, default=False)

    # Video call sub-state
    video_status = Column(String(32), nullable=False, default=VideoCallStatus.NOT_STARTED.value)
    video_status_changed_at = Column(DateTime(timezone=True), nullable=True)
    call_started_at = Column(DateTime(timezone=True), nullable=True)
    call_ended_at = Column(DateTime(timezone=True), nullable=True)

    actual_start = Column(DateTime(timezone=True), nullable=True)
    actual_end = Column(DateTime(timezone=True), nullable=True)

    # Edge case annotations
    adjusted_duration_minutes = Column(Integer, nullable=True)
    late_join_minutes = Column(Integer, nullable=True)
    late_join_by = Column(String(20), nullable=True)
    overtime_minutes = Column(Integer, nullable=True)
    overtime_charge = Column(Integer, nullable=True)
    overtime_approval_pending = Column(Boolean, nullable=False, default=False)
    overtime_requested_at = Column(DateTime(timezone=True), nullable=True)
    overtime_approved_at = Column(DateTime(timezone=True), nullable=True)
    elapsed_minutes_at_cancellation = Column(Integer, nullable=True)
    completion_percentage = Column(Integer, nullable=True)
    partial_refund_percentage = Column(Integer, nullable=True)
    refund_amount = Column(Integer, nullable=True)
    refund_required = Column(Boolean, nullable=False, default=False)
    late_payment_received = Column(Boolean, nullable=False, default=False)
    late_payment_received_at = Column(DateTime(timezone=True), nullable=True)
    late_payment_reference = Column(String(255), nullable=True)
    rebooking_priority = Column(Boolean, nullable=False, default=False)

    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(String(26), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    flow_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_therapy_sessions_therapist_start", "therapist_id", "scheduled_start"),
    )

    def __init__(self, **kwargs: Any) -> None:
        """Apply column defaults eagerly so unsaved sessions are usable in memory."""
        super().__init__(**kwargs)
        if not self.id:
            self.id = str(ulid.ULID())
        if not self.status:
            self.status = SessionStatus.REQUESTED.value
        if not self.payment_status:
            self.payment_status = PaymentStatus.PENDING.value
        if not self.video_status:
            self.video_status = VideoCallStatus.NOT_STARTED.value
        if self.duration_minutes is None:
            self.duration_minutes = 60
        for flag in (
            "payment_waived",
            "forms_complete",
            "overtime_approval_pending",
            "refund_required",
            "late_payment_received",
            "rebooking_priority",
        ):
            if getattr(self, flag) is None:
                setattr(self, flag, False)

    def __repr__(self) -> str:
        return (
            f"<TherapySession {self.id}: client={self.client_id}, "
            f"therapist={self.therapist_id}, start={self.scheduled_start}, "
            f"status={self.status}, payment={self.payment_status}, video={self.video_status}>"
        )

    @property
    def scheduled_end(self) -> datetime:
        return ensure_utc(self.scheduled_start) + timedelta(minutes=self.duration_minutes or 0)

    @property
    def effective_duration_minutes(self) -> int:
        if self.adjusted_duration_minutes is not None:
            return int(self.adjusted_duration_minutes)
        return int(self.duration_minutes or 0)

    @property
    def call_duration_minutes(self) -> Optional[int]:
        if not self.call_started_at or not self.call_ended_at:
            return None
        delta = ensure_utc(self.call_ended_at) - ensure_utc(self.call_started_at)
        return int(delta.total_seconds() // 60)

    def state_context(self) -> Dict[str, Any]:
        """Cross-entity context for transition preconditions."""
        return {
            "session_status": self.status,
            "payment_status": self.payment_status,
            "payment_waived": bool(self.payment_waived),
            "forms_complete": bool(self.forms_complete),
            "video_status": self.video_status,
        }

    def annotate(self, **values: Any) -> None:
        """Merge free-form values into ``flow_metadata``."""
        merged = dict(self.flow_metadata or {})
        merged.update(values)
        self.flow_metadata = merged

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot of every column, datetimes as ISO strings."""
        data: Dict[str, Any] = {}
        for column in self.__table__.columns:
            value = getattr(self, column.key)
            if isinstance(value, datetime):
                value = value.isoformat()
            data[column.key] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TherapySession":
        columns = {column.key for column in cls.__table__.columns}
        values: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in columns:
                continue
            if key in _DATETIME_FIELDS and isinstance(value, str):
                value = datetime.fromisoformat(value)
            values[key] = value
        return cls(**values)
