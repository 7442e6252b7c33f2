# backend/app/models/queued_operation.py
"""
Queued operation persistence model.

Backs the storage and notification recovery queues so deferred work
survives a process restart.
"""

from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text

from app.core.enums import QueuedOperationStatus
from app.database import Base


class QueuedOperation(Base):
    """Deferred storage write or notification awaiting a drain."""

    __tablename__ = "queued_operations"

    id = Column(String(40), primary_key=True)
    queue = Column(String(20), nullable=False)
    operation = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(
        String(20), nullable=False, default=QueuedOperationStatus.PENDING.value, index=True
    )
    attempts = Column(Integer, nullable=False, default=0)
    enqueued_at = Column(DateTime(timezone=True), nullable=False)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)

    __table_args__ = (Index("ix_queued_operations_queue_status", "queue", "status", "enqueued_at"),)

    def __repr__(self) -> str:
        return (
            f"<QueuedOperation {self.id}: queue={self.queue} op={self.operation} "
            f"status={self.status} attempts={self.attempts}>"
        )
