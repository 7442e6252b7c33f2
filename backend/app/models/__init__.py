"""
Database models for the Smiling Steps flow integrity engine.

- TherapySession: a session with its payment and video-call sub-states
- QueuedOperation: durable storage for the operation and notification queues
"""

from .queued_operation import QueuedOperation
from .therapy_session import TherapySession

__all__ = [
    "QueuedOperation",
    "TherapySession",
]
