"""
Repository layer for the flow integrity engine.

Key Components:
- SessionStore: protocol every session store implements
- SessionRepository: SQLAlchemy-backed session store
- InMemorySessionStore: dict-backed store for tests and single-process use
- SqlAlchemyQueueStore: durable backing for the operation and notification queues

Usage:
    from app.repositories import SessionRepository

    repository = SessionRepository()
    session = repository.find_by_id(session_id)
"""

from .queued_operation_repository import SqlAlchemyQueueStore
from .session_repository import InMemorySessionStore, SessionRepository, SessionStore

__all__ = [
    "InMemorySessionStore",
    "SessionRepository",
    "SessionStore",
    "SqlAlchemyQueueStore",
]
