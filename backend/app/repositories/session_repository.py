# backend/app/repositories/session_repository.py
"""
Entity store for therapy sessions.

Two implementations share the ``SessionStore`` protocol:

- ``SessionRepository`` persists through SQLAlchemy. Connectivity failures
  (``OperationalError``, ``DisconnectionError``, ``InterfaceError``) surface
  as ``StorageUnavailableError`` so recovery can retry and queue the write;
  any other database error is a ``RepositoryException`` and fails fast.
- ``InMemorySessionStore`` keeps detached copies in a dict, for tests and
  single-process use. It can be switched offline to simulate an outage.
"""

from __future__ import annotations

from contextlib import contextmanager
import logging
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol

from sqlalchemy import select, text
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException, StorageUnavailableError
from ..models.therapy_session import TherapySession

logger = logging.getLogger(__name__)

_CONNECTIVITY_ERRORS = (OperationalError, DisconnectionError, InterfaceError)


class SessionStore(Protocol):
    def find_by_id(self, session_id: str) -> Optional[TherapySession]:
        ...

    def save(self, session: TherapySession) -> TherapySession:
        ...

    def find(self, **query: Any) -> List[TherapySession]:
        """Sessions whose attributes equal every keyword given."""
        ...

    def ping(self) -> bool:
        ...


class SessionRepository:
    """SQLAlchemy-backed session store; one short transaction per call."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None) -> None:
        if session_factory is None:
            from ..database import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory

    @contextmanager
    def _scope(self, operation: str) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except _CONNECTIVITY_ERRORS as exc:
            db.rollback()
            logger.warning("Session store unavailable during %s: %s", operation, exc)
            raise StorageUnavailableError(f"Session store unavailable: {exc}") from exc
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Session store error during %s: %s", operation, exc)
            raise RepositoryException(f"Failed to {operation}: {exc}") from exc
        finally:
            db.close()

    def find_by_id(self, session_id: str) -> Optional[TherapySession]:
        with self._scope("find session") as db:
            return db.get(TherapySession, session_id)

    def save(self, session: TherapySession) -> TherapySession:
        with self._scope("save session") as db:
            merged = db.merge(session)
            db.flush()
            return merged

    def find(self, **query: Any) -> List[TherapySession]:
        with self._scope("query sessions") as db:
            stmt = select(TherapySession)
            for key, value in query.items():
                column = getattr(TherapySession, key)
                if isinstance(value, (list, tuple, set, frozenset)):
                    stmt = stmt.where(column.in_(list(value)))
                else:
                    stmt = stmt.where(column == value)
            return list(db.execute(stmt.order_by(TherapySession.scheduled_start)).scalars())

    def ping(self) -> bool:
        with self._scope("ping session store") as db:
            db.execute(text("SELECT 1"))
        return True


class InMemorySessionStore:
    """Dict-backed session store holding detached copies."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self.available = True
        self.save_count = 0

    def set_available(self, available: bool) -> None:
        self.available = available

    def _check_available(self) -> None:
        if not self.available:
            raise StorageUnavailableError("Session store unavailable")

    def find_by_id(self, session_id: str) -> Optional[TherapySession]:
        self._check_available()
        with self._lock:
            data = self._sessions.get(session_id)
        return TherapySession.from_dict(data) if data is not None else None

    def save(self, session: TherapySession) -> TherapySession:
        self._check_available()
        snapshot = session.to_dict()
        with self._lock:
            self._sessions[session.id] = snapshot
            self.save_count += 1
        return TherapySession.from_dict(snapshot)

    def find(self, **query: Any) -> List[TherapySession]:
        self._check_available()
        with self._lock:
            snapshots = list(self._sessions.values())
        matches = []
        for data in snapshots:
            if all(_matches(data.get(key), value) for key, value in query.items()):
                matches.append(TherapySession.from_dict(data))
        return sorted(matches, key=lambda s: s.scheduled_start)

    def ping(self) -> bool:
        self._check_available()
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


def _matches(actual: Any, expected: Any) -> bool:
    if isinstance(expected, (list, tuple, set, frozenset)):
        return actual in expected
    return actual == expected
