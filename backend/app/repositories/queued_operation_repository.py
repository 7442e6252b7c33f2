# backend/app/repositories/queued_operation_repository.py
"""
Database-backed queue store for the recovery queues.

Implements the ``QueueStore`` protocol used by ``OperationQueue`` on top of
the ``queued_operations`` table.
"""

from __future__ import annotations

from contextlib import contextmanager
import logging
from typing import Callable, Iterator, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.clock import ensure_utc
from ..core.exceptions import RepositoryException
from ..models.queued_operation import QueuedOperation
from ..services.operation_queue import QueuedItem

logger = logging.getLogger(__name__)


def _to_item(row: QueuedOperation) -> QueuedItem:
    return QueuedItem(
        id=row.id,
        queue=row.queue,
        operation=row.operation,
        payload=dict(row.payload or {}),
        enqueued_at=ensure_utc(row.enqueued_at),
        attempts=row.attempts or 0,
        status=row.status,
        last_error=row.last_error,
        last_attempt_at=ensure_utc(row.last_attempt_at) if row.last_attempt_at else None,
    )


class SqlAlchemyQueueStore:
    """Queue store persisting items in ``queued_operations``."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None) -> None:
        if session_factory is None:
            from ..database import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory

    @contextmanager
    def _scope(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Queue store error: %s", exc)
            raise RepositoryException(f"Queue store operation failed: {exc}") from exc
        finally:
            db.close()

    def add(self, item: QueuedItem) -> None:
        with self._scope() as db:
            db.add(
                QueuedOperation(
                    id=item.id,
                    queue=item.queue,
                    operation=item.operation,
                    payload=dict(item.payload),
                    status=item.status,
                    attempts=item.attempts,
                    enqueued_at=item.enqueued_at,
                    last_attempt_at=item.last_attempt_at,
                    last_error=item.last_error,
                )
            )

    def update(self, item: QueuedItem) -> None:
        with self._scope() as db:
            row = db.get(QueuedOperation, item.id)
            if row is None:
                logger.warning("Queued operation %s vanished before update", item.id)
                return
            row.status = item.status
            row.attempts = item.attempts
            row.last_attempt_at = item.last_attempt_at
            row.last_error = item.last_error

    def remove(self, item_id: str) -> None:
        with self._scope() as db:
            row = db.get(QueuedOperation, item_id)
            if row is not None:
                db.delete(row)

    def list(self, queue: str, status: str) -> List[QueuedItem]:
        with self._scope() as db:
            rows = db.execute(
                select(QueuedOperation)
                .where(QueuedOperation.queue == queue, QueuedOperation.status == status)
                .order_by(QueuedOperation.enqueued_at, QueuedOperation.id)
            ).scalars()
            return [_to_item(row) for row in rows]
