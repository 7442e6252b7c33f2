# backend/tests/conftest.py
"""
Shared fixtures for the flow integrity tests.

Everything time-based runs on a ManualClock and every retry sleep is
recorded instead of slept, so no test waits on the wall clock. Sessions
live in an InMemorySessionStore unless a test asks for the SQLite engine.
"""

from typing import Any, List

import pytest

from app.core.booking_lock import BookingLockManager, InMemoryBookingLockStore
from app.core.clock import ManualClock
from app.core.integrity_config import IntegrityConfig
from app.models.therapy_session import TherapySession
from app.repositories.session_repository import InMemorySessionStore
from app.services.flow_integrity_engine import FlowIntegrityEngine, build_engine
from app.services.operation_queue import InMemoryQueueStore
from app.services.retry import RetryPolicy
from tests.helpers.flow import START, RecordingSender, build_session


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def sleeps() -> List[float]:
    """Delays the retry helpers asked to sleep for."""
    return []


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, initial_delay=1.0, multiplier=2.0, max_delay=60.0, jitter=0)


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def engine(
    session_store: InMemorySessionStore,
    clock: ManualClock,
    sender: RecordingSender,
    fast_retry: RetryPolicy,
    sleeps: List[float],
) -> FlowIntegrityEngine:
    return build_engine(
        store=session_store,
        clock=clock,
        notification_sender=sender,
        integrity_config=IntegrityConfig("strict", clock=clock),
        lock_manager=BookingLockManager(InMemoryBookingLockStore(clock), clock=clock),
        retry_policy=fast_retry,
        queue_store=InMemoryQueueStore(),
        sleep=sleeps.append,
    )


@pytest.fixture
def make_session(session_store: InMemorySessionStore):
    """Build a session and put it straight into the store."""

    def _make(**overrides: Any) -> TherapySession:
        return session_store.save(build_session(**overrides))

    return _make
