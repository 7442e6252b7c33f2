"""
Short-lived booking locks keyed by (provider, slot start).

Two concurrent booking requests for the same provider and slot race for the
same key; only one acquires it. Locks expire on their own after the
configured timeout. Expiry is checked when a lock is acquired, so a stale
lock never blocks a new attempt even if nothing ever sweeps it.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import threading
from typing import Dict, Iterator, Optional, Protocol

from redis import Redis
from redis.exceptions import RedisError

from app.core.clock import Clock, ensure_utc, system_clock
from app.core.config import settings
from app.core.ulid_helper import generate_ulid
from app.monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

SLOT_LOCKED_REASON = "Slot temporarily locked by another booking attempt"


def booking_lock_key(provider_id: str, slot_start: datetime) -> str:
    return f"booking:{provider_id}:{ensure_utc(slot_start).isoformat()}"


class BookingLockStore(Protocol):
    def try_acquire(self, key: str, token: str, ttl_seconds: float) -> bool:
        ...

    def release(self, key: str, token: Optional[str] = None) -> bool:
        ...


@dataclass
class _HeldLock:
    token: str
    expires_at: datetime


class InMemoryBookingLockStore:
    """Process-local lock map. Acquire and release are atomic under one mutex."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or system_clock
        self._locks: Dict[str, _HeldLock] = {}
        self._mutex = threading.Lock()

    def try_acquire(self, key: str, token: str, ttl_seconds: float) -> bool:
        now = self._clock.now()
        with self._mutex:
            held = self._locks.get(key)
            if held is not None and held.expires_at > now:
                return False
            if held is not None:
                prometheus_metrics.record_booking_lock("acquire", "expired")
                logger.debug("Replacing expired booking lock %s", key)
            self._locks[key] = _HeldLock(token, now + timedelta(seconds=ttl_seconds))
            return True

    def release(self, key: str, token: Optional[str] = None) -> bool:
        with self._mutex:
            held = self._locks.get(key)
            if held is None or (token is not None and held.token != token):
                return False
            del self._locks[key]
            return True

    def sweep(self) -> int:
        """Drop expired entries. Best-effort cleanup; correctness never depends on it."""
        now = self._clock.now()
        with self._mutex:
            expired = [key for key, held in self._locks.items() if held.expires_at <= now]
            for key in expired:
                del self._locks[key]
        return len(expired)

    def __len__(self) -> int:
        with self._mutex:
            return len(self._locks)


_RELEASE_IF_OWNER = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RedisBookingLockStore:
    """Locks shared between processes, using SET NX PX so Redis expires them."""

    def __init__(self, client: Redis, namespace: Optional[str] = None) -> None:
        self._client = client
        self._namespace = namespace or settings.booking_lock_namespace

    @classmethod
    def from_url(cls, url: str, namespace: Optional[str] = None) -> "RedisBookingLockStore":
        return cls(Redis.from_url(url, encoding="utf-8", decode_responses=True), namespace)

    def _namespaced_key(self, key: str) -> str:
        return f"{self._namespace}:lock:{key}"

    def try_acquire(self, key: str, token: str, ttl_seconds: float) -> bool:
        ttl_ms = max(1, int(ttl_seconds * 1000))
        return bool(self._client.set(self._namespaced_key(key), token, nx=True, px=ttl_ms))

    def release(self, key: str, token: Optional[str] = None) -> bool:
        namespaced = self._namespaced_key(key)
        if token is None:
            return bool(self._client.delete(namespaced))
        return bool(self._client.eval(_RELEASE_IF_OWNER, 1, namespaced, token))

    def sweep(self) -> int:
        return 0


@dataclass(frozen=True)
class BookingLockResult:
    acquired: bool
    lock_key: str
    token: Optional[str] = None
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None

    def to_payload(self) -> dict:
        return {
            "acquired": self.acquired,
            "lock_key": self.lock_key,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "reason": self.reason,
        }


class BookingLockManager:
    """Acquire and release booking locks against an injectable store."""

    def __init__(
        self,
        store: Optional[BookingLockStore] = None,
        clock: Optional[Clock] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.clock = clock or system_clock
        self.store = store or InMemoryBookingLockStore(self.clock)
        self.timeout_seconds = timeout_seconds or settings.booking_lock_timeout_seconds

    def acquire(self, provider_id: str, slot_start: datetime) -> BookingLockResult:
        key = booking_lock_key(provider_id, slot_start)
        token = generate_ulid()
        try:
            acquired = self.store.try_acquire(key, token, self.timeout_seconds)
        except RedisError as exc:
            # Fail open: the availability conflict check still guards the write
            prometheus_metrics.record_booking_lock("acquire", "error")
            logger.warning(
                "booking_lock_acquire_failed",
                extra={"lock_key": key, "error": str(exc), "error_type": type(exc).__name__},
            )
            return BookingLockResult(acquired=True, lock_key=key, token=None)

        if not acquired:
            prometheus_metrics.record_booking_lock("acquire", "blocked")
            logger.info("Booking lock blocked", extra={"lock_key": key})
            return BookingLockResult(acquired=False, lock_key=key, reason=SLOT_LOCKED_REASON)

        prometheus_metrics.record_booking_lock("acquire", "success")
        return BookingLockResult(
            acquired=True,
            lock_key=key,
            token=token,
            expires_at=self.clock.now() + timedelta(seconds=self.timeout_seconds),
        )

    def release(self, lock_key: str, token: Optional[str] = None) -> bool:
        try:
            released = self.store.release(lock_key, token)
        except RedisError as exc:
            prometheus_metrics.record_booking_lock("release", "error")
            logger.warning(
                "booking_lock_release_failed",
                extra={"lock_key": lock_key, "error": str(exc), "error_type": type(exc).__name__},
            )
            return False
        prometheus_metrics.record_booking_lock("release", "success" if released else "not_found")
        return released

    def sweep(self) -> int:
        removed = self.store.sweep() if hasattr(self.store, "sweep") else 0
        if removed:
            logger.debug("Swept %d expired booking locks", removed)
        return removed

    @contextmanager
    def hold(self, provider_id: str, slot_start: datetime) -> Iterator[BookingLockResult]:
        result = self.acquire(provider_id, slot_start)
        try:
            yield result
        finally:
            if result.acquired and result.token is not None:
                self.release(result.lock_key, result.token)


def build_lock_store(clock: Optional[Clock] = None) -> BookingLockStore:
    """Lock store selected by ``booking_lock_backend``."""
    if settings.booking_lock_backend == "redis" and settings.redis_url:
        return RedisBookingLockStore.from_url(settings.redis_url)
    return InMemoryBookingLockStore(clock)
