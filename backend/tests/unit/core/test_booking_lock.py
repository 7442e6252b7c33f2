"""
Unit tests for booking_lock.py.

Coverage:
1) Key generation
2) Acquire/release against the in-memory store
3) Expiry checked at acquire time, and the sweep
4) Redis store commands (SET NX PX, owner-checked release)
5) Fail-open when Redis is unavailable
6) Concurrent acquires of one slot have a single winner
"""

from datetime import datetime, timedelta, timezone
import threading
from unittest.mock import MagicMock

from redis.exceptions import ConnectionError as RedisConnectionError

from app.core.booking_lock import (
    SLOT_LOCKED_REASON,
    BookingLockManager,
    InMemoryBookingLockStore,
    RedisBookingLockStore,
    booking_lock_key,
)

SLOT = datetime(2025, 1, 7, 14, 0, tzinfo=timezone.utc)


def _manager(clock, timeout_seconds=5.0):
    return BookingLockManager(
        InMemoryBookingLockStore(clock), clock=clock, timeout_seconds=timeout_seconds
    )


class TestKeyGeneration:
    def test_key_format(self):
        assert booking_lock_key("T1", SLOT) == "booking:T1:2025-01-07T14:00:00+00:00"

    def test_naive_and_aware_slots_share_a_key(self):
        naive = datetime(2025, 1, 7, 14, 0)
        assert booking_lock_key("T1", naive) == booking_lock_key("T1", SLOT)


class TestInMemoryLocks:
    def test_second_acquire_is_blocked(self, clock):
        manager = _manager(clock)

        first = manager.acquire("T1", SLOT)
        second = manager.acquire("T1", SLOT)

        assert first.acquired is True
        assert first.token is not None
        assert first.expires_at == clock.now() + timedelta(seconds=5)
        assert second.acquired is False
        assert second.reason == SLOT_LOCKED_REASON

    def test_different_slots_do_not_block(self, clock):
        manager = _manager(clock)

        assert manager.acquire("T1", SLOT).acquired is True
        assert manager.acquire("T1", SLOT + timedelta(hours=1)).acquired is True
        assert manager.acquire("T2", SLOT).acquired is True

    def test_release_with_wrong_token_keeps_lock(self, clock):
        manager = _manager(clock)
        held = manager.acquire("T1", SLOT)

        assert manager.release(held.lock_key, "not-the-token") is False
        assert manager.acquire("T1", SLOT).acquired is False

        assert manager.release(held.lock_key, held.token) is True
        assert manager.acquire("T1", SLOT).acquired is True

    def test_release_of_unknown_key(self, clock):
        assert _manager(clock).release("booking:none") is False

    def test_expired_lock_does_not_block(self, clock):
        manager = _manager(clock, timeout_seconds=5)
        manager.acquire("T1", SLOT)

        clock.advance(seconds=5)

        assert manager.acquire("T1", SLOT).acquired is True

    def test_sweep_removes_expired_entries(self, clock):
        store = InMemoryBookingLockStore(clock)
        manager = BookingLockManager(store, clock=clock, timeout_seconds=5)
        manager.acquire("T1", SLOT)
        manager.acquire("T2", SLOT)
        clock.advance(seconds=3)
        manager.acquire("T3", SLOT)
        clock.advance(seconds=3)

        assert manager.sweep() == 2
        assert len(store) == 1

    def test_hold_releases_on_exit(self, clock):
        manager = _manager(clock)

        with manager.hold("T1", SLOT) as result:
            assert result.acquired is True
            assert manager.acquire("T1", SLOT).acquired is False

        assert manager.acquire("T1", SLOT).acquired is True


class TestRedisStore:
    def test_acquire_uses_set_nx_px(self):
        client = MagicMock()
        client.set.return_value = True
        store = RedisBookingLockStore(client, namespace="test")

        assert store.try_acquire("booking:T1:x", "tok", 5) is True
        client.set.assert_called_once_with(
            "test:lock:booking:T1:x", "tok", nx=True, px=5000
        )

    def test_release_with_token_is_owner_checked(self):
        client = MagicMock()
        client.eval.return_value = 1
        store = RedisBookingLockStore(client, namespace="test")

        assert store.release("booking:T1:x", "tok") is True
        args = client.eval.call_args[0]
        assert args[1:] == (1, "test:lock:booking:T1:x", "tok")

    def test_release_without_token_deletes(self):
        client = MagicMock()
        client.delete.return_value = 0
        store = RedisBookingLockStore(client, namespace="test")

        assert store.release("booking:T1:x") is False
        client.delete.assert_called_once_with("test:lock:booking:T1:x")

    def test_acquire_fails_open_when_redis_is_down(self, clock):
        client = MagicMock()
        client.set.side_effect = RedisConnectionError("down")
        manager = BookingLockManager(RedisBookingLockStore(client), clock=clock)

        result = manager.acquire("T1", SLOT)

        assert result.acquired is True
        assert result.token is None

    def test_release_reports_false_when_redis_is_down(self, clock):
        client = MagicMock()
        client.eval.side_effect = RedisConnectionError("down")
        manager = BookingLockManager(RedisBookingLockStore(client), clock=clock)

        assert manager.release("booking:T1:x", "tok") is False


class TestConcurrentAcquire:
    def test_exactly_one_racer_wins_the_slot(self, clock):
        manager = _manager(clock)
        racers = 16
        barrier = threading.Barrier(racers)
        results = []

        def race():
            barrier.wait()
            results.append(manager.acquire("T1", SLOT))

        threads = [threading.Thread(target=race) for _ in range(racers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert len(results) == racers
        assert sum(1 for result in results if result.acquired) == 1
        assert {result.reason for result in results if not result.acquired} == {
            SLOT_LOCKED_REASON
        }
