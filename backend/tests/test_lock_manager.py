import threading
from datetime import timedelta

import pytest

from ddex_delivery.models.delivery_lock import DeliveryLock
from ddex_delivery.services.errors import LockContention
from ddex_delivery.services.lock_manager import LockManager

from conftest import FixedClock

KEY = "IDMP_rel-1_1_NewReleaseMessage_Initial_ERN_0001"


def test_first_acquire_creates_processing_lock(session_factory, lock_manager, db):
    result = lock_manager.acquire(KEY)
    assert result.acquired
    assert result.attempt == 1

    lock = db.get(DeliveryLock, KEY)
    assert lock.status == "processing"
    assert lock.owner_instance_id == "worker-1"
    assert lock.expires_at - lock.acquired_at == timedelta(seconds=600)


def test_live_lock_blocks_other_instances(session_factory, clock, lock_manager):
    other = LockManager(session_factory, instance_id="worker-2", clock=clock)
    assert lock_manager.acquire(KEY).acquired

    result = other.acquire(KEY)
    assert not result.acquired
    assert result.reason == "locked"
    with pytest.raises(LockContention):
        other.require(KEY)


def test_concurrent_acquire_has_single_winner(session_factory, clock):
    barrier = threading.Barrier(4)
    results = []
    errors = []

    def worker(n):
        manager = LockManager(session_factory, instance_id=f"worker-{n}", clock=clock)
        barrier.wait()
        try:
            results.append(manager.acquire(KEY))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert sum(1 for r in results if r.acquired) == 1
    assert all(r.reason == "locked" for r in results if not r.acquired)


def test_expired_lock_is_taken_over(session_factory, clock, lock_manager, db):
    lock_manager.acquire(KEY)

    later = FixedClock(clock.now + timedelta(minutes=11))
    other = LockManager(session_factory, instance_id="worker-2", clock=later)
    result = other.acquire(KEY)

    assert result.acquired
    assert result.attempt == 2
    assert db.get(DeliveryLock, KEY).owner_instance_id == "worker-2"


def test_release_after_takeover_leaves_new_owner(session_factory, clock, lock_manager, db):
    first = lock_manager.acquire(KEY)

    later = FixedClock(clock.now + timedelta(minutes=11))
    other = LockManager(session_factory, instance_id="worker-2", clock=later)
    assert other.acquire(KEY).acquired

    # 引き継がれた後の旧ownerの解放は無視される
    assert lock_manager.release(KEY, "failed", {"error": "slow transfer"}, attempt=first.attempt) is False
    assert lock_manager.release(KEY, "completed", {}) is False
    assert not lock_manager.holds(KEY, first.attempt)
    assert other.holds(KEY, 2)

    third = LockManager(session_factory, instance_id="worker-3", clock=later)
    result = third.acquire(KEY)
    assert not result.acquired
    assert result.reason == "locked"

    lock = db.get(DeliveryLock, KEY)
    assert lock.status == "processing"
    assert lock.owner_instance_id == "worker-2"
    assert lock.attempt == 2


def test_release_checks_attempt(lock_manager):
    lock_manager.acquire(KEY)
    assert lock_manager.release(KEY, "failed", {}, attempt=5) is False
    assert lock_manager.release(KEY, "failed", {}, attempt=1) is True


def test_completed_lock_returns_cached_result(lock_manager, clock):
    lock_manager.acquire(KEY)
    lock_manager.release(KEY, "completed", {"acknowledgment": "done"})

    clock.advance(hours=1)
    result = lock_manager.acquire(KEY)
    assert not result.acquired
    assert result.reason == "completed"
    assert result.result == {"acknowledgment": "done"}
    # require() は completed を例外にしない
    assert lock_manager.require(KEY).reason == "completed"


def test_failed_lock_can_be_reacquired(lock_manager, db):
    lock_manager.acquire(KEY)
    lock_manager.release(KEY, "failed", {"error": "timeout"})

    result = lock_manager.acquire(KEY)
    assert result.acquired
    assert result.attempt == 2
    db.expire_all()
    lock = db.get(DeliveryLock, KEY)
    assert lock.result is None
    assert lock.released_at is None


def test_release_extends_retention(lock_manager, clock, db):
    lock_manager.acquire(KEY)
    lock_manager.release(KEY, "completed", {"ok": True})
    lock = db.get(DeliveryLock, KEY)
    assert lock.expires_at == clock.now + timedelta(seconds=86400)


def test_purge_expired_keeps_live_locks(session_factory, clock, lock_manager, db):
    lock_manager.acquire("IDMP_live")
    lock_manager.acquire("IDMP_done")
    lock_manager.release("IDMP_done", "completed", {})

    purger = LockManager(session_factory, instance_id="cleaner", clock=FixedClock(clock.now + timedelta(days=2)))
    assert purger.purge_expired() == 1
    assert db.get(DeliveryLock, "IDMP_done") is None
    assert db.get(DeliveryLock, "IDMP_live") is not None
