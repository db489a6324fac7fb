"""Tests for the per-account lockout state machine."""

from datetime import timedelta

import pytest

from grantportal.service.errors import AccountLocked
from grantportal.service.lockout import LockoutTracker
from grantportal.storage.memory import MemoryStore
from grantportal.storage.models import utcnow


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def tracker(memory_store):
    return LockoutTracker(memory_store, threshold=5, lock_duration=timedelta(minutes=15))


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("lock@example.com", "locky", "hash")


class TestLockoutTransitions:
    def test_failures_below_threshold_do_not_lock(self, tracker, memory_store, user):
        """Four failures leave the account usable."""
        for expected in range(1, 5):
            state = tracker.record_failure(user)
            assert state.attempts == expected
            assert state.locked is False

        refreshed = memory_store.get_user(user.id)
        tracker.check(refreshed)
        assert refreshed.failed_attempts == 4

    def test_threshold_failure_locks_account(self, tracker, memory_store, user):
        """The fifth consecutive failure sets lock_until = now + duration."""
        now = utcnow()
        for _ in range(4):
            tracker.record_failure(user, now=now)
        state = tracker.record_failure(user, now=now)

        assert state.locked is True
        assert state.lock_until == now + timedelta(minutes=15)
        with pytest.raises(AccountLocked) as exc_info:
            tracker.check(memory_store.get_user(user.id), now=now + timedelta(minutes=1))
        assert exc_info.value.status_code == 423
        assert exc_info.value.detail["lockUntil"] == state.lock_until.isoformat()

    def test_lock_elapses_without_any_write(self, tracker, memory_store, user):
        """Unlocking is evaluated lazily against the clock."""
        now = utcnow()
        for _ in range(5):
            tracker.record_failure(user, now=now)
        locked = memory_store.get_user(user.id)

        tracker.check(locked, now=now + timedelta(minutes=15, seconds=1))
        assert locked.is_locked is True  # stored flag untouched

    def test_failure_after_elapsed_lock_keeps_counting(self, tracker, memory_store, user):
        """The counter survives an elapsed lock, so the next failure locks again."""
        now = utcnow()
        for _ in range(5):
            tracker.record_failure(user, now=now)

        later = now + timedelta(minutes=16)
        tracker.check(memory_store.get_user(user.id), now=later)
        state = tracker.record_failure(memory_store.get_user(user.id), now=later)

        assert state.attempts == 6
        assert state.locked is True
        assert state.lock_until == later + timedelta(minutes=15)
        with pytest.raises(AccountLocked):
            tracker.check(memory_store.get_user(user.id), now=later + timedelta(seconds=1))

    def test_success_resets_counters(self, tracker, memory_store, user):
        for _ in range(3):
            tracker.record_failure(user)
        updated = tracker.record_success(user)

        assert updated.failed_attempts == 0
        assert updated.is_locked is False
        assert updated.lock_until is None
        assert updated.login_count == 1
        assert updated.last_login is not None

    def test_admin_unlock_clears_lock(self, tracker, memory_store, user):
        for _ in range(5):
            tracker.record_failure(user)
        unlocked = tracker.unlock(user.id)

        assert unlocked.is_locked is False
        assert unlocked.failed_attempts == 0
        # An unlock is not a login
        assert unlocked.login_count == 0
        tracker.check(unlocked)
