from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Protocol

from grantportal.logging import get_logger, log_security_event
from grantportal.service.errors import AccountLocked
from grantportal.storage.models import LockoutState, User, utcnow

logger = get_logger(__name__)


class LockoutStore(Protocol):
    def record_failed_login(
        self,
        user_id: str,
        *,
        threshold: int,
        lock_duration: timedelta,
        now: Optional[datetime] = None,
    ) -> LockoutState: ...

    def reset_login_attempts(
        self,
        user_id: str,
        *,
        successful_login: bool = True,
        now: Optional[datetime] = None,
    ) -> User: ...


class LockoutTracker:
    """Unlocked/Locked state machine over the user's lockout fields.

    Locking is keyed by account only. The transition back to Unlocked is
    never scheduled: ``check`` compares ``lock_until`` with the clock on
    every read, and only a successful login or an administrative ``unlock``
    clears the stored fields.
    """

    def __init__(
        self,
        store: LockoutStore,
        *,
        threshold: int = 5,
        lock_duration: timedelta = timedelta(minutes=15),
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.lock_duration = lock_duration

    def check(self, user: User, now: Optional[datetime] = None) -> None:
        """Raise ``AccountLocked`` if the lock on ``user`` has not yet elapsed."""
        if user.is_account_locked(now or utcnow()):
            raise AccountLocked(user.lock_until)

    def record_failure(self, user: User, now: Optional[datetime] = None) -> LockoutState:
        state = self.store.record_failed_login(
            user.id,
            threshold=self.threshold,
            lock_duration=self.lock_duration,
            now=now,
        )
        if state.locked:
            log_security_event(
                "account_locked",
                user_id=user.id,
                attempts=state.attempts,
                lock_until=state.lock_until.isoformat() if state.lock_until else None,
            )
        else:
            logger.info("login_failure_recorded", user_id=user.id, attempts=state.attempts)
        return state

    def record_success(self, user: User, now: Optional[datetime] = None) -> User:
        return self.store.reset_login_attempts(user.id, successful_login=True, now=now)

    def unlock(self, user_id: str) -> User:
        user = self.store.reset_login_attempts(user_id, successful_login=False)
        log_security_event("account_unlocked", user_id=user_id)
        return user
