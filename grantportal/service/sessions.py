from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from grantportal.logging import get_logger
from grantportal.storage.models import Session, utcnow
from grantportal.storage.redis_cache import RedisCache

logger = get_logger(__name__)

# last_accessed is only rewritten when it is older than this
_TOUCH_INTERVAL = timedelta(seconds=30)


class SessionStore(Protocol):
    def create_session(
        self,
        ttl_minutes: int = 60,
        user_agent: str | None = None,
        ip_address: str | None = None,
        *,
        user_id: str | None = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def replace_session(self, session: Session) -> Session: ...

    def delete_session(self, session_id: str) -> bool: ...

    def list_sessions_for_user(self, user_id: str) -> List[Session]: ...

    def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int: ...


@dataclass(frozen=True)
class SessionResult:
    """Outcome of ``ensure_session``: the live session and whether it is new."""

    session: Session
    created: bool


class SessionRegistry:
    """Server-side sessions keyed by opaque id, with absolute TTL expiry.

    A session carries the CSRF secret and, once login completes, the owning
    user id. The Redis index (when configured) mirrors user -> sessions so
    "logout everywhere" can also evict cached entries.
    """

    def __init__(
        self,
        store: SessionStore,
        cache: Optional[RedisCache] = None,
        *,
        ttl_minutes: int = 60,
    ) -> None:
        self.store = store
        self.cache = cache
        self.ttl_minutes = ttl_minutes

    def get_active(self, session_id: Optional[str], now: Optional[datetime] = None) -> Optional[Session]:
        if not session_id:
            return None
        now = now or utcnow()
        session = self.store.get_session(session_id)
        if not session:
            return None
        if not session.is_live(now):
            self.store.delete_session(session.id)
            logger.info("session_expired", session_id=session.id)
            return None
        if now - session.last_accessed >= _TOUCH_INTERVAL:
            session = self.store.replace_session(replace(session, last_accessed=now))
        return session

    async def ensure_session(
        self,
        session_id: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionResult:
        existing = self.get_active(session_id)
        if existing:
            return SessionResult(session=existing, created=False)
        session = self.store.create_session(
            ttl_minutes=self.ttl_minutes,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        logger.info("session_created", session_id=session.id)
        return SessionResult(session=session, created=True)

    async def bind_user(self, session: Session, user_id: str) -> Session:
        bound = self.store.replace_session(replace(session, user_id=user_id, last_accessed=utcnow()))
        if self.cache:
            await self.cache.cache_session(bound.id, user_id, bound.expires_at)
        return bound

    async def extend(self, session: Session, now: Optional[datetime] = None) -> Session:
        """Slide the absolute expiry forward; called when a renewal succeeds."""
        now = now or utcnow()
        extended = self.store.replace_session(
            replace(
                session,
                expires_at=now + timedelta(minutes=self.ttl_minutes),
                last_accessed=now,
            )
        )
        if self.cache and extended.user_id:
            await self.cache.cache_session(extended.id, extended.user_id, extended.expires_at)
        return extended

    def set_csrf_secret(self, session: Session, secret: str) -> Session:
        # One secret per session; the new value overwrites the old one
        return self.store.replace_session(replace(session, csrf_secret=secret))

    async def destroy(self, session_id: Optional[str]) -> bool:
        if not session_id:
            return False
        session = self.store.get_session(session_id)
        removed = self.store.delete_session(session_id)
        if self.cache:
            await self.cache.revoke_session(session_id, session.user_id if session else None)
        if removed:
            logger.info("session_destroyed", session_id=session_id)
        return removed

    async def invalidate_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        removed = self.store.delete_user_sessions(user_id, except_session_id)
        if self.cache:
            try:
                await self.cache.revoke_user_sessions(user_id, except_session_id)
            except Exception as exc:
                # The store is authoritative; a stale cache entry only
                # outlives the session until its own TTL
                logger.warning(
                    "revoke_user_sessions_cache_clear_failed",
                    user_id=user_id,
                    error=str(exc),
                )
        logger.info("user_sessions_invalidated", user_id=user_id, count=removed)
        return removed

    def list_active_for_user(self, user_id: str, now: Optional[datetime] = None) -> List[Session]:
        now = now or utcnow()
        return [s for s in self.store.list_sessions_for_user(user_id) if s.is_live(now)]
