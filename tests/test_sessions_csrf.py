"""Tests for the session registry and the per-session CSRF guard."""

from dataclasses import replace
from datetime import timedelta

import pytest

from grantportal.service.csrf import CsrfGuard
from grantportal.service.errors import CsrfMismatch, SessionMissing
from grantportal.service.sessions import SessionRegistry
from grantportal.storage.memory import MemoryStore
from grantportal.storage.models import utcnow


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def registry(memory_store):
    return SessionRegistry(memory_store, ttl_minutes=60)


@pytest.fixture
def guard(registry):
    return CsrfGuard(registry, exempt_paths=["/v1/auth/login", "/v1/auth/refresh/"])


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("sess@example.com", "sessuser", "hash")


class TestSessionRegistry:
    async def test_ensure_session_creates_then_reuses(self, registry):
        first = await registry.ensure_session(None, ip_address="10.0.0.1")
        assert first.created is True
        assert first.session.ip_address == "10.0.0.1"

        again = await registry.ensure_session(first.session.id)
        assert again.created is False
        assert again.session.id == first.session.id

    async def test_expired_session_is_dropped(self, registry, memory_store):
        result = await registry.ensure_session(None)
        stale = replace(result.session, expires_at=utcnow() - timedelta(seconds=1))
        memory_store.replace_session(stale)

        assert registry.get_active(stale.id) is None
        assert memory_store.get_session(stale.id) is None

    async def test_bind_user_sets_owner(self, registry, user):
        session = (await registry.ensure_session(None)).session
        bound = await registry.bind_user(session, user.id)
        assert bound.user_id == user.id
        assert registry.get_active(session.id).user_id == user.id

    async def test_extend_slides_expiry(self, registry):
        session = (await registry.ensure_session(None)).session
        later = utcnow() + timedelta(minutes=45)
        extended = await registry.extend(session, now=later)
        assert extended.expires_at == later + timedelta(minutes=60)

    async def test_destroy_is_idempotent(self, registry):
        session = (await registry.ensure_session(None)).session
        assert await registry.destroy(session.id) is True
        assert await registry.destroy(session.id) is False
        assert await registry.destroy(None) is False

    async def test_invalidate_user_sessions_keeps_one(self, registry, user):
        keep = await registry.bind_user((await registry.ensure_session(None)).session, user.id)
        for _ in range(2):
            await registry.bind_user((await registry.ensure_session(None)).session, user.id)

        removed = await registry.invalidate_user_sessions(user.id, except_session_id=keep.id)
        assert removed == 2
        assert [s.id for s in registry.list_active_for_user(user.id)] == [keep.id]


class TestCsrfGuard:
    async def test_issue_stores_secret_on_session(self, guard, registry):
        session = (await registry.ensure_session(None)).session
        updated, token = guard.issue(session)
        assert updated.csrf_secret == token
        assert len(token) == 64
        assert registry.get_active(session.id).csrf_secret == token

    async def test_rotation_invalidates_previous_token(self, guard, registry):
        session = (await registry.ensure_session(None)).session
        session, old = guard.issue(session)
        session, new = guard.rotate(session)

        assert old != new
        assert guard.validate(session, new) is True
        assert guard.validate(session, old) is False

    async def test_enforce_without_session(self, guard):
        with pytest.raises(SessionMissing):
            guard.enforce(None, "anything")

    async def test_enforce_with_missing_or_wrong_token(self, guard, registry):
        session, token = guard.issue((await registry.ensure_session(None)).session)
        with pytest.raises(CsrfMismatch):
            guard.enforce(session, None)
        with pytest.raises(CsrfMismatch):
            guard.enforce(session, token[:-1] + ("0" if token[-1] != "0" else "1"))
        guard.enforce(session, token)

    async def test_token_bound_to_its_session(self, guard, registry):
        """A token issued for one session is rejected on any other session."""
        session_a, token_a = guard.issue((await registry.ensure_session(None)).session)
        session_b, token_b = guard.issue((await registry.ensure_session(None)).session)

        assert guard.validate(session_a, token_a) is True
        assert guard.validate(session_b, token_a) is False
        with pytest.raises(CsrfMismatch):
            guard.enforce(session_b, token_a)
        guard.enforce(session_b, token_b)

    def test_requires_check(self, guard):
        """Safe methods and exempt entry points skip the check; trailing slashes are ignored."""
        assert guard.requires_check("GET", "/v1/auth/profile") is False
        assert guard.requires_check("OPTIONS", "/v1/auth/logout") is False
        assert guard.requires_check("POST", "/v1/auth/login") is False
        assert guard.requires_check("POST", "/v1/auth/login/") is False
        assert guard.requires_check("POST", "/v1/auth/refresh") is False
        assert guard.requires_check("POST", "/v1/auth/logout-all") is True
        assert guard.requires_check("put", "/v1/auth/profile") is True
