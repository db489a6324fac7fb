"""Tests for the in-process credential store and its JSON persistence."""

from datetime import timedelta

import pytest

from grantportal.storage.errors import ConstraintViolation, RecordNotFound
from grantportal.storage.memory import MemoryStore
from grantportal.storage.models import Role, utcnow


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


class TestUsers:
    def test_email_is_normalized_and_unique(self, memory_store):
        user = memory_store.create_user("  Mixed@Example.COM ", "mixed", "hash")
        assert user.email == "mixed@example.com"
        assert memory_store.get_user_by_email("MIXED@example.com").id == user.id
        with pytest.raises(ConstraintViolation):
            memory_store.create_user("mixed@example.com", "another", "hash")

    def test_username_unique_case_insensitive(self, memory_store):
        memory_store.create_user("a@example.com", "Alice", "hash")
        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_user("b@example.com", "alice", "hash")
        assert exc_info.value.detail == {"field": "username"}

    def test_returned_users_are_snapshots(self, memory_store):
        user = memory_store.create_user("snap@example.com", "snap", "hash")
        user.password_history.append("tampered")
        assert memory_store.get_user(user.id).password_history == []

    def test_update_user_rejects_credential_fields(self, memory_store):
        user = memory_store.create_user("u@example.com", "user1", "hash")
        with pytest.raises(ValueError):
            memory_store.update_user(user.id, password_hash="other")
        with pytest.raises(ValueError):
            memory_store.update_user(user.id, failed_attempts=0)

    def test_update_missing_user(self, memory_store):
        with pytest.raises(RecordNotFound):
            memory_store.update_user("missing", first_name="x")

    def test_update_roles_parses_names(self, memory_store):
        user = memory_store.create_user("r@example.com", "roley", "hash")
        updated = memory_store.update_user(user.id, roles=["internal", "ADVANCED"])
        assert updated.roles == frozenset({Role.INTERNAL, Role.ADVANCED})

    def test_save_password_keeps_bounded_history(self, memory_store):
        user = memory_store.create_user("p@example.com", "pw", "h0")
        for i in range(1, 5):
            user = memory_store.save_password(user.id, f"h{i}", history_size=2)
        assert user.password_hash == "h4"
        assert user.password_history == ["h3", "h2"]

    def test_bump_token_version(self, memory_store):
        user = memory_store.create_user("v@example.com", "ver", "hash")
        assert memory_store.bump_token_version(user.id) == 1
        assert memory_store.bump_token_version(user.id) == 2
        assert memory_store.get_user(user.id).token_version == 2


class TestSessions:
    def test_session_requires_existing_user(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.create_session(user_id="ghost")

    def test_purge_expired_sessions(self, memory_store):
        live = memory_store.create_session(ttl_minutes=60)
        memory_store.create_session(ttl_minutes=1)
        removed = memory_store.purge_expired_sessions(now=utcnow() + timedelta(minutes=5))
        assert removed == 1
        assert memory_store.get_session(live.id) is not None


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("keep@example.com", "keeper", "hash", roles=["INTERNAL"])
        store.record_failed_login(user.id, threshold=5, lock_duration=timedelta(minutes=15))
        session = store.create_session(user_id=user.id)

        reloaded = MemoryStore(fs_root=str(tmp_path))
        restored = reloaded.get_user(user.id)
        assert restored.email == "keep@example.com"
        assert restored.roles == frozenset({Role.INTERNAL})
        assert restored.failed_attempts == 1
        assert reloaded.get_session(session.id).user_id == user.id
