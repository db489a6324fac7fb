from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from grantportal.logging import get_logger
from grantportal.storage.errors import ConstraintViolation, RecordNotFound
from grantportal.storage.models import LockoutState, Role, Session, User, utcnow

# Fields callers may change through update_user; lockout and credential
# fields have dedicated atomic operations instead.
_MUTABLE_USER_FIELDS = frozenset(
    {
        "email",
        "username",
        "roles",
        "is_active",
        "first_name",
        "last_name",
        "phone",
        "title",
        "ministry_id",
        "organization_id",
    }
)


class MemoryStore:
    """In-process document store for users and sessions, persisted as JSON.

    Every read returns a snapshot copy; every write happens under ``_data_lock``
    so read-modify-write updates (lockout counters, session rotation) are atomic
    with respect to concurrent requests in the same process.
    """

    def __init__(self, fs_root: str = "/tmp/grantportal") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    @staticmethod
    def _copy_user(user: User) -> User:
        return replace(user, password_history=list(user.password_history))

    # -- users -------------------------------------------------------------

    def _assert_unique(
        self, email: str, username: str, *, exclude_id: Optional[str] = None
    ) -> None:
        for existing in self.users.values():
            if existing.id == exclude_id:
                continue
            if existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if existing.username.lower() == username.lower():
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )

    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        roles: Iterable[str | Role] = (Role.APPLICANT,),
        is_active: bool = True,
        **profile: Any,
    ) -> User:
        normalized_email = email.strip().lower()
        with self._data_lock:
            self._assert_unique(normalized_email, username)
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=normalized_email,
                username=username,
                password_hash=password_hash,
                roles=Role.parse_set(roles),
                is_active=is_active,
                password_changed_at=now,
                created_at=now,
                updated_at=now,
                **profile,
            )
            self.users[user.id] = user
            self._persist_state()
            return self._copy_user(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._copy_user(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return self._copy_user(user) if user else None

    def update_user(self, user_id: str, **changes: Any) -> User:
        unknown = set(changes) - _MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {', '.join(sorted(unknown))}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user not found", {"user_id": user_id})
            if "roles" in changes:
                changes["roles"] = Role.parse_set(changes["roles"])
            if "email" in changes:
                changes["email"] = changes["email"].strip().lower()
            if "email" in changes or "username" in changes:
                self._assert_unique(
                    changes.get("email", user.email),
                    changes.get("username", user.username),
                    exclude_id=user_id,
                )
            updated = replace(user, **changes, updated_at=utcnow())
            self.users[user_id] = updated
            self._persist_state()
            return self._copy_user(updated)

    def save_password(
        self, user_id: str, password_hash: str, *, history_size: int = 5
    ) -> User:
        """Replace the password hash, pushing the previous one into bounded history."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user not found for credentials", {"user_id": user_id})
            history = [user.password_hash, *user.password_history][:history_size]
            now = utcnow()
            updated = replace(
                user,
                password_hash=password_hash,
                password_history=history,
                password_changed_at=now,
                updated_at=now,
            )
            self.users[user_id] = updated
            self._persist_state()
            return self._copy_user(updated)

    def bump_token_version(self, user_id: str) -> int:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user not found", {"user_id": user_id})
            self.users[user_id] = replace(
                user, token_version=user.token_version + 1, updated_at=utcnow()
            )
            self._persist_state()
            return user.token_version + 1

    # -- lockout counters --------------------------------------------------

    def record_failed_login(
        self,
        user_id: str,
        *,
        threshold: int,
        lock_duration: timedelta,
        now: Optional[datetime] = None,
    ) -> LockoutState:
        """Increment the failure counter and lock in the same critical section."""
        now = now or utcnow()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user not found", {"user_id": user_id})
            # Only a successful login or an admin unlock clears the counter
            attempts = user.failed_attempts + 1
            locked = attempts >= threshold
            lock_until = now + lock_duration if locked else user.lock_until
            self.users[user_id] = replace(
                user,
                failed_attempts=attempts,
                is_locked=locked or user.is_locked,
                lock_until=lock_until,
                updated_at=now,
            )
            self._persist_state()
            return LockoutState(attempts=attempts, locked=locked, lock_until=lock_until)

    def reset_login_attempts(
        self,
        user_id: str,
        *,
        successful_login: bool = True,
        now: Optional[datetime] = None,
    ) -> User:
        now = now or utcnow()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user not found", {"user_id": user_id})
            changes: Dict[str, Any] = {
                "failed_attempts": 0,
                "is_locked": False,
                "lock_until": None,
                "updated_at": now,
            }
            if successful_login:
                changes["last_login"] = now
                changes["login_count"] = user.login_count + 1
            updated = replace(user, **changes)
            self.users[user_id] = updated
            self._persist_state()
            return self._copy_user(updated)

    # -- sessions ----------------------------------------------------------

    def create_session(
        self,
        ttl_minutes: int = 60,
        user_agent: str | None = None,
        ip_address: str | None = None,
        *,
        user_id: str | None = None,
    ) -> Session:
        with self._data_lock:
            if user_id is not None and user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                ip_address=ip_address,
                user_id=user_id,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return replace(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def replace_session(self, session: Session) -> Session:
        """Full-document replace; the stored copy is never partially updated."""
        with self._data_lock:
            if session.id not in self.sessions:
                raise RecordNotFound("session not found", {"session_id": session.id})
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def list_sessions_for_user(self, user_id: str) -> List[Session]:
        with self._data_lock:
            owned = [s for s in self.sessions.values() if s.user_id == user_id]
            return [replace(s) for s in sorted(owned, key=lambda s: s.last_accessed, reverse=True)]

    def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sid != except_session_id
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            expired = [sid for sid, sess in self.sessions.items() if not sess.is_live(now)]
            for sid in expired:
                self.sessions.pop(sid, None)
            if expired:
                self._persist_state()
            return len(expired)

    def verify_connection(self) -> None:
        with self._data_lock:
            self._state_path()

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist credential store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "credential_store_loaded", users=len(self.users), sessions=len(self.sessions)
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "password_hash": user.password_hash,
            "password_history": list(user.password_history),
            "roles": sorted(role.value for role in user.roles),
            "is_active": user.is_active,
            "is_locked": user.is_locked,
            "lock_until": self._serialize_datetime(user.lock_until),
            "failed_attempts": user.failed_attempts,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "phone": user.phone,
            "title": user.title,
            "ministry_id": user.ministry_id,
            "organization_id": user.organization_id,
            "last_login": self._serialize_datetime(user.last_login),
            "login_count": user.login_count,
            "token_version": user.token_version,
            "password_changed_at": self._serialize_datetime(user.password_changed_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            username=data["username"],
            password_hash=data["password_hash"],
            password_history=list(data.get("password_history", [])),
            roles=Role.parse_set(data.get("roles") or [Role.APPLICANT]),
            is_active=data.get("is_active", True),
            is_locked=data.get("is_locked", False),
            lock_until=self._deserialize_datetime(data.get("lock_until")),
            failed_attempts=data.get("failed_attempts", 0),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            phone=data.get("phone"),
            title=data.get("title"),
            ministry_id=data.get("ministry_id"),
            organization_id=data.get("organization_id"),
            last_login=self._deserialize_datetime(data.get("last_login")),
            login_count=data.get("login_count", 0),
            token_version=data.get("token_version", 0),
            password_changed_at=self._deserialize_datetime(data.get("password_changed_at")),
            created_at=self._deserialize_datetime(data["created_at"]) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "csrf_secret": session.csrf_secret,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "last_accessed": self._serialize_datetime(session.last_accessed),
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "is_active": session.is_active,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data.get("user_id"),
            csrf_secret=data.get("csrf_secret"),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            last_accessed=self._deserialize_datetime(data.get("last_accessed"))
            or self._deserialize_datetime(data["created_at"]),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            is_active=data.get("is_active", True),
        )
