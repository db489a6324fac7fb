from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Closed set of portal roles; permissions are additive across roles."""

    APPLICANT = "APPLICANT"
    INTERNAL = "INTERNAL"
    ADVANCED = "ADVANCED"
    ADMINISTRATOR = "ADMINISTRATOR"
    SUPER_ADMIN = "SUPER_ADMIN"

    @classmethod
    def parse(cls, value: "str | Role") -> "Role":
        if isinstance(value, Role):
            return value
        if not isinstance(value, str):
            raise ValueError(f"role must be a string, got {type(value).__name__}")
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ValueError(f"unknown role '{value}'") from None

    @classmethod
    def parse_set(cls, values: Iterable["str | Role"]) -> frozenset["Role"]:
        roles = frozenset(cls.parse(v) for v in values)
        if not roles:
            raise ValueError("a user must hold at least one role")
        return roles


@dataclass
class User:
    id: str
    email: str
    username: str
    password_hash: str
    roles: frozenset[Role] = frozenset({Role.APPLICANT})
    password_history: List[str] = field(default_factory=list)
    is_active: bool = True
    is_locked: bool = False
    lock_until: Optional[datetime] = None
    failed_attempts: int = 0
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    title: Optional[str] = None
    ministry_id: Optional[str] = None
    organization_id: Optional[str] = None
    last_login: Optional[datetime] = None
    login_count: int = 0
    token_version: int = 0
    password_changed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    def is_account_locked(self, now: Optional[datetime] = None) -> bool:
        """Lock status evaluated lazily: an elapsed ``lock_until`` means unlocked."""
        if not self.is_locked or self.lock_until is None:
            return False
        return self.lock_until > (now or utcnow())


@dataclass
class Session:
    id: str
    created_at: datetime
    expires_at: datetime
    last_accessed: datetime
    user_id: Optional[str] = None
    csrf_secret: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True

    @classmethod
    def new(
        cls,
        ttl_minutes: int = 60,
        user_agent: str | None = None,
        ip_address: str | None = None,
        *,
        user_id: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=secrets.token_urlsafe(32),
            user_id=user_id,
            created_at=now,
            last_accessed=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_address=ip_address,
        )

    def is_live(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and self.expires_at > (now or utcnow())


@dataclass(frozen=True)
class LockoutState:
    """Outcome of one failed-login update."""

    attempts: int
    locked: bool
    lock_until: Optional[datetime] = None
