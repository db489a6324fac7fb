from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from grantportal.storage.models import Session, User


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "​‌‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "invalid_credentials",
    "account_locked",
    "account_inactive",
    "session_missing",
    "csrf_mismatch",
    "refresh_unavailable",
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format shared by every response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_username(value: str) -> str:
    """Alphanumeric with underscores, dots, or hyphens; 3-64 chars."""
    value = _normalize_unicode(value.strip())
    if len(value) > 64:
        raise ValueError("username must be at most 64 characters")
    if len(value) < 3:
        raise ValueError("username must be at least 3 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError(
            "username must contain only alphanumeric characters, underscores, dots, and hyphens"
        )
    return value


def _validate_password_strength(value: str) -> str:
    """Length bounds only; complexity rules are out of scope."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class _CamelModel(BaseModel):
    """Accepts and emits camelCase keys while keeping snake_case attributes."""

    model_config = ConfigDict(populate_by_name=True)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _normalize_login_email(cls, value: str) -> str:
        # Format is not validated here; a malformed email is just an unknown one
        return _normalize_unicode(value.strip().lower())


class RegisterRequest(_CamelModel):
    email: str
    username: str
    password: str
    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=100)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)
    title: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ChangePasswordRequest(_CamelModel):
    current_password: str = Field(..., alias="currentPassword", max_length=128)
    new_password: str = Field(..., alias="newPassword")

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UpdateProfileRequest(_CamelModel):
    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=100)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)
    title: Optional[str] = Field(default=None, max_length=100)

    @field_validator("first_name", "last_name", "title")
    @classmethod
    def _normalize_text(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_unicode(value.strip()) if value is not None else None


class UserResponse(_CamelModel):
    """Public view of a user; never carries hashes or lockout internals."""

    id: str
    email: str
    username: str
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    full_name: str = Field(default="", alias="fullName")
    phone: Optional[str] = None
    title: Optional[str] = None
    roles: List[str]
    ministry_id: Optional[str] = Field(default=None, alias="ministryId")
    organization_id: Optional[str] = Field(default=None, alias="organizationId")
    is_active: bool = Field(default=True, alias="isActive")
    last_login: Optional[datetime] = Field(default=None, alias="lastLogin")
    created_at: datetime = Field(..., alias="createdAt")

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            first_name=user.first_name,
            last_name=user.last_name,
            full_name=user.full_name,
            phone=user.phone,
            title=user.title,
            roles=sorted(role.value for role in user.roles),
            ministry_id=user.ministry_id,
            organization_id=user.organization_id,
            is_active=user.is_active,
            last_login=user.last_login,
            created_at=user.created_at,
        )


class LoginResponse(_CamelModel):
    user: UserResponse
    access_token: str = Field(..., alias="accessToken")
    expires_in: int = Field(..., alias="expiresIn")


class RefreshResponse(_CamelModel):
    access_token: str = Field(..., alias="accessToken")
    expires_in: int = Field(..., alias="expiresIn")


class CsrfTokenResponse(_CamelModel):
    csrf_token: str = Field(..., alias="csrfToken")


class SessionResponse(_CamelModel):
    id: str
    current: bool = False
    created_at: datetime = Field(..., alias="createdAt")
    last_accessed: datetime = Field(..., alias="lastAccessed")
    expires_at: datetime = Field(..., alias="expiresAt")
    ip_address: Optional[str] = Field(default=None, alias="ipAddress")
    user_agent: Optional[str] = Field(default=None, alias="userAgent")

    @classmethod
    def from_session(cls, session: Session, *, current_id: Optional[str] = None) -> "SessionResponse":
        return cls(
            id=session.id,
            current=session.id == current_id,
            created_at=session.created_at,
            last_accessed=session.last_accessed,
            expires_at=session.expires_at,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
        )


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class LogoutAllResponse(_CamelModel):
    sessions_invalidated: int = Field(..., alias="sessionsInvalidated")
