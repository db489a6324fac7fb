from __future__ import annotations

import secrets
import threading
import time
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from grantportal.logging import get_logger, log_security_event
from grantportal.service.abilities import Ability, AbilityResolver
from grantportal.service.csrf import CsrfGuard
from grantportal.service.errors import (
    AccountInactive,
    AccountLocked,
    AuthenticationError,
    ConflictError,
    InvalidCredentials,
    NotFoundError,
    PasswordReuseError,
    RefreshUnavailable,
)
from grantportal.service.lockout import LockoutTracker
from grantportal.service.sessions import SessionRegistry
from grantportal.service.tokens import TokenIssuer, TokenKind
from grantportal.storage.errors import ConstraintViolation, RecordNotFound
from grantportal.storage.models import Role, Session, User
from grantportal.storage.redis_cache import RedisCache

logger = get_logger(__name__)

# Profile fields a user may change on their own record
PROFILE_FIELDS = frozenset({"first_name", "last_name", "phone", "title"})


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        roles: Iterable[str | Role] = ...,
        is_active: bool = True,
        **profile: Any,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **changes: Any) -> User: ...

    def save_password(
        self, user_id: str, password_hash: str, *, history_size: int = 5
    ) -> User: ...

    def bump_token_version(self, user_id: str) -> int: ...


@dataclass(frozen=True)
class Principal:
    """Identity reconstructed from a verified access credential."""

    id: str
    email: str
    roles: frozenset
    ability: Ability
    ministry_id: Optional[str] = None
    organization_id: Optional[str] = None

    def can(self, action: str, subject: str, attributes: Optional[dict] = None) -> bool:
        return self.ability.can(action, subject, attributes)


@dataclass
class LoginResult:
    user: User
    session: Session
    access_token: str
    renewal_token: str
    csrf_token: str
    expires_in: int
    session_created: bool = False


@dataclass
class RefreshResult:
    user: User
    session: Session
    access_token: str
    renewal_token: str
    csrf_token: str
    expires_in: int


class AuthGateway:
    """Login, renewal, logout and credential management over the auth components.

    Ordering on login matters: the lock gate runs before the password is
    checked, and ``AccountInactive`` is only raised after the password has
    matched so neither outcome reveals whether an email is registered.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        tokens: TokenIssuer,
        lockout: LockoutTracker,
        sessions: SessionRegistry,
        csrf: CsrfGuard,
        abilities: AbilityResolver,
        cache: Optional[RedisCache] = None,
        password_history_size: int = 5,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.lockout = lockout
        self.sessions = sessions
        self.csrf = csrf
        self.abilities = abilities
        self.cache = cache
        self.password_history_size = password_history_size
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against for unknown emails so both paths cost one argon2 run
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self._revocation_lock = threading.Lock()
        self._revoked_renewals: dict[str, float] = {}
        self.logger = logger

    @property
    def access_ttl_seconds(self) -> int:
        return int(self.tokens.ttl(TokenKind.ACCESS).total_seconds())

    @property
    def renewal_ttl_seconds(self) -> int:
        return int(self.tokens.ttl(TokenKind.RENEWAL).total_seconds())

    # -- passwords ---------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _burn_password_check(self, password: str) -> None:
        self._verify_hash(self._dummy_hash, password)

    # -- credential minting ------------------------------------------------

    def _mint_access(self, user: User) -> str:
        return self.tokens.mint(
            {
                "sub": user.id,
                "email": user.email,
                "roles": sorted(role.value for role in user.roles),
                "ministry_id": user.ministry_id,
                "organization_id": user.organization_id,
            },
            TokenKind.ACCESS,
        )

    def _mint_renewal(self, user: User, session: Session) -> str:
        return self.tokens.mint(
            {"sub": user.id, "sid": session.id, "ver": user.token_version},
            TokenKind.RENEWAL,
        )

    async def _consume_renewal(self, jti: str, exp: Any = None) -> bool:
        """Revoke a renewal ``jti``; True only for the first caller to do so."""
        if isinstance(exp, (int, float)):
            ttl = max(int(exp - time.time()), 1)
        else:
            ttl = self.renewal_ttl_seconds
        if self.cache:
            try:
                return await self.cache.mark_refresh_revoked(jti, ttl)
            except Exception as exc:
                # Fail closed: an unreachable revocation list must not let a
                # possibly replayed renewal credential through
                self.logger.warning(
                    "cache_revoked_refresh_token_failed_defaulting_to_revoked",
                    error=str(exc),
                )
                return False
        now = time.time()
        with self._revocation_lock:
            for stale in [k for k, until in self._revoked_renewals.items() if until <= now]:
                self._revoked_renewals.pop(stale, None)
            if jti in self._revoked_renewals:
                return False
            self._revoked_renewals[jti] = now + ttl
            return True

    # -- login / refresh / logout -----------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        *,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        user = self.store.get_user_by_email(email)
        if not user:
            self._burn_password_check(password)
            log_security_event("login_failed", reason="invalid_credentials", ip_address=ip_address)
            raise InvalidCredentials()

        try:
            self.lockout.check(user)
        except AccountLocked:
            log_security_event("login_rejected_locked", user_id=user.id, ip_address=ip_address)
            raise

        if not self._verify_hash(user.password_hash, password):
            state = self.lockout.record_failure(user)
            log_security_event(
                "login_failed",
                reason="invalid_credentials",
                user_id=user.id,
                attempts=state.attempts,
                ip_address=ip_address,
            )
            if state.locked and state.lock_until:
                raise AccountLocked(state.lock_until)
            raise InvalidCredentials()

        if not user.is_active:
            log_security_event("login_failed", reason="account_inactive", user_id=user.id)
            raise AccountInactive()

        user = self.lockout.record_success(user)

        ensured = await self.sessions.ensure_session(
            session_id, ip_address=ip_address, user_agent=user_agent
        )
        session, created = ensured.session, ensured.created
        if session.user_id and session.user_id != user.id:
            # Never hand another user's session (and its CSRF secret) to this login
            ensured = await self.sessions.ensure_session(
                None, ip_address=ip_address, user_agent=user_agent
            )
            session, created = ensured.session, True
        session = await self.sessions.bind_user(session, user.id)
        session, csrf_token = self.csrf.issue(session)

        self.logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return LoginResult(
            user=user,
            session=session,
            access_token=self._mint_access(user),
            renewal_token=self._mint_renewal(user, session),
            csrf_token=csrf_token,
            expires_in=self.access_ttl_seconds,
            session_created=created,
        )

    async def refresh(
        self, renewal_token: Optional[str], *, session_id: Optional[str] = None
    ) -> RefreshResult:
        if not renewal_token:
            raise RefreshUnavailable()
        try:
            claims = self.tokens.verify(renewal_token, TokenKind.RENEWAL)
        except InvalidCredentials:
            log_security_event("refresh_rejected", reason="invalid_token")
            raise RefreshUnavailable() from None

        user_id = claims.get("sub")
        user = self.store.get_user(user_id) if isinstance(user_id, str) else None
        if not user or not user.is_active:
            log_security_event("refresh_rejected", reason="user_unavailable", user_id=user_id)
            raise RefreshUnavailable()
        if claims.get("ver") != user.token_version:
            log_security_event("refresh_rejected", reason="generation_mismatch", user_id=user.id)
            raise RefreshUnavailable()

        session = self.sessions.get_active(claims.get("sid"))
        if not session or session.user_id != user.id:
            log_security_event("refresh_rejected", reason="session_inactive", user_id=user.id)
            raise RefreshUnavailable()
        if session_id and session_id != session.id:
            log_security_event("refresh_rejected", reason="session_mismatch", user_id=user.id)
            raise RefreshUnavailable()

        jti = claims.get("jti")
        if not jti or not await self._consume_renewal(jti, claims.get("exp")):
            log_security_event("refresh_rejected", reason="token_reused", user_id=user.id)
            raise RefreshUnavailable()

        # A logout may have landed while the revocation list was consulted
        session = self.sessions.get_active(session.id)
        if not session or session.user_id != user.id:
            log_security_event("refresh_rejected", reason="session_inactive", user_id=user.id)
            raise RefreshUnavailable()
        try:
            session = await self.sessions.extend(session)
            session, csrf_token = self.csrf.rotate(session)
        except RecordNotFound:
            log_security_event("refresh_rejected", reason="session_inactive", user_id=user.id)
            raise RefreshUnavailable() from None
        self.logger.info("access_refreshed", user_id=user.id, session_id=session.id)
        return RefreshResult(
            user=user,
            session=session,
            access_token=self._mint_access(user),
            renewal_token=self._mint_renewal(user, session),
            csrf_token=csrf_token,
            expires_in=self.access_ttl_seconds,
        )

    async def logout(
        self,
        session_id: Optional[str],
        renewal_token: Optional[str] = None,
        *,
        user_id: Optional[str] = None,
    ) -> bool:
        """Destroy the session and revoke the renewal credential; idempotent."""
        if renewal_token:
            try:
                claims = self.tokens.verify(renewal_token, TokenKind.RENEWAL)
            except InvalidCredentials:
                claims = None
            if claims and claims.get("jti"):
                await self._consume_renewal(claims["jti"], claims.get("exp"))
        session = self.sessions.get_active(session_id)
        if session and user_id and session.user_id not in (None, user_id):
            self.logger.warning("logout_session_owner_mismatch", user_id=user_id)
            return False
        removed = await self.sessions.destroy(session_id)
        self.logger.info("logout", user_id=user_id, session_destroyed=removed)
        return removed

    async def logout_all(self, user_id: str) -> int:
        """Invalidate every session and outstanding renewal credential of a user.

        Access credentials already issued stay valid until they expire; they
        are verified without a store lookup.
        """
        self.store.bump_token_version(user_id)
        removed = await self.sessions.invalidate_user_sessions(user_id)
        log_security_event("logout_all", user_id=user_id, sessions=removed)
        return removed

    # -- request authentication -------------------------------------------

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    def authenticate(self, authorization: Optional[str]) -> Principal:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("authentication required")
        claims = self.tokens.verify(token, TokenKind.ACCESS)
        try:
            roles = Role.parse_set(claims.get("roles") or ())
        except (TypeError, ValueError):
            raise InvalidCredentials() from None
        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidCredentials()
        ability = self.abilities.resolve(
            roles,
            user_id=subject,
            ministry_id=claims.get("ministry_id"),
            organization_id=claims.get("organization_id"),
        )
        return Principal(
            id=subject,
            email=claims.get("email", ""),
            roles=roles,
            ability=ability,
            ministry_id=claims.get("ministry_id"),
            organization_id=claims.get("organization_id"),
        )

    # -- account management -----------------------------------------------

    async def register(
        self,
        email: str,
        username: str,
        password: str,
        *,
        roles: Iterable[str | Role] = (Role.APPLICANT,),
        **profile: Any,
    ) -> User:
        password_hash = self.hash_password(password)
        try:
            user = self.store.create_user(email, username, password_hash, roles=roles, **profile)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.logger.info("user_registered", user_id=user.id)
        return user

    def get_profile(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def update_profile(self, user_id: str, **changes: Any) -> User:
        updates = {k: v for k, v in changes.items() if k in PROFILE_FIELDS}
        if not updates:
            return self.get_profile(user_id)
        user = self.store.update_user(user_id, **updates)
        self.logger.info("profile_updated", user_id=user_id, fields=sorted(updates))
        return user

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        keep_session_id: Optional[str] = None,
    ) -> User:
        user = self.get_profile(user_id)
        if not self._verify_hash(user.password_hash, current_password):
            log_security_event("password_change_rejected", user_id=user_id)
            raise InvalidCredentials("current password is incorrect")
        for previous in [user.password_hash, *user.password_history[: self.password_history_size]]:
            if self._verify_hash(previous, new_password):
                raise PasswordReuseError(
                    "new password must differ from recently used passwords",
                    detail={"history_size": self.password_history_size},
                )
        user = self.store.save_password(
            user_id, self.hash_password(new_password), history_size=self.password_history_size
        )
        self.store.bump_token_version(user_id)
        removed = await self.sessions.invalidate_user_sessions(
            user_id, except_session_id=keep_session_id
        )
        log_security_event("password_changed", user_id=user_id, sessions_invalidated=removed)
        return self.get_profile(user_id)

    def reissue_renewal(self, user_id: str, session_id: Optional[str]) -> Optional[str]:
        """Fresh renewal credential for a live session after a generation bump."""
        session = self.sessions.get_active(session_id)
        user = self.store.get_user(user_id)
        if not session or not user or session.user_id != user.id:
            return None
        return self._mint_renewal(user, session)

    def unlock_user(self, user_id: str) -> User:
        return self.lockout.unlock(user_id)

    def list_sessions(self, user_id: str) -> List[Session]:
        return self.sessions.list_active_for_user(user_id)

    def csrf_token(self, session: Session) -> tuple[Session, str]:
        """Current anti-forgery token for ``session``, issuing one if absent."""
        if session.csrf_secret:
            return session, session.csrf_secret
        return self.csrf.issue(session)


__all__ = [
    "AuthGateway",
    "AuthStore",
    "LoginResult",
    "Principal",
    "RefreshResult",
    "PROFILE_FIELDS",
]
