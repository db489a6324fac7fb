from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Cookie, Depends, Header, Path, Request, Response

from grantportal.api.schemas import (
    ChangePasswordRequest,
    CsrfTokenResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutAllResponse,
    RefreshResponse,
    RegisterRequest,
    SessionListResponse,
    SessionResponse,
    UpdateProfileRequest,
    UserResponse,
)
from grantportal.config import Settings
from grantportal.logging import get_logger
from grantportal.service.auth import Principal
from grantportal.service.csrf import CSRF_COOKIE, CSRF_HEADER
from grantportal.service.errors import (
    ForbiddenError,
    PermissionDenied,
    RateLimitedError,
    SessionMissing,
)
from grantportal.service.runtime import check_rate_limit, get_runtime
from grantportal.storage.models import Session

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SESSION_COOKIE = "session_id"
REFRESH_COOKIE = "refresh_token"
# The renewal credential is only ever sent to the refresh endpoint
REFRESH_COOKIE_PATH = "/v1/auth/refresh"


def _ok(data, *, by_alias: bool = True) -> Envelope:
    if hasattr(data, "model_dump"):
        data = data.model_dump(by_alias=by_alias, mode="json")
    return Envelope(status="ok", data=data)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Pre-check gate in front of the credential endpoints; raises 429 when exhausted."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit)
        raise RateLimitedError("rate limit exceeded", detail={"retry_after": info.reset_seconds})
    return info


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


def require_ability(action: str, subject: str) -> Callable[..., Principal]:
    """Dependency factory: the principal must be allowed ``action`` on ``subject``."""

    async def _dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.can(action, subject):
            logger.warning(
                "permission_denied", user_id=principal.id, action=action, subject=subject
            )
            raise PermissionDenied()
        return principal

    return _dependency


def _require_owned_session(runtime, principal: Principal, session_id: Optional[str]) -> Session:
    session = runtime.sessions.get_active(session_id)
    if not session or session.user_id != principal.id:
        raise SessionMissing()
    return session


def _set_csrf(response: Response, settings: Settings, session: Session, token: str) -> None:
    response.set_cookie(
        CSRF_COOKIE,
        token,
        httponly=False,
        secure=settings.cookie_secure,
        samesite="strict",
        expires=session.expires_at,
        path="/",
    )
    response.headers[CSRF_HEADER] = token


def _set_auth_cookies(
    response: Response,
    settings: Settings,
    session: Session,
    *,
    renewal_token: str,
    renewal_max_age: int,
    csrf_token: str,
) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        session.id,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        expires=session.expires_at,
        path="/",
    )
    _set_refresh_cookie(response, settings, renewal_token, renewal_max_age)
    _set_csrf(response, settings, session, csrf_token)


def _set_refresh_cookie(
    response: Response, settings: Settings, renewal_token: str, max_age: int
) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        renewal_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=max_age,
        path=REFRESH_COOKIE_PATH,
    )


def _clear_auth_cookies(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        REFRESH_COOKIE, path=REFRESH_COOKIE_PATH, secure=settings.cookie_secure, httponly=True
    )
    response.delete_cookie(SESSION_COOKIE, path="/", secure=settings.cookie_secure, httponly=True)
    response.delete_cookie(CSRF_COOKIE, path="/", secure=settings.cookie_secure)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    session_id: Optional[str] = Cookie(None),
):
    """Authenticate with email and password.

    Returns the access credential in the body; the renewal credential, the
    session id and the CSRF mirror travel as cookies, and the CSRF token is
    also sent in the ``X-CSRF-Token`` header.

    Raises:
        401: invalid credentials, or the account is deactivated
        423: the account is locked; ``details.lockUntil`` says until when
        429: rate limit exceeded for this client address
    """
    runtime = get_runtime()
    client_ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"login:{client_ip}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.login(
        body.email,
        body.password,
        session_id=session_id,
        ip_address=client_ip,
        user_agent=request.headers.get("user-agent"),
    )
    _set_auth_cookies(
        response,
        runtime.settings,
        result.session,
        renewal_token=result.renewal_token,
        renewal_max_age=runtime.auth.renewal_ttl_seconds,
        csrf_token=result.csrf_token,
    )
    return _ok(
        LoginResponse(
            user=UserResponse.from_user(result.user),
            access_token=result.access_token,
            expires_in=result.expires_in,
        )
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an applicant account. Duplicate email or username yields 409."""
    runtime = get_runtime()
    if not runtime.settings.allow_registration:
        raise ForbiddenError("registration disabled")
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.register_rate_limit_per_minute,
        60,
        response=response,
    )
    user = await runtime.auth.register(
        body.email,
        body.username,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
        title=body.title,
    )
    return _ok(UserResponse.from_user(user))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    response: Response,
    refresh_token: Optional[str] = Cookie(None),
    session_id: Optional[str] = Cookie(None),
):
    """Mint a new access credential from the renewal cookie.

    The old access credential is not needed. The renewal credential and the
    CSRF token both rotate; the previous values stop working immediately.
    """
    runtime = get_runtime()
    result = await runtime.auth.refresh(refresh_token, session_id=session_id)
    _set_refresh_cookie(
        response, runtime.settings, result.renewal_token, runtime.auth.renewal_ttl_seconds
    )
    _set_csrf(response, runtime.settings, result.session, result.csrf_token)
    return _ok(RefreshResponse(access_token=result.access_token, expires_in=result.expires_in))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    principal: Principal = Depends(get_principal),
    session_id: Optional[str] = Cookie(None),
    refresh_token: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    await runtime.auth.logout(session_id, refresh_token, user_id=principal.id)
    _clear_auth_cookies(response, runtime.settings)
    return _ok({"loggedOut": True})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(response: Response, principal: Principal = Depends(get_principal)):
    """End every session of the caller.

    Access credentials already handed out keep working until they expire
    (at most the access TTL); renewal credentials stop working at once.
    """
    runtime = get_runtime()
    removed = await runtime.auth.logout_all(principal.id)
    _clear_auth_cookies(response, runtime.settings)
    return _ok(LogoutAllResponse(sessions_invalidated=removed))


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def get_profile(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    return _ok(UserResponse.from_user(runtime.auth.get_profile(principal.id)))


@router.put("/auth/profile", response_model=Envelope, tags=["auth"])
async def update_profile(
    body: UpdateProfileRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    changes = body.model_dump(exclude_unset=True)
    user = runtime.auth.update_profile(principal.id, **changes)
    return _ok(UserResponse.from_user(user))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    principal: Principal = Depends(get_principal),
    session_id: Optional[str] = Cookie(None),
):
    """Change the caller's password.

    Every other session is ended and outstanding renewal credentials are
    invalidated; the current session receives a fresh renewal cookie.
    """
    runtime = get_runtime()
    user = await runtime.auth.change_password(
        principal.id,
        body.current_password,
        body.new_password,
        keep_session_id=session_id,
    )
    renewal = runtime.auth.reissue_renewal(user.id, session_id)
    if renewal:
        _set_refresh_cookie(response, runtime.settings, renewal, runtime.auth.renewal_ttl_seconds)
    return _ok(UserResponse.from_user(user))


@router.get("/auth/csrf-token", response_model=Envelope, tags=["auth"])
async def csrf_token(
    response: Response,
    principal: Principal = Depends(get_principal),
    session_id: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    session = _require_owned_session(runtime, principal, session_id)
    session, token = runtime.auth.csrf_token(session)
    _set_csrf(response, runtime.settings, session, token)
    return _ok(CsrfTokenResponse(csrf_token=token))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(
    principal: Principal = Depends(get_principal),
    session_id: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    sessions = runtime.auth.list_sessions(principal.id)
    items = [SessionResponse.from_session(s, current_id=session_id) for s in sessions]
    return _ok(SessionListResponse(items=items))


@router.post("/admin/users/{user_id}/unlock", response_model=Envelope, tags=["admin"])
async def unlock_user(
    user_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require_ability("update", "User")),
):
    """Administrative reset of a user's lockout state.

    The type-level gate only says the caller may update *some* user; the
    target is then checked as an instance, and nobody may unlock themselves.
    """
    runtime = get_runtime()
    target = runtime.auth.get_profile(user_id)
    attributes = {
        "id": target.id,
        "ministryId": target.ministry_id,
        "roles": [role.value for role in target.roles],
    }
    if principal.id == target.id or not principal.can("update", "User", attributes):
        logger.warning("permission_denied", user_id=principal.id, action="unlock", subject="User")
        raise PermissionDenied()
    user = runtime.auth.unlock_user(user_id)
    logger.info("admin_unlocked_user", admin_id=principal.id, user_id=user_id)
    return _ok(UserResponse.from_user(user))
