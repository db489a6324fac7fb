from __future__ import annotations

import asyncio
import inspect
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Optional, Union

import httpx

from grantportal.logging import get_logger

logger = get_logger(__name__)

CSRF_HEADER = "X-CSRF-Token"
_STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
_MAX_BACKOFF_SECONDS = 10.0

ReauthCallback = Callable[["ReauthenticationRequired"], Union[None, Awaitable[None]]]


class CredentialError(Exception):
    """Client-side credential failure carrying the server's status and error code."""

    def __init__(
        self, message: str, *, status_code: Optional[int] = None, code: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code


class LoginFailed(CredentialError):
    """The server rejected the email/password (401, 423, 429...)."""


class ReauthenticationRequired(CredentialError):
    """Renewal failed for good; local credentials were cleared."""


def _error_code(response: httpx.Response) -> Optional[str]:
    try:
        return response.json()["error"]["code"]
    except (ValueError, KeyError, TypeError):
        return None


def _error_message(response: httpx.Response, default: str) -> str:
    try:
        return response.json()["error"]["message"]
    except (ValueError, KeyError, TypeError):
        return default


class ClientCredentialManager:
    """Keeps the access credential in memory and renews it for API callers.

    The renewal credential never leaves the ``httpx`` cookie jar. Renewal is
    single-flight: the first caller to need it performs the round trip while
    later callers park a future in a FIFO queue, and every parked future is
    settled with the same outcome before the renewing caller returns. A
    timer renews ``refresh_lead_seconds`` before the access credential
    expires; the 401-triggered path only covers clock skew and missed timers.
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        client: Optional[httpx.AsyncClient] = None,
        api_prefix: str = "/v1",
        refresh_lead_seconds: float = 300.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        on_reauth_required: Optional[ReauthCallback] = None,
    ) -> None:
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=30.0)
        self.api_prefix = api_prefix.rstrip("/")
        self.refresh_lead_seconds = refresh_lead_seconds
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.on_reauth_required = on_reauth_required

        self.access_token: Optional[str] = None
        self.csrf_token: Optional[str] = None
        self.expires_at: Optional[float] = None

        self._refreshing = False
        self._waiters: Deque[asyncio.Future] = deque()
        self._timer: Optional[asyncio.Task] = None
        # Bumped whenever a new credential is stored or a renewal fails
        self._generation = 0
        self._last_refresh_error: Optional[ReauthenticationRequired] = None

    # -- state -------------------------------------------------------------

    @property
    def is_authenticated(self) -> bool:
        return self.access_token is not None

    @property
    def is_refreshing(self) -> bool:
        return self._refreshing

    def _path(self, suffix: str) -> str:
        return f"{self.api_prefix}{suffix}"

    def _is_expired(self) -> bool:
        return self.expires_at is not None and time.monotonic() >= self.expires_at

    def _capture_csrf(self, response: httpx.Response) -> None:
        token = response.headers.get(CSRF_HEADER)
        if token:
            self.csrf_token = token

    def _store_access(self, token: str, expires_in: float) -> None:
        self.access_token = token
        self._generation += 1
        self._last_refresh_error = None
        self.expires_at = time.monotonic() + expires_in
        self._schedule_refresh(expires_in)

    def _cancel_timer(self) -> None:
        # The timer task may be the one storing a new credential
        if self._timer is not None and self._timer is not asyncio.current_task():
            self._timer.cancel()
        self._timer = None

    def _schedule_refresh(self, expires_in: float) -> None:
        self._cancel_timer()
        delay = expires_in - self.refresh_lead_seconds
        if delay <= 0:
            logger.debug("refresh_timer_skipped", expires_in=expires_in)
            return
        self._timer = asyncio.get_running_loop().create_task(self._refresh_after(delay))

    async def _refresh_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.refresh()
        except ReauthenticationRequired as exc:
            # Already surfaced through on_reauth_required
            logger.info("scheduled_refresh_failed", code=exc.code)

    def clear(self) -> None:
        """Drop every local credential, including the cookie jar."""
        self._cancel_timer()
        self.access_token = None
        self.csrf_token = None
        self.expires_at = None
        self.client.cookies.clear()

    async def aclose(self) -> None:
        self._cancel_timer()
        if self._owns_client:
            await self.client.aclose()

    # -- single-flight refresh --------------------------------------------

    def _drain(self, *, token: Optional[str] = None, error: Optional[BaseException] = None) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(token)

    async def refresh(self) -> str:
        """Renew the access credential; concurrent callers share one round trip."""
        if self._refreshing:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            return await waiter

        self._refreshing = True
        try:
            token = await self._perform_refresh()
        except Exception as exc:
            if isinstance(exc, ReauthenticationRequired):
                error = exc
            else:
                error = ReauthenticationRequired(f"refresh failed: {exc}")
                error.__cause__ = exc
            self._generation += 1
            self._last_refresh_error = error
            self._drain(error=error)
            self.clear()
            # Callers arriving during the notification must not park a future
            self._refreshing = False
            logger.warning("credential_refresh_failed", status_code=error.status_code, code=error.code)
            await self._notify_reauth(error)
            raise error
        else:
            self._drain(token=token)
            return token
        finally:
            self._refreshing = False

    def _backoff(self, attempt: int) -> float:
        return min(attempt * self.retry_delay, _MAX_BACKOFF_SECONDS)

    async def _perform_refresh(self) -> str:
        attempt = 0
        while True:
            attempt += 1
            try:
                response = await self.client.post(self._path("/auth/refresh"))
            except httpx.TransportError as exc:
                if attempt > self.max_retries:
                    raise ReauthenticationRequired("refresh failed: network unavailable") from exc
                logger.info("refresh_retry", attempt=attempt, reason=type(exc).__name__)
                await asyncio.sleep(self._backoff(attempt))
                continue

            if response.status_code >= 500:
                if attempt > self.max_retries:
                    raise ReauthenticationRequired(
                        "refresh failed: server unavailable",
                        status_code=response.status_code,
                        code=_error_code(response),
                    )
                logger.info("refresh_retry", attempt=attempt, status_code=response.status_code)
                await asyncio.sleep(self._backoff(attempt))
                continue

            if response.status_code != 200:
                # Semantic rejection: retrying cannot help
                raise ReauthenticationRequired(
                    _error_message(response, "refresh rejected"),
                    status_code=response.status_code,
                    code=_error_code(response),
                )

            self._capture_csrf(response)
            data = response.json()["data"]
            self._store_access(data["accessToken"], float(data["expiresIn"]))
            logger.debug("credential_refreshed", attempts=attempt)
            return data["accessToken"]

    async def _notify_reauth(self, error: ReauthenticationRequired) -> None:
        if self.on_reauth_required is None:
            return
        result = self.on_reauth_required(error)
        if inspect.isawaitable(result):
            await result

    async def _wait_for_refresh(self) -> None:
        if self._refreshing:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            await waiter

    # -- requests ----------------------------------------------------------

    async def _send(self, method: str, url: str, headers: dict, kwargs: dict) -> httpx.Response:
        # Never dispatch with a CSRF token or credential that a running refresh is replacing
        await self._wait_for_refresh()
        outgoing = dict(headers)
        if self.access_token:
            outgoing["Authorization"] = f"Bearer {self.access_token}"
        if method.upper() in _STATE_CHANGING_METHODS and self.csrf_token:
            outgoing[CSRF_HEADER] = self.csrf_token
        response = await self.client.request(method, url, headers=outgoing, **kwargs)
        self._capture_csrf(response)
        return response

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send an authenticated request, renewing or re-fetching CSRF once if needed."""
        headers = dict(kwargs.pop("headers", None) or {})
        if self.access_token and self._is_expired():
            await self.refresh()

        await self._wait_for_refresh()
        generation = self._generation
        response = await self._send(method, url, headers, kwargs)

        if response.status_code == 401:
            if self._generation != generation:
                # A renewal settled while this request was in flight
                if self._last_refresh_error is not None:
                    raise self._last_refresh_error
            elif self.access_token is None:
                return response
            else:
                await self.refresh()
            return await self._send(method, url, headers, kwargs)

        if response.status_code == 403 and _error_code(response) == "csrf_mismatch":
            await self.fetch_csrf_token()
            return await self._send(method, url, headers, kwargs)

        return response

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    # -- auth flows --------------------------------------------------------

    async def login(self, email: str, password: str) -> dict:
        response = await self.client.post(
            self._path("/auth/login"), json={"email": email, "password": password}
        )
        self._capture_csrf(response)
        if response.status_code != 200:
            raise LoginFailed(
                _error_message(response, "login failed"),
                status_code=response.status_code,
                code=_error_code(response),
            )
        data = response.json()["data"]
        self._store_access(data["accessToken"], float(data["expiresIn"]))
        return data["user"]

    async def fetch_csrf_token(self) -> Optional[str]:
        response = await self._send("GET", self._path("/auth/csrf-token"), {}, {})
        if response.status_code == 200:
            self.csrf_token = response.json()["data"]["csrfToken"]
        else:
            logger.info("csrf_token_fetch_failed", status_code=response.status_code)
        return self.csrf_token

    async def logout(self) -> None:
        try:
            await self.request("POST", self._path("/auth/logout"))
        finally:
            self.clear()

    async def logout_all(self) -> None:
        try:
            await self.request("POST", self._path("/auth/logout-all"))
        finally:
            self.clear()
