"""Tests for the client-side credential manager.

Tests for:
- Single-flight renewal under concurrent 401s
- Failure fan-out to every queued caller
- Scheduled renewal ahead of expiry
- CSRF token capture and recovery
- Retry policy of the renewal round trip
"""

import asyncio
import json

import httpx
import pytest

from grantportal.client.credentials import (
    ClientCredentialManager,
    LoginFailed,
    ReauthenticationRequired,
)


def _ok(data, headers=None):
    return httpx.Response(200, json={"status": "ok", "data": data}, headers=headers or {})


def _error(status, code):
    return httpx.Response(
        status, json={"status": "error", "error": {"code": code, "message": code, "details": None}}
    )


class FakeServer:
    """Just enough of the portal API for the client to talk to."""

    def __init__(self, *, access_ttl=900, refresh_delay=0.01):
        self.access_ttl = access_ttl
        self.refresh_delay = refresh_delay
        self.current_token = "access-1"
        self.csrf = "csrf-1"
        self.refresh_calls = 0
        self.refresh_failures = []  # queued status codes to return before succeeding
        self.refresh_rejection = None  # (status, code) for a terminal failure
        self.seen = []
        self.path_delays = {}

    def transport(self):
        return httpx.MockTransport(self.handle)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.seen.append((request.method, path, dict(request.headers)))
        if path == "/v1/auth/login":
            body = json.loads(request.content)
            if body["password"] != "correct":
                return _error(401, "invalid_credentials")
            return _ok(
                {"user": {"id": "u1"}, "accessToken": self.current_token, "expiresIn": self.access_ttl},
                headers={
                    "X-CSRF-Token": self.csrf,
                    "set-cookie": "refresh_token=r1; Path=/v1/auth/refresh; HttpOnly",
                },
            )
        if path == "/v1/auth/refresh":
            self.refresh_calls += 1
            await asyncio.sleep(self.refresh_delay)
            if self.refresh_failures:
                failure = self.refresh_failures.pop(0)
                if failure == "network":
                    raise httpx.ConnectError("connection refused", request=request)
                return _error(failure, "server_error")
            if self.refresh_rejection:
                return _error(*self.refresh_rejection)
            self.current_token = f"access-{self.refresh_calls + 1}"
            self.csrf = f"csrf-{self.refresh_calls + 1}"
            return _ok(
                {"accessToken": self.current_token, "expiresIn": self.access_ttl},
                headers={"X-CSRF-Token": self.csrf},
            )
        if path == "/v1/auth/csrf-token":
            return _ok({"csrfToken": self.csrf})
        if path in self.path_delays:
            await asyncio.sleep(self.path_delays[path])
        if request.headers.get("Authorization") != f"Bearer {self.current_token}":
            return _error(401, "invalid_credentials")
        if request.method in ("POST", "PUT", "DELETE") and request.headers.get("X-CSRF-Token") != self.csrf:
            return _error(403, "csrf_mismatch")
        return _ok({"path": path})


@pytest.fixture
def server():
    return FakeServer()


def _manager(server, **kwargs):
    client = httpx.AsyncClient(transport=server.transport(), base_url="http://portal.test")
    kwargs.setdefault("retry_delay", 0.0)
    return ClientCredentialManager(client=client, **kwargs)


class TestLogin:
    async def test_login_stores_access_and_csrf(self, server):
        manager = _manager(server)
        user = await manager.login("a@example.com", "correct")

        assert user == {"id": "u1"}
        assert manager.is_authenticated
        assert manager.access_token == "access-1"
        assert manager.csrf_token == "csrf-1"
        await manager.aclose()

    async def test_login_failure_raises_with_code(self, server):
        manager = _manager(server)
        with pytest.raises(LoginFailed) as exc_info:
            await manager.login("a@example.com", "wrong")
        assert exc_info.value.status_code == 401
        assert exc_info.value.code == "invalid_credentials"
        assert not manager.is_authenticated


class TestSingleFlightRefresh:
    async def test_concurrent_401s_share_one_refresh(self, server):
        """K callers hit 401 at once; exactly one renewal round trip happens."""
        manager = _manager(server)
        await manager.login("a@example.com", "correct")
        # Rotated server-side: every held credential now fails
        server.current_token = "rotated-elsewhere"

        responses = await asyncio.gather(*(manager.get("/v1/data") for _ in range(8)))

        assert server.refresh_calls == 1
        assert all(r.status_code == 200 for r in responses)
        assert manager.access_token == "access-2"
        assert manager.is_refreshing is False
        await manager.aclose()

    async def test_refresh_failure_fans_out(self, server):
        """Every queued caller receives the same failure; state is cleared once."""
        notified = []
        manager = _manager(server, on_reauth_required=notified.append)
        await manager.login("a@example.com", "correct")
        server.current_token = "rotated-elsewhere"
        server.refresh_rejection = (401, "refresh_unavailable")

        outcomes = await asyncio.gather(
            *(manager.get("/v1/data") for _ in range(5)), return_exceptions=True
        )

        assert server.refresh_calls == 1
        assert all(isinstance(o, ReauthenticationRequired) for o in outcomes)
        assert len({id(o) for o in outcomes}) == 1
        assert outcomes[0].code == "refresh_unavailable"
        assert len(notified) == 1
        assert not manager.is_authenticated
        assert manager.csrf_token is None
        assert len(manager.client.cookies) == 0
        await manager.aclose()

    async def test_late_401_after_failed_refresh_reuses_failure(self, server):
        """A 401 landing after the shared renewal failed does not renew again."""
        notified = []
        manager = _manager(server, on_reauth_required=notified.append)
        await manager.login("a@example.com", "correct")
        server.current_token = "rotated-elsewhere"
        server.refresh_rejection = (401, "refresh_unavailable")
        server.path_delays = {"/v1/data": 0.001, "/v1/slow": 0.1}

        outcomes = await asyncio.gather(
            manager.get("/v1/data"), manager.get("/v1/slow"), return_exceptions=True
        )

        assert server.refresh_calls == 1
        assert len(notified) == 1
        assert all(isinstance(o, ReauthenticationRequired) for o in outcomes)
        assert outcomes[0] is outcomes[1]
        await manager.aclose()

    async def test_401_without_credential_is_returned(self, server):
        manager = _manager(server)
        response = await manager.get("/v1/data")
        assert response.status_code == 401
        assert server.refresh_calls == 0
        await manager.aclose()

    async def test_async_reauth_callback_awaited(self, server):
        calls = []

        async def on_reauth(error):
            await asyncio.sleep(0)
            calls.append(error.code)

        manager = _manager(server, on_reauth_required=on_reauth)
        await manager.login("a@example.com", "correct")
        server.refresh_rejection = (401, "refresh_unavailable")
        with pytest.raises(ReauthenticationRequired):
            await manager.refresh()
        assert calls == ["refresh_unavailable"]

    async def test_renewed_token_used_without_another_refresh(self, server):
        manager = _manager(server)
        await manager.login("a@example.com", "correct")
        await manager.refresh()
        assert server.refresh_calls == 1

        response = await manager.get("/v1/data")
        assert response.status_code == 200
        assert server.refresh_calls == 1
        await manager.aclose()


class TestRetryPolicy:
    async def test_transient_failures_are_retried(self, server):
        manager = _manager(server, max_retries=3)
        await manager.login("a@example.com", "correct")
        server.refresh_failures = [503, "network"]

        token = await manager.refresh()

        assert server.refresh_calls == 3
        assert token == manager.access_token
        await manager.aclose()

    async def test_retries_exhausted(self, server):
        manager = _manager(server, max_retries=2)
        await manager.login("a@example.com", "correct")
        server.refresh_failures = [502, 502, 502, 502]

        with pytest.raises(ReauthenticationRequired) as exc_info:
            await manager.refresh()
        assert server.refresh_calls == 3
        assert exc_info.value.status_code == 502

    async def test_semantic_rejection_not_retried(self, server):
        manager = _manager(server, max_retries=3)
        await manager.login("a@example.com", "correct")
        server.refresh_rejection = (401, "refresh_unavailable")

        with pytest.raises(ReauthenticationRequired):
            await manager.refresh()
        assert server.refresh_calls == 1


class TestScheduledRefresh:
    async def test_timer_refreshes_before_expiry(self):
        server = FakeServer(access_ttl=300.05, refresh_delay=0)
        manager = _manager(server, refresh_lead_seconds=300)
        await manager.login("a@example.com", "correct")
        server.access_ttl = 900

        await asyncio.sleep(0.3)

        assert server.refresh_calls == 1
        assert manager.access_token == server.current_token == "access-2"
        await manager.aclose()

    async def test_no_timer_when_lifetime_below_lead(self):
        server = FakeServer(access_ttl=60)
        manager = _manager(server, refresh_lead_seconds=300)
        await manager.login("a@example.com", "correct")
        assert manager._timer is None
        await manager.aclose()

    async def test_clear_cancels_timer(self, server):
        manager = _manager(server)
        await manager.login("a@example.com", "correct")
        timer = manager._timer
        assert timer is not None
        manager.clear()
        await asyncio.sleep(0.01)
        assert timer.cancelled()


class TestCsrfHandling:
    async def test_state_changing_requests_carry_csrf(self, server):
        manager = _manager(server)
        await manager.login("a@example.com", "correct")

        await manager.get("/v1/data")
        await manager.post("/v1/data", json={})

        get_headers = server.seen[-2][2]
        post_headers = server.seen[-1][2]
        assert "x-csrf-token" not in get_headers
        assert post_headers["x-csrf-token"] == "csrf-1"
        await manager.aclose()

    async def test_csrf_mismatch_refetches_and_retries_once(self, server):
        manager = _manager(server)
        await manager.login("a@example.com", "correct")
        server.csrf = "csrf-rotated"

        response = await manager.put("/v1/data", json={})

        assert response.status_code == 200
        assert manager.csrf_token == "csrf-rotated"
        paths = [path for _, path, _ in server.seen]
        assert paths[-3:] == ["/v1/data", "/v1/auth/csrf-token", "/v1/data"]
        await manager.aclose()

    async def test_logout_clears_local_state(self, server):
        manager = _manager(server)
        await manager.login("a@example.com", "correct")
        await manager.logout()
        assert not manager.is_authenticated
        assert manager._timer is None
        await manager.aclose()
