from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from grantportal.api.error_handling import _error_response, register_exception_handlers
from grantportal.api.routes import SESSION_COOKIE, router
from grantportal.config import Settings
from grantportal.logging import get_logger, set_correlation_id
from grantportal.service.csrf import CSRF_HEADER
from grantportal.service.errors import ServiceError

logger = get_logger(__name__)

__version__ = "0.1.0"

# A logout without a live session has nothing left to forge against
_SESSION_OPTIONAL_PATHS = frozenset({"/v1/auth/logout"})

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release the cache on shutdown."""
    from grantportal.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_startup", environment=runtime.settings.environment.value)
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Local dev hosts; no wildcard since credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(title="Grant Portal Auth", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", CSRF_HEADER, "X-Request-ID"],
        expose_headers=["X-Request-ID", CSRF_HEADER, "API-Version"],
        max_age=3600,
    )

    @app.middleware("http")
    async def enforce_csrf_token(request: Request, call_next):
        """Reject state-changing requests whose CSRF token does not match the session.

        Applies whether or not an Authorization header is present; only the
        safe methods and the configured entry points are exempt.
        """
        from grantportal.service.runtime import get_runtime

        runtime = get_runtime()
        if not runtime.csrf.requires_check(request.method, request.url.path):
            return await call_next(request)
        session = runtime.sessions.get_active(request.cookies.get(SESSION_COOKIE))
        if session is None and request.url.path.rstrip("/") in _SESSION_OPTIONAL_PATHS:
            return await call_next(request)
        try:
            runtime.csrf.enforce(session, request.headers.get(CSRF_HEADER))
        except ServiceError as exc:
            return _error_response(exc.status_code, exc.message, code=exc.error_code)
        return await call_next(request)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
        if settings.is_production and settings.enable_hsts:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=31536000; includeSubDomains"
            )
        response.headers.setdefault(
            "Content-Security-Policy", "default-src 'self'; frame-ancestors 'none'"
        )
        response.headers.setdefault("API-Version", __version__)
        return response

    # Registered last so it runs first and every log line carries the id
    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        """Liveness plus dependency checks for the store and, if configured, Redis."""
        from grantportal.service.runtime import get_runtime

        runtime = get_runtime()
        checks: Dict[str, Dict[str, Any]] = {}

        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        store_ok = await _run_bounded("store", runtime.store.verify_connection)
        checks["store"] = {"status": "healthy" if store_ok else "unhealthy", "type": "memory"}
        healthy = store_ok
        if runtime.cache is not None:
            redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
            healthy = healthy and redis_ok
        else:
            checks["redis"] = {"status": "not_configured"}
        return {
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()
