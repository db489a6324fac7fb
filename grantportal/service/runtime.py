from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from grantportal.config import get_settings, reset_settings_cache
from grantportal.logging import get_logger
from grantportal.service.abilities import AbilityResolver
from grantportal.service.auth import AuthGateway
from grantportal.service.csrf import CsrfGuard
from grantportal.service.lockout import LockoutTracker
from grantportal.service.sessions import SessionRegistry
from grantportal.service.tokens import TokenIssuer
from grantportal.storage.memory import MemoryStore
from grantportal.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

LOCAL_RATE_LIMIT_SWEEP_SIZE = 1024


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL before it is logged.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = MemoryStore(fs_root=self.settings.shared_fs_root)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode so it is not bound to one event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the session index, renewal revocations and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits and renewal "
                    "revocations are in-memory only."
                ),
                mode=fallback_mode,
            )

        self.tokens = TokenIssuer.from_settings(self.settings)
        self.lockout = LockoutTracker(
            self.store,
            threshold=self.settings.max_login_attempts,
            lock_duration=timedelta(minutes=self.settings.lockout_minutes),
        )
        self.sessions = SessionRegistry(
            self.store, self.cache, ttl_minutes=self.settings.session_ttl_minutes
        )
        self.csrf = CsrfGuard(self.sessions, exempt_paths=self.settings.csrf_exempt_paths)
        # Built once; handlers only ever read it
        self.abilities = AbilityResolver()
        self.auth = AuthGateway(
            self.store,
            tokens=self.tokens,
            lockout=self.lockout,
            sessions=self.sessions,
            csrf=self.csrf,
            abilities=self.abilities,
            cache=self.cache,
            password_history_size=self.settings.password_history_size,
        )

        # key -> (tokens, last refill, time the bucket is full again)
        self._local_rate_limits: Dict[str, Tuple[float, datetime, datetime]] = {}
        self._local_rate_limit_lock = threading.Lock()
        self.local_rate_limit_sweep_size = LOCAL_RATE_LIMIT_SWEEP_SIZE

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            access_ttl_minutes=self.settings.access_token_ttl_minutes,
            max_login_attempts=self.settings.max_login_attempts,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path, the second
    check under the lock stops two threads from both building a runtime.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    runtime.cache.client.close()
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except Exception as exc:
                # Connection may already be closed
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


def _prune_local_rate_limits(runtime: Runtime, now: datetime) -> int:
    """Drop buckets that have refilled completely; returns how many were removed."""
    stale = [key for key, (_, _, full_at) in runtime._local_rate_limits.items() if full_at <= now]
    for key in stale:
        del runtime._local_rate_limits[key]
    return len(stale)


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket gate that keeps working when Redis is unavailable.

    Returns ``allowed``, or ``(allowed, remaining, reset_seconds)`` when
    ``return_remaining`` is set. A non-positive ``limit`` disables the gate.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        if len(runtime._local_rate_limits) >= runtime.local_rate_limit_sweep_size:
            _prune_local_rate_limits(runtime, now)
        tokens, last_ts, _ = runtime._local_rate_limits.get(key, (float(limit), now, now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        full_at = now + timedelta(seconds=(float(limit) - tokens) / refill_rate)
        runtime._local_rate_limits[key] = (tokens, now, full_at)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
