from __future__ import annotations

import hashlib
import time
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for the session index, renewal revocations, and rate limits."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Lua token bucket: atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Compute a TTL of at least one second from an absolute expiry."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        # Hash the subject so user-controlled input cannot collide with other keys
        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"auth:session:{session_id}"

    @staticmethod
    def _user_sessions_key(user_id: str) -> str:
        return f"auth:user_sessions:{user_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def cache_session(
        self, session_id: str, user_id: str, expires_at: datetime
    ) -> None:
        ttl = self._ttl_seconds(expires_at)
        pipe = self.client.pipeline()
        pipe.set(self._session_key(session_id), user_id, ex=ttl)
        pipe.sadd(self._user_sessions_key(user_id), session_id)
        pipe.expire(self._user_sessions_key(user_id), ttl)
        await pipe.execute()

    async def revoke_session(self, session_id: str, user_id: Optional[str] = None) -> None:
        pipe = self.client.pipeline()
        pipe.delete(self._session_key(session_id))
        if user_id:
            pipe.srem(self._user_sessions_key(user_id), session_id)
        await pipe.execute()

    async def revoke_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        """Drop every cached session for a user, optionally keeping one."""
        user_sessions_key = self._user_sessions_key(user_id)
        session_ids = await self.client.smembers(user_sessions_key)
        if not session_ids:
            return 0
        revoked = 0
        pipe = self.client.pipeline()
        for session_id in session_ids:
            if except_session_id and session_id == except_session_id:
                continue
            pipe.delete(self._session_key(session_id))
            pipe.srem(user_sessions_key, session_id)
            revoked += 1
        await pipe.execute()
        return revoked

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Token bucket check executed atomically in Lua."""
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[self._normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(float(tokens))), int(reset_after or 0))
        return allowed_bool

    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> bool:
        """Revoke ``jti``; True only for the caller that revoked it first."""
        return bool(
            await self.client.set(
                f"auth:refresh:revoked:{jti}", "1", ex=max(1, ttl_seconds), nx=True
            )
        )

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper exposing the same awaitable API.

    Used in test mode so the client is not bound to the event loop of a
    single test; each coroutine simply runs the blocking command.
    """

    def __init__(
        self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(RedisCache._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def cache_session(
        self, session_id: str, user_id: str, expires_at: datetime
    ) -> None:
        ttl = RedisCache._ttl_seconds(expires_at)
        pipe = self.client.pipeline()
        pipe.set(RedisCache._session_key(session_id), user_id, ex=ttl)
        pipe.sadd(RedisCache._user_sessions_key(user_id), session_id)
        pipe.expire(RedisCache._user_sessions_key(user_id), ttl)
        pipe.execute()

    async def revoke_session(self, session_id: str, user_id: Optional[str] = None) -> None:
        pipe = self.client.pipeline()
        pipe.delete(RedisCache._session_key(session_id))
        if user_id:
            pipe.srem(RedisCache._user_sessions_key(user_id), session_id)
        pipe.execute()

    async def revoke_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        user_sessions_key = RedisCache._user_sessions_key(user_id)
        session_ids = self.client.smembers(user_sessions_key)
        if not session_ids:
            return 0
        revoked = 0
        pipe = self.client.pipeline()
        for session_id in session_ids:
            if except_session_id and session_id == except_session_id:
                continue
            pipe.delete(RedisCache._session_key(session_id))
            pipe.srem(user_sessions_key, session_id)
            revoked += 1
        pipe.execute()
        return revoked

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[RedisCache._normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(float(tokens))), int(reset_after or 0))
        return allowed_bool

    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> bool:
        return bool(
            self.client.set(
                f"auth:refresh:revoked:{jti}", "1", ex=max(1, ttl_seconds), nx=True
            )
        )

    async def close(self) -> None:
        self.client.close()
