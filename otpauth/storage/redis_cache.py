from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


def login_session_key(token: str) -> str:
    return f"login_session:{token}"


def rate_limit_key(group: str, identity: str) -> str:
    return f"rate_limit:{group}:{identity}"


class RedisCache:
    """Thin Redis wrapper for login sessions and rate limits."""

    # Atomic try increment: read, bump tries, trip Waiting -> Corrupted past
    # the budget, write back with a fresh TTL. Returns nil for a missing key.
    _INCREMENT_TRIES_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return nil
end
local max_tries = tonumber(ARGV[1])
local ttl = tonumber(ARGV[2])
local session = cjson.decode(raw)
session['tries'] = (tonumber(session['tries']) or 0) + 1
if tonumber(session['state']) == 0 and session['tries'] > max_tries then
  session['state'] = 2
end
local encoded = cjson.encode(session)
redis.call('SET', KEYS[1], encoded, 'EX', ttl)
return encoded
"""

    # Compare-and-set Waiting -> Success. 1 transitioned, 0 already resolved,
    # -1 missing key.
    _MARK_SUCCESS_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return -1
end
local ttl = tonumber(ARGV[1])
local session = cjson.decode(raw)
if tonumber(session['state']) ~= 0 then
  return 0
end
session['state'] = 1
redis.call('SET', KEYS[1], cjson.encode(session), 'EX', ttl)
return 1
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment_tries = self.client.register_script(
            self._INCREMENT_TRIES_SCRIPT
        )
        self._mark_success = self.client.register_script(self._MARK_SUCCESS_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_login_session(self, token: str, payload: str, ttl: int) -> None:
        await self.client.set(login_session_key(token), payload, ex=ttl)

    async def get_login_session(self, token: str) -> Optional[str]:
        return await self.client.get(login_session_key(token))

    async def increment_login_tries(
        self, token: str, max_tries: int, ttl: int
    ) -> Optional[str]:
        return await self._increment_tries(
            keys=[login_session_key(token)], args=[max_tries, ttl]
        )

    async def mark_login_success(self, token: str, ttl: int) -> int:
        result = await self._mark_success(keys=[login_session_key(token)], args=[ttl])
        return int(result)

    async def incr_rate_limit(self, group: str, identity: str, window: int) -> int:
        """Count one hit and re-arm the window expiry in a single MULTI batch.

        The expiry is refreshed on every hit, so the window slides with activity.
        """
        key = rate_limit_key(group, identity)
        pipe = self.client.pipeline(transaction=True)
        pipe.incr(key)
        pipe.expire(key, window)
        count, _ = await pipe.execute()
        return int(count)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment_tries = self._sync_client.register_script(
            RedisCache._INCREMENT_TRIES_SCRIPT
        )
        self._mark_success = self._sync_client.register_script(
            RedisCache._MARK_SUCCESS_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def set_login_session(self, token: str, payload: str, ttl: int) -> None:
        self._sync_client.set(login_session_key(token), payload, ex=ttl)

    async def get_login_session(self, token: str) -> Optional[str]:
        return self._sync_client.get(login_session_key(token))

    async def increment_login_tries(
        self, token: str, max_tries: int, ttl: int
    ) -> Optional[str]:
        return self._increment_tries(
            keys=[login_session_key(token)], args=[max_tries, ttl]
        )

    async def mark_login_success(self, token: str, ttl: int) -> int:
        return int(self._mark_success(keys=[login_session_key(token)], args=[ttl]))

    async def incr_rate_limit(self, group: str, identity: str, window: int) -> int:
        key = rate_limit_key(group, identity)
        pipe = self._sync_client.pipeline(transaction=True)
        pipe.incr(key)
        pipe.expire(key, window)
        count, _ = pipe.execute()
        return int(count)

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()


__all__ = ["RedisCache", "SyncRedisCache", "login_session_key", "rate_limit_key"]
