from __future__ import annotations

import hashlib
import time
from typing import Any, Dict, List, Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

from sessionvault.logging import get_logger
from sessionvault.storage.models import SessionRecord

logger = get_logger(__name__)

SESSION_KEY_PREFIX = "session:"
USER_SESSIONS_KEY_PREFIX = "sessions-of-user:"


def session_key(jti: str) -> str:
    return f"{SESSION_KEY_PREFIX}{jti}"


def user_sessions_key(user_id: str) -> str:
    return f"{USER_SESSIONS_KEY_PREFIX}{user_id}"


def _decode_record(jti: str, raw: Optional[str]) -> Optional[SessionRecord]:
    if raw is None:
        return None
    try:
        return SessionRecord.from_json(raw)
    except (ValueError, KeyError, TypeError) as exc:
        logger.warning("session_record_corrupt", jti=jti, error=str(exc))
        return None


def _memory_usage(info: Dict[str, Any]) -> Optional[str]:
    return info.get("used_memory_human") or (
        str(info["used_memory"]) if "used_memory" in info else None
    )


class RedisCache:
    """Redis-backed JTI session store with per-user session sets and rate limits."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Token bucket: atomic refill + consume
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
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
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

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def store_session(
        self, jti: str, record: SessionRecord, ttl_seconds: int, set_ttl_seconds: int
    ) -> None:
        user_key = user_sessions_key(record.user_id)
        pipe = self.client.pipeline(transaction=True)
        pipe.set(session_key(jti), record.to_json(), ex=max(1, int(ttl_seconds)))
        pipe.sadd(user_key, jti)
        pipe.expire(user_key, max(1, int(set_ttl_seconds)))
        await pipe.execute()

    async def get_session(self, jti: str) -> Optional[SessionRecord]:
        return _decode_record(jti, await self.client.get(session_key(jti)))

    async def revoke_session(self, jti: str, user_id: Optional[str] = None) -> None:
        if user_id is None:
            record = await self.get_session(jti)
            user_id = record.user_id if record else None
        pipe = self.client.pipeline(transaction=True)
        pipe.delete(session_key(jti))
        if user_id is not None:
            pipe.srem(user_sessions_key(user_id), jti)
        await pipe.execute()

    async def revoke_user_sessions(self, user_id: str) -> int:
        """Delete every session record of ``user_id`` and drop those members.

        Only the members read here are removed from the set, so a session
        stored concurrently keeps its membership.

        Returns:
            Number of session records that were still present.
        """
        user_key = user_sessions_key(user_id)
        jtis = list(await self.client.smembers(user_key))
        if not jtis:
            return 0
        pipe = self.client.pipeline(transaction=True)
        for jti in jtis:
            pipe.delete(session_key(jti))
        pipe.srem(user_key, *jtis)
        results = await pipe.execute()
        return sum(int(r) for r in results[:-1])

    async def list_user_sessions(self, user_id: str) -> List[Tuple[str, SessionRecord]]:
        jtis = sorted(await self.client.smembers(user_sessions_key(user_id)))
        if not jtis:
            return []
        pipe = self.client.pipeline(transaction=False)
        for jti in jtis:
            pipe.get(session_key(jti))
        raw_records = await pipe.execute()
        sessions: List[Tuple[str, SessionRecord]] = []
        for jti, raw in zip(jtis, raw_records):
            record = _decode_record(jti, raw)
            # Set members whose record already expired are skipped
            if record is not None:
                sessions.append((jti, record))
        return sessions

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate limit subjects so delimiters in emails cannot collide."""
        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(float(tokens))), int(reset_after or 0))
        return allowed_bool

    async def get_stats(self) -> Dict[str, Any]:
        active_sessions = 0
        async for _ in self.client.scan_iter(match=f"{SESSION_KEY_PREFIX}*", count=500):
            active_sessions += 1
        users_with_sessions = 0
        async for _ in self.client.scan_iter(match=f"{USER_SESSIONS_KEY_PREFIX}*", count=500):
            users_with_sessions += 1
        info = await self.client.info("memory")
        return {
            "active_sessions": active_sessions,
            "users_with_sessions": users_with_sessions,
            "memory_usage": _memory_usage(info),
        }

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes async methods so it can be awaited like RedisCache.
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

    async def store_session(
        self, jti: str, record: SessionRecord, ttl_seconds: int, set_ttl_seconds: int
    ) -> None:
        user_key = user_sessions_key(record.user_id)
        pipe = self.client.pipeline(transaction=True)
        pipe.set(session_key(jti), record.to_json(), ex=max(1, int(ttl_seconds)))
        pipe.sadd(user_key, jti)
        pipe.expire(user_key, max(1, int(set_ttl_seconds)))
        pipe.execute()

    async def get_session(self, jti: str) -> Optional[SessionRecord]:
        return _decode_record(jti, self.client.get(session_key(jti)))

    async def revoke_session(self, jti: str, user_id: Optional[str] = None) -> None:
        if user_id is None:
            record = await self.get_session(jti)
            user_id = record.user_id if record else None
        pipe = self.client.pipeline(transaction=True)
        pipe.delete(session_key(jti))
        if user_id is not None:
            pipe.srem(user_sessions_key(user_id), jti)
        pipe.execute()

    async def revoke_user_sessions(self, user_id: str) -> int:
        user_key = user_sessions_key(user_id)
        jtis = list(self.client.smembers(user_key))
        if not jtis:
            return 0
        pipe = self.client.pipeline(transaction=True)
        for jti in jtis:
            pipe.delete(session_key(jti))
        pipe.srem(user_key, *jtis)
        results = pipe.execute()
        return sum(int(r) for r in results[:-1])

    async def list_user_sessions(self, user_id: str) -> List[Tuple[str, SessionRecord]]:
        jtis = sorted(self.client.smembers(user_sessions_key(user_id)))
        if not jtis:
            return []
        pipe = self.client.pipeline(transaction=False)
        for jti in jtis:
            pipe.get(session_key(jti))
        sessions: List[Tuple[str, SessionRecord]] = []
        for jti, raw in zip(jtis, pipe.execute()):
            record = _decode_record(jti, raw)
            if record is not None:
                sessions.append((jti, record))
        return sessions

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = RedisCache._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key], args=[time.time(), refill_rate, limit, max(1, cost)]
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(float(tokens))), int(reset_after or 0))
        return allowed_bool

    async def get_stats(self) -> Dict[str, Any]:
        active_sessions = sum(
            1 for _ in self.client.scan_iter(match=f"{SESSION_KEY_PREFIX}*", count=500)
        )
        users_with_sessions = sum(
            1 for _ in self.client.scan_iter(match=f"{USER_SESSIONS_KEY_PREFIX}*", count=500)
        )
        return {
            "active_sessions": active_sessions,
            "users_with_sessions": users_with_sessions,
            "memory_usage": _memory_usage(self.client.info("memory")),
        }

    async def close(self) -> None:
        """Close Redis connection."""
        self.client.close()
