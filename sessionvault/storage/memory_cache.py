from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from sessionvault.logging import get_logger
from sessionvault.storage.models import SessionRecord
from sessionvault.storage.redis_cache import (
    SESSION_KEY_PREFIX,
    USER_SESSIONS_KEY_PREFIX,
)

logger = get_logger(__name__)

# Minimum gap between full sweeps of expired entries
SWEEP_INTERVAL_SECONDS = 60.0


class MemorySessionCache:
    """Process-local stand-in for Redis used under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV.

    Keys expire lazily on access and are swept in bulk at most once per
    ``SWEEP_INTERVAL_SECONDS`` on writes. Records are stored as JSON so reads
    see the same shape they would get back from Redis.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: Dict[str, Tuple[str, float]] = {}
        self._user_sessions: Dict[str, Tuple[Set[str], float]] = {}
        # key -> (tokens, last refill, time the bucket is full again)
        self._rate_limits: Dict[str, Tuple[float, float, float]] = {}
        self._next_sweep = clock() + SWEEP_INTERVAL_SECONDS

    def verify_connection(self) -> None:
        return None

    def _live_session(self, jti: str, now: float) -> Optional[str]:
        entry = self._sessions.get(jti)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at <= now:
            del self._sessions[jti]
            return None
        return raw

    def _live_members(self, user_id: str, now: float) -> Set[str]:
        entry = self._user_sessions.get(user_id)
        if entry is None:
            return set()
        members, expires_at = entry
        if expires_at <= now:
            del self._user_sessions[user_id]
            return set()
        return members

    def _sweep(self, now: float) -> None:
        if now < self._next_sweep:
            return
        self._next_sweep = now + SWEEP_INTERVAL_SECONDS
        for jti in [j for j, (_, exp) in self._sessions.items() if exp <= now]:
            del self._sessions[jti]
        for user_id in [u for u, (_, exp) in self._user_sessions.items() if exp <= now]:
            del self._user_sessions[user_id]
        # A refilled bucket is indistinguishable from a missing one
        for key in [k for k, (_, _, full_at) in self._rate_limits.items() if full_at <= now]:
            del self._rate_limits[key]

    async def store_session(
        self, jti: str, record: SessionRecord, ttl_seconds: int, set_ttl_seconds: int
    ) -> None:
        now = self._clock()
        with self._lock:
            self._sweep(now)
            self._sessions[jti] = (record.to_json(), now + max(1, int(ttl_seconds)))
            members = self._live_members(record.user_id, now)
            members.add(jti)
            self._user_sessions[record.user_id] = (
                members,
                now + max(1, int(set_ttl_seconds)),
            )

    async def get_session(self, jti: str) -> Optional[SessionRecord]:
        with self._lock:
            raw = self._live_session(jti, self._clock())
        return SessionRecord.from_json(raw) if raw is not None else None

    async def revoke_session(self, jti: str, user_id: Optional[str] = None) -> None:
        now = self._clock()
        with self._lock:
            raw = self._live_session(jti, now)
            if user_id is None and raw is not None:
                user_id = SessionRecord.from_json(raw).user_id
            self._sessions.pop(jti, None)
            if user_id is not None:
                self._live_members(user_id, now).discard(jti)

    async def revoke_user_sessions(self, user_id: str) -> int:
        now = self._clock()
        with self._lock:
            members = self._live_members(user_id, now)
            revoked = 0
            for jti in members:
                if self._live_session(jti, now) is not None:
                    revoked += 1
                self._sessions.pop(jti, None)
            self._user_sessions.pop(user_id, None)
        return revoked

    async def list_user_sessions(self, user_id: str) -> List[Tuple[str, SessionRecord]]:
        now = self._clock()
        found: List[Tuple[str, str]] = []
        with self._lock:
            for jti in sorted(self._live_members(user_id, now)):
                raw = self._live_session(jti, now)
                if raw is not None:
                    found.append((jti, raw))
        return [(jti, SessionRecord.from_json(raw)) for jti, raw in found]

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        now = self._clock()
        refill_rate = float(limit) / float(window_seconds)
        with self._lock:
            self._sweep(now)
            tokens, last_ts, _ = self._rate_limits.get(key, (float(limit), now, now))
            elapsed = max(0.0, now - last_ts)
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            full_at = now + (float(limit) - tokens) / refill_rate if refill_rate > 0 else now
            self._rate_limits[key] = (tokens, now, full_at)
        reset_seconds = (
            int((cost - tokens) / refill_rate) if not allowed and refill_rate > 0 else 0
        )
        if return_remaining:
            return (allowed, int(tokens), reset_seconds)
        return allowed

    async def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            active = sum(1 for jti in list(self._sessions) if self._live_session(jti, now))
            users = sum(
                1 for user_id in list(self._user_sessions) if self._live_members(user_id, now)
            )
        return {
            "active_sessions": active,
            "users_with_sessions": users,
            "memory_usage": None,
        }

    def keys(self) -> List[str]:
        """Live keys in Redis naming, for inspection in tests and debugging."""
        now = self._clock()
        with self._lock:
            sessions = [
                f"{SESSION_KEY_PREFIX}{jti}"
                for jti in list(self._sessions)
                if self._live_session(jti, now) is not None
            ]
            sets = [
                f"{USER_SESSIONS_KEY_PREFIX}{user_id}"
                for user_id in list(self._user_sessions)
                if self._live_members(user_id, now)
            ]
        return sorted(sessions + sets)

    async def close(self) -> None:
        with self._lock:
            self._sessions.clear()
            self._user_sessions.clear()
            self._rate_limits.clear()
        logger.debug("memory_session_cache_closed")
