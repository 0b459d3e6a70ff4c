from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sessionvault.logging import get_logger
from sessionvault.service.errors import NotFoundError
from sessionvault.service.tokens import IdentityStore, SessionCache
from sessionvault.storage.models import utcnow

logger = get_logger(__name__)


class LogoutScope(str, Enum):
    """How much a logout call actually revoked."""

    NONE = "none"
    SESSION = "session"
    DEVICE = "device"
    ALL = "all"


@dataclass
class RevocationSummary:
    token_version: int
    refresh_tokens_revoked: int
    sessions_revoked: int


class RevocationManager:
    """Invalidates credentials at session, device and user granularity.

    The durable store is the source of truth: ``revoke_all`` commits the
    ``token_version`` bump before touching ephemeral state, so a cache failure
    afterwards still leaves every outstanding access token rejected by the
    validator's version check.
    """

    def __init__(self, store: IdentityStore, cache: SessionCache) -> None:
        self.store = store
        self.cache = cache

    async def revoke_session(
        self,
        user_id: str,
        jti: Optional[str],
        refresh_token: Optional[str] = None,
    ) -> None:
        if jti:
            await self.cache.revoke_session(jti, user_id)
            logger.info("session_revoked", user_id=user_id, jti=jti)
        if refresh_token:
            row = self.store.get_refresh_token_by_value(refresh_token)
            if row and row.user_id == user_id:
                self.store.revoke_refresh_token(row.id)
                logger.info("refresh_token_revoked", user_id=user_id, token_id=row.id)
            else:
                # Unknown or foreign refresh tokens are ignored, not reported
                logger.info("refresh_token_revoke_skipped", user_id=user_id)

    async def revoke_device(self, user_id: str, refresh_token_id: str) -> None:
        row = self.store.get_refresh_token(refresh_token_id)
        if not row or row.user_id != user_id:
            raise NotFoundError("device not found")
        self.store.revoke_refresh_token(row.id)
        logger.info("device_revoked", user_id=user_id, token_id=row.id)

    async def revoke_all(self, user_id: str) -> RevocationSummary:
        version = self.store.increment_token_version(user_id)
        if version is None:
            raise NotFoundError("user not found")
        refresh_revoked = self.store.revoke_user_refresh_tokens(user_id)
        sessions_revoked = 0
        try:
            sessions_revoked = await self.cache.revoke_user_sessions(user_id)
        except Exception as exc:
            logger.warning(
                "session_purge_failed",
                user_id=user_id,
                token_version=version,
                error=str(exc),
            )
        logger.info(
            "all_sessions_revoked",
            user_id=user_id,
            token_version=version,
            refresh_tokens_revoked=refresh_revoked,
            sessions_revoked=sessions_revoked,
        )
        return RevocationSummary(
            token_version=version,
            refresh_tokens_revoked=refresh_revoked,
            sessions_revoked=sessions_revoked,
        )

    async def logout(
        self,
        user_id: str,
        *,
        refresh_token: Optional[str] = None,
        jti: Optional[str] = None,
    ) -> LogoutScope:
        """Revoke as narrowly as the supplied credentials allow.

        A refresh token ends that device (plus the access session when ``jti`` is
        known); a bare ``jti`` ends one session; nothing at all ends every
        session of the user.
        """
        if refresh_token:
            await self.revoke_session(user_id, jti, refresh_token)
            return LogoutScope.DEVICE
        if jti:
            await self.revoke_session(user_id, jti)
            return LogoutScope.SESSION
        await self.revoke_all(user_id)
        return LogoutScope.ALL

    async def discard_session(self, jti: str, user_id: Optional[str] = None) -> None:
        try:
            await self.cache.revoke_session(jti, user_id)
        except Exception as exc:
            logger.warning("session_cleanup_failed", jti=jti, user_id=user_id, error=str(exc))

    def purge_refresh_tokens(self) -> int:
        return self.store.purge_refresh_tokens(utcnow())
