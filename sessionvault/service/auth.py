from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from sessionvault.config import Settings
from sessionvault.logging import get_logger
from sessionvault.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    error_for_kind,
)
from sessionvault.service.revocation import (
    LogoutScope,
    RevocationManager,
    RevocationSummary,
)
from sessionvault.service.sessions import SessionDirectory, SessionView
from sessionvault.service.tokens import (
    IdentityStore,
    IssuedTokens,
    RefreshedAccess,
    SessionCache,
    TokenIssuer,
)
from sessionvault.service.validator import Identity, TokenValidator
from sessionvault.storage.errors import ConstraintViolation
from sessionvault.storage.models import DeviceInfo, RefreshToken, Role, User


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    """Registration, login and credential lifecycle for users on many devices."""

    PASSWORD_ALGO = "argon2id"

    def __init__(self, store: IdentityStore, cache: SessionCache, settings: Settings) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.logger = get_logger(__name__)
        self.issuer = TokenIssuer(store, cache, settings)
        self.revocation = RevocationManager(store, cache)
        self.validator = TokenValidator(store, cache, self.revocation, settings)
        self.sessions = SessionDirectory(store, cache)
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    # passwords -----------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), self.PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != self.PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.info("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # account entry -------------------------------------------------------

    async def register(
        self, email: str, password: str, device: Optional[DeviceInfo] = None
    ) -> Tuple[User, IssuedTokens]:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        try:
            user = self.store.create_user(normalize_email(email))
        except ConstraintViolation:
            raise ConflictError("email already registered", detail={"field": "email"})
        self.save_password(user.id, password)
        tokens = await self.issuer.issue(user, device)
        self.logger.info("user_registered", user_id=user.id)
        return user, tokens

    async def login(
        self, email: str, password: str, device: Optional[DeviceInfo] = None
    ) -> Tuple[User, IssuedTokens]:
        user = self.store.get_user_by_email(normalize_email(email))
        if not user or not self.verify_password(user.id, password):
            raise AuthenticationError("invalid credentials")
        if not user.is_active:
            self.logger.info("login_inactive_user", user_id=user.id)
            raise AuthenticationError("invalid credentials")
        tokens = await self.issuer.issue(user, device)
        return user, tokens

    async def refresh(
        self, refresh_token: str, device: Optional[DeviceInfo] = None
    ) -> RefreshedAccess:
        return await self.issuer.refresh(refresh_token, device)

    async def authenticate(
        self, authorization: Optional[str], *roles: str
    ) -> Identity:
        """Validate a bearer header and return the caller, raising on rejection."""
        result = await self.validator.validate(authorization)
        if result.identity is None:
            raise error_for_kind(result.error)
        denied = self.validator.check_roles(result.identity, *roles)
        if denied is not None:
            self.logger.info("role_check_failed", user_id=result.identity.id, required=list(roles))
            raise error_for_kind(denied)
        return result.identity

    def require_fresh(self, identity: Identity, max_age_seconds: Optional[int] = None) -> None:
        stale = self.validator.check_freshness(identity, max_age_seconds)
        if stale is not None:
            raise error_for_kind(stale)

    # revocation ----------------------------------------------------------

    async def logout(
        self,
        user_id: str,
        *,
        refresh_token: Optional[str] = None,
        jti: Optional[str] = None,
    ) -> LogoutScope:
        return await self.revocation.logout(user_id, refresh_token=refresh_token, jti=jti)

    async def logout_all(self, user_id: str) -> RevocationSummary:
        return await self.revocation.revoke_all(user_id)

    async def logout_session(self, user_id: str, jti: str) -> None:
        await self.revocation.revoke_session(user_id, jti)

    async def logout_device(self, user_id: str, token_id: str) -> None:
        await self.revocation.revoke_device(user_id, token_id)

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> RevocationSummary:
        if not self.verify_password(user_id, current_password):
            raise BadRequestError("current password is incorrect")
        self.save_password(user_id, new_password)
        self.logger.info("password_changed", user_id=user_id)
        return await self.revocation.revoke_all(user_id)

    # directory -----------------------------------------------------------

    async def list_sessions(
        self, user_id: str, current_jti: Optional[str] = None
    ) -> List[SessionView]:
        return await self.sessions.list_sessions(user_id, current_jti)

    def list_devices(self, user_id: str) -> List[RefreshToken]:
        return self.sessions.list_devices(user_id)

    # administration ------------------------------------------------------

    @staticmethod
    def _parse_role(role: str) -> str:
        try:
            return Role(role).value
        except ValueError:
            raise BadRequestError(
                "unknown role", detail={"allowed": [r.value for r in Role]}
            )

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    async def add_role(self, user_id: str, role: str) -> User:
        role = self._parse_role(role)
        user = self._require_user(user_id)
        if role in user.roles:
            return user
        updated = self.store.set_user_roles(user_id, [*user.roles, role])
        self.logger.info("user_role_added", user_id=user_id, role=role)
        return updated or user

    async def remove_role(self, user_id: str, role: str) -> User:
        role = self._parse_role(role)
        user = self._require_user(user_id)
        if role not in user.roles:
            return user
        remaining = [r for r in user.roles if r != role]
        if not remaining:
            raise BadRequestError("user must keep at least one role")
        updated = self.store.set_user_roles(user_id, remaining)
        self.logger.info("user_role_removed", user_id=user_id, role=role)
        return updated or user

    async def token_stats(self) -> Dict[str, Any]:
        stats = await self.cache.get_stats()
        return {
            "active_sessions": stats.get("active_sessions", 0),
            "users_with_sessions": stats.get("users_with_sessions", 0),
            "active_refresh_tokens": self.store.count_active_refresh_tokens(),
            "memory_usage": stats.get("memory_usage"),
        }
