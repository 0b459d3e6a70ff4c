from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from sessionvault.config import Settings
from sessionvault.logging import get_logger
from sessionvault.service.errors import AuthErrorKind
from sessionvault.service.revocation import RevocationManager
from sessionvault.service.tokens import (
    IdentityStore,
    SessionCache,
    TokenDecodeError,
    TokenExpiredError,
    decode_jwt,
)
from sessionvault.storage.models import SessionRecord, User

logger = get_logger(__name__)


@dataclass(frozen=True)
class Identity:
    """Authenticated caller handed to request handlers."""

    id: str
    email: str
    roles: Tuple[str, ...]
    token_version: int
    jti: Optional[str] = None
    session_created_at: Optional[datetime] = None
    issued_at: Optional[datetime] = None

    def has_role(self, *roles: str) -> bool:
        return any(role in self.roles for role in roles)


@dataclass(frozen=True)
class ValidationResult:
    identity: Optional[Identity] = None
    error: Optional[AuthErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.identity is not None

    @classmethod
    def success(cls, identity: Identity) -> "ValidationResult":
        return cls(identity=identity)

    @classmethod
    def failure(cls, kind: AuthErrorKind) -> "ValidationResult":
        return cls(error=kind)


@dataclass
class _Attempt:
    header: Optional[str]
    token: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)
    record: Optional[SessionRecord] = None
    user: Optional[User] = None


Layer = Callable[[_Attempt], Awaitable[Optional[AuthErrorKind]]]


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def _timestamp(value: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


class TokenValidator:
    """Five ordered checks over a bearer credential; the first failure wins.

    Later layers never run once an earlier one rejects, so a cheap structural
    failure never reaches the ephemeral or durable stores.
    """

    def __init__(
        self,
        store: IdentityStore,
        cache: SessionCache,
        revocation: RevocationManager,
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.revocation = revocation
        self.settings = settings
        self.layers: Tuple[Layer, ...] = (
            self._check_format,
            self._check_signature,
            self._check_session,
            self._check_user,
            self._check_version,
        )

    async def validate(self, authorization: Optional[str]) -> ValidationResult:
        attempt = _Attempt(header=authorization)
        for layer in self.layers:
            kind = await layer(attempt)
            if kind is not None:
                logger.info(
                    "token_rejected",
                    reason=kind.value,
                    layer=layer.__name__.lstrip("_"),
                    user_id=attempt.claims.get("id"),
                    jti=attempt.claims.get("jti"),
                )
                return ValidationResult.failure(kind)
        return ValidationResult.success(self._identity(attempt))

    async def validate_optional(self, authorization: Optional[str]) -> Optional[Identity]:
        if not authorization:
            return None
        result = await self.validate(authorization)
        return result.identity

    def check_freshness(
        self, identity: Identity, max_age_seconds: Optional[int] = None
    ) -> Optional[AuthErrorKind]:
        """Reject sessions older than the window for sensitive operations."""
        window = (
            self.settings.freshness_window_seconds
            if max_age_seconds is None
            else max_age_seconds
        )
        started = identity.session_created_at or identity.issued_at
        if started is None:
            return AuthErrorKind.TOKEN_EXPIRED
        age = (datetime.now(timezone.utc) - started).total_seconds()
        if age > window:
            logger.info("session_not_fresh", user_id=identity.id, jti=identity.jti, age=int(age))
            return AuthErrorKind.TOKEN_EXPIRED
        return None

    @staticmethod
    def check_roles(identity: Identity, *roles: str) -> Optional[AuthErrorKind]:
        if roles and not identity.has_role(*roles):
            return AuthErrorKind.FORBIDDEN
        return None

    # layers ---------------------------------------------------------------

    async def _check_format(self, attempt: _Attempt) -> Optional[AuthErrorKind]:
        attempt.token = _extract_bearer(attempt.header)
        if attempt.token is None:
            return AuthErrorKind.AUTHENTICATION_REQUIRED
        return None

    async def _check_signature(self, attempt: _Attempt) -> Optional[AuthErrorKind]:
        try:
            claims = decode_jwt(
                attempt.token,
                self.settings.jwt_secret,
                leeway_seconds=self.settings.clock_skew_leeway_seconds,
            )
        except TokenExpiredError as exc:
            jti = exc.claims.get("jti")
            if jti:
                await self.revocation.discard_session(str(jti), exc.claims.get("id"))
            attempt.claims = exc.claims
            return AuthErrorKind.TOKEN_EXPIRED
        except TokenDecodeError as exc:
            logger.debug("token_decode_failed", error=str(exc))
            return AuthErrorKind.INVALID_TOKEN
        if not claims.get("id"):
            return AuthErrorKind.INVALID_TOKEN
        claims["id"] = str(claims["id"])
        attempt.claims = claims
        return None

    async def _check_session(self, attempt: _Attempt) -> Optional[AuthErrorKind]:
        claims = attempt.claims
        jti = claims.get("jti")
        if not jti:
            logger.warning("legacy_token_without_jti", user_id=claims.get("id"))
            return None
        record = await self.cache.get_session(jti)
        if record is None:
            return AuthErrorKind.TOKEN_REVOKED
        if record.user_id != claims["id"]:
            return AuthErrorKind.OWNERSHIP_MISMATCH
        if "version" in claims and claims["version"] != record.token_version:
            await self.revocation.discard_session(jti, record.user_id)
            return AuthErrorKind.VERSION_MISMATCH
        attempt.record = record
        return None

    async def _check_user(self, attempt: _Attempt) -> Optional[AuthErrorKind]:
        user = self.store.get_user(attempt.claims["id"])
        if not user or not user.is_active:
            return AuthErrorKind.USER_NOT_FOUND
        attempt.user = user
        return None

    async def _check_version(self, attempt: _Attempt) -> Optional[AuthErrorKind]:
        if attempt.claims.get("version") != attempt.user.token_version:
            jti = attempt.claims.get("jti")
            if jti:
                await self.revocation.discard_session(jti, attempt.user.id)
            return AuthErrorKind.VERSION_MISMATCH
        return None

    def _identity(self, attempt: _Attempt) -> Identity:
        user = attempt.user
        return Identity(
            id=user.id,
            email=user.email,
            roles=tuple(user.roles),
            token_version=user.token_version,
            jti=attempt.claims.get("jti"),
            session_created_at=attempt.record.created_at if attempt.record else None,
            issued_at=_timestamp(attempt.claims.get("iat")),
        )
