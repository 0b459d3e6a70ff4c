from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import time
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

from sessionvault.config import Settings
from sessionvault.logging import get_logger
from sessionvault.service.errors import AuthErrorKind, TokenRejectedError
from sessionvault.storage.models import (
    DeviceInfo,
    RefreshToken,
    SessionRecord,
    User,
)

logger = get_logger(__name__)


class IdentityStore(Protocol):
    """Durable system of record for users and per-device refresh tokens."""

    def create_user(
        self,
        email: str,
        *,
        roles: Optional[List[str]] = None,
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def increment_token_version(self, user_id: str) -> Optional[int]: ...

    def set_user_roles(self, user_id: str, roles: List[str]) -> Optional[User]: ...

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]: ...

    def get_refresh_token_by_value(self, value: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, token_id: str) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str) -> int: ...

    def touch_refresh_token(self, token_id: str, used_at: datetime) -> None: ...

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]: ...

    def count_active_refresh_tokens(self) -> int: ...

    def purge_refresh_tokens(self, now: datetime) -> int: ...


class SessionCache(Protocol):
    """Ephemeral JTI session store with per-key expiry."""

    async def store_session(
        self, jti: str, record: SessionRecord, ttl_seconds: int, set_ttl_seconds: int
    ) -> None: ...

    async def get_session(self, jti: str) -> Optional[SessionRecord]: ...

    async def revoke_session(self, jti: str, user_id: Optional[str] = None) -> None: ...

    async def revoke_user_sessions(self, user_id: str) -> int: ...

    async def list_user_sessions(
        self, user_id: str
    ) -> List[Tuple[str, SessionRecord]]: ...

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool: ...

    async def get_stats(self) -> Dict[str, Any]: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


class TokenDecodeError(Exception):
    """The token is malformed, uses an unexpected algorithm, or its signature is wrong."""


class TokenExpiredError(Exception):
    """The token is correctly signed but past its ``exp`` claim."""

    def __init__(self, claims: Dict[str, Any]) -> None:
        super().__init__("token expired")
        self.claims = claims


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(signing_input: str, secret: str) -> str:
    return _encode_segment(
        hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    )


def encode_jwt(claims: Dict[str, Any], secret: str) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(claims, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_sign(signing_input, secret)}"


def decode_jwt(
    token: str, secret: str, *, leeway_seconds: int = 0
) -> Dict[str, Any]:
    """Verify an HS256 token and return its claims.

    Raises:
        TokenDecodeError: structure, algorithm or signature is invalid
        TokenExpiredError: signature is valid but ``exp`` has passed
    """
    if not token.isascii():
        raise TokenDecodeError("non-ascii token")
    try:
        header_b64, payload_b64, sig_b64 = token.split(".")
    except ValueError:
        raise TokenDecodeError("malformed token")

    # Nothing is parsed until the signature checks out
    expected_sig = _sign(f"{header_b64}.{payload_b64}", secret)
    if not hmac.compare_digest(
        expected_sig.encode(), sig_b64.encode()
    ):
        raise TokenDecodeError("signature mismatch")

    # Reject anything but HS256 to rule out algorithm confusion
    try:
        header = json.loads(_decode_segment(header_b64))
    except (ValueError, UnicodeDecodeError, RecursionError):
        raise TokenDecodeError("undecodable header")
    if not isinstance(header, dict) or header.get("alg") != "HS256":
        raise TokenDecodeError("unsupported algorithm")

    try:
        claims = json.loads(_decode_segment(payload_b64))
    except (ValueError, UnicodeDecodeError, RecursionError):
        raise TokenDecodeError("undecodable payload")
    if not isinstance(claims, dict):
        raise TokenDecodeError("payload is not an object")

    try:
        exp_ts = float(claims["exp"])
    except (KeyError, TypeError, ValueError):
        raise TokenDecodeError("missing or invalid exp")
    if exp_ts <= time.time() - leeway_seconds:
        raise TokenExpiredError(claims)
    return claims


@dataclass
class RefreshedAccess:
    access_token: str
    jti: str
    access_expires_at: datetime


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    jti: str
    access_expires_at: datetime
    refresh_token_id: str
    refresh_expires_at: datetime
    token_type: str = "bearer"


class TokenIssuer:
    """Mints access tokens, registers their sessions, and creates device refresh rows."""

    def __init__(self, store: IdentityStore, cache: SessionCache, settings: Settings) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    async def issue(self, user: User, device: Optional[DeviceInfo] = None) -> IssuedTokens:
        device = device or DeviceInfo()
        access = await self.issue_access(user, device)
        row = RefreshToken.new(
            user.id,
            user.token_version,
            self.settings.refresh_token_ttl_minutes,
            device,
        )
        self.store.create_refresh_token(row)
        logger.info(
            "credentials_issued",
            user_id=user.id,
            jti=access.jti,
            token_id=row.id,
            token_version=user.token_version,
            device=device.display_name,
        )
        return IssuedTokens(
            access_token=access.access_token,
            refresh_token=row.token,
            jti=access.jti,
            access_expires_at=access.access_expires_at,
            refresh_token_id=row.id,
            refresh_expires_at=row.expires_at,
        )

    async def issue_access(
        self, user: User, device: Optional[DeviceInfo] = None
    ) -> RefreshedAccess:
        now = self._now()
        iat = int(now.timestamp())
        exp = iat + self.access_ttl_seconds
        jti = secrets.token_hex(16)
        claims = {
            "id": user.id,
            "email": user.email,
            "version": user.token_version,
            "jti": jti,
            "iat": iat,
            "exp": exp,
        }
        token = encode_jwt(claims, self.settings.jwt_secret)
        # Record must not outlive the token it describes
        ttl = max(1, exp - math.ceil(time.time()))
        record = SessionRecord(
            user_id=user.id,
            token_version=user.token_version,
            device=device or DeviceInfo(),
            created_at=now,
        )
        await self.cache.store_session(
            jti,
            record,
            ttl_seconds=ttl,
            set_ttl_seconds=ttl + self.settings.session_set_ttl_buffer_seconds,
        )
        return RefreshedAccess(
            access_token=token,
            jti=jti,
            access_expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )

    def _reject(self, kind: AuthErrorKind, **context: Any) -> TokenRejectedError:
        logger.info("refresh_rejected", reason=kind.value, **context)
        return TokenRejectedError(kind)

    async def refresh(
        self, refresh_token_value: str, device: Optional[DeviceInfo] = None
    ) -> RefreshedAccess:
        """Exchange a device refresh token for a new access token.

        The refresh token itself is not rotated; only ``last_used_at`` moves.
        """
        row = (
            self.store.get_refresh_token_by_value(refresh_token_value)
            if refresh_token_value
            else None
        )
        if not row:
            raise self._reject(AuthErrorKind.INVALID_TOKEN)
        if row.is_revoked:
            raise self._reject(AuthErrorKind.TOKEN_REVOKED, token_id=row.id)
        now = self._now()
        if row.is_expired(now):
            self.store.revoke_refresh_token(row.id)
            raise self._reject(AuthErrorKind.TOKEN_EXPIRED, token_id=row.id)
        user = self.store.get_user(row.user_id)
        if not user or not user.is_active:
            raise self._reject(AuthErrorKind.USER_NOT_FOUND, token_id=row.id)
        if row.version != user.token_version:
            raise self._reject(
                AuthErrorKind.VERSION_MISMATCH,
                token_id=row.id,
                row_version=row.version,
                token_version=user.token_version,
            )
        self.store.touch_refresh_token(row.id, now)
        access = await self.issue_access(user, device or row.device)
        logger.info("access_token_refreshed", user_id=user.id, jti=access.jti, token_id=row.id)
        return access
