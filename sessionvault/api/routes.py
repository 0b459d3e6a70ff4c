from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request

from sessionvault.api.schemas import (
    AuthResponse,
    DeviceResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    LogoutResponse,
    PasswordChangeRequest,
    RefreshDeviceListResponse,
    RefreshDeviceResponse,
    RefreshResponse,
    RegisterRequest,
    RevokeAllResponse,
    RoleRequest,
    SessionListResponse,
    SessionResponse,
    TokenRefreshRequest,
    TokenStatsResponse,
    UserResponse,
)
from sessionvault.logging import get_logger
from sessionvault.service.runtime import enforce_rate_limit, get_runtime
from sessionvault.service.tokens import IssuedTokens
from sessionvault.service.validator import Identity
from sessionvault.storage.models import DeviceInfo, Role, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_PASSWORD_CHANGE_LIMIT = 5
_PASSWORD_CHANGE_WINDOW_SECONDS = 300


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _device_from_request(request: Request) -> DeviceInfo:
    """Capture client IP (first X-Forwarded-For hop), User-Agent and X-Device-Name."""
    forwarded = request.headers.get("X-Forwarded-For")
    ip_address = None
    if forwarded:
        ip_address = forwarded.split(",")[0].strip() or None
    if ip_address is None and request.client:
        ip_address = request.client.host
    device_name = (request.headers.get("X-Device-Name") or "").strip()[:128] or None
    return DeviceInfo(
        ip_address=ip_address,
        user_agent=request.headers.get("User-Agent"),
        device_name=device_name,
    )


def _device_response(device: DeviceInfo) -> DeviceResponse:
    return DeviceResponse(
        ip_address=device.ip_address,
        user_agent=device.user_agent,
        device_name=device.display_name,
    )


def _auth_response(user: User, tokens: IssuedTokens) -> AuthResponse:
    return AuthResponse(
        user_id=user.id,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        jti=tokens.jti,
        access_expires_at=tokens.access_expires_at,
        refresh_token_id=tokens.refresh_token_id,
        refresh_expires_at=tokens.refresh_expires_at,
        roles=list(user.roles),
    )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        roles=list(user.roles),
        token_version=user.token_version,
        is_active=user.is_active,
        created_at=user.created_at,
    )


async def get_identity(authorization: Optional[str] = Header(None)) -> Identity:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def get_optional_identity(
    authorization: Optional[str] = Header(None),
) -> Optional[Identity]:
    runtime = get_runtime()
    return await runtime.auth.validator.validate_optional(authorization)


def require_roles(*roles: str):
    """Dependency factory: authenticate, then demand membership in any of ``roles``."""

    async def _dependency(authorization: Optional[str] = Header(None)) -> Identity:
        runtime = get_runtime()
        return await runtime.auth.authenticate(authorization, *roles)

    return _dependency


get_admin_identity = require_roles(Role.ADMIN.value)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account and sign in the registering device.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
    )
    user, tokens = await runtime.auth.register(
        body.email, body.password, _device_from_request(request)
    )
    return Envelope(status="ok", data=_auth_response(user, tokens))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password; each call registers a new device.

    Raises:
        401: If credentials are invalid
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    user, tokens = await runtime.auth.login(
        body.email, body.password, _device_from_request(request)
    )
    return Envelope(status="ok", data=_auth_response(user, tokens))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    # Only forward metadata the client actually sent so the row's device is kept otherwise
    device = None
    if request.headers.get("User-Agent") or request.headers.get("X-Device-Name"):
        device = _device_from_request(request)
    access = await runtime.auth.refresh(body.refresh_token, device)
    return Envelope(
        status="ok",
        data=RefreshResponse(
            access_token=access.access_token,
            jti=access.jti,
            access_expires_at=access.access_expires_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    identity: Optional[Identity] = Depends(get_optional_identity),
):
    """End the narrowest scope the caller identified.

    With a refresh token the device is signed out, with only an access token
    the current session is, and a bare logout ends every session. An
    unauthenticated call succeeds without revoking anything.
    """
    if identity is None:
        return Envelope(status="ok", data=LogoutResponse(scope="none"))
    runtime = get_runtime()
    scope = await runtime.auth.logout(
        identity.id,
        refresh_token=body.refresh_token if body else None,
        jti=identity.jti,
    )
    return Envelope(status="ok", data=LogoutResponse(scope=scope.value))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    summary = await runtime.auth.logout_all(identity.id)
    return Envelope(
        status="ok",
        data=RevokeAllResponse(
            token_version=summary.token_version,
            refresh_tokens_revoked=summary.refresh_tokens_revoked,
            sessions_revoked=summary.sessions_revoked,
        ),
    )


@router.delete("/auth/sessions/{jti}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    jti: str = Path(..., min_length=1, max_length=128),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(identity.id)
    # Only the caller's own sessions can be revoked
    if not any(view.jti == jti for view in sessions):
        raise _http_error("not_found", "session not found", status_code=404)
    await runtime.auth.logout_session(identity.id, jti)
    return Envelope(status="ok", data={"jti": jti, "revoked": True})


@router.delete("/auth/devices/{token_id}", response_model=Envelope, tags=["auth"])
async def revoke_device(
    token_id: str = Path(..., min_length=1, max_length=128),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    await runtime.auth.logout_device(identity.id, token_id)
    return Envelope(status="ok", data={"token_id": token_id, "revoked": True})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    views = await runtime.auth.list_sessions(identity.id, identity.jti)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[
                SessionResponse(
                    jti=view.jti,
                    device=_device_response(view.device),
                    token_version=view.token_version,
                    created_at=view.created_at,
                    is_current=view.is_current,
                )
                for view in views
            ],
            current_jti=identity.jti,
        ),
    )


@router.get("/auth/devices", response_model=Envelope, tags=["auth"])
async def list_devices(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    tokens = runtime.auth.list_devices(identity.id)
    return Envelope(
        status="ok",
        data=RefreshDeviceListResponse(
            items=[
                RefreshDeviceResponse(
                    id=token.id,
                    device=_device_response(token.device),
                    created_at=token.created_at,
                    last_used_at=token.last_used_at,
                    expires_at=token.expires_at,
                )
                for token in tokens
            ]
        ),
    )


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    identity: Identity = Depends(get_identity),
):
    """Change the caller's password and sign out every device.

    Requires a recently issued session and the current password.
    """
    runtime = get_runtime()
    runtime.auth.require_fresh(identity)
    await enforce_rate_limit(
        runtime,
        f"password:change:{identity.id}",
        _PASSWORD_CHANGE_LIMIT,
        _PASSWORD_CHANGE_WINDOW_SECONDS,
    )
    summary = await runtime.auth.change_password(
        identity.id, body.current_password, body.new_password
    )
    return Envelope(
        status="ok",
        data={"status": "changed", "token_version": summary.token_version},
    )


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    user = runtime.store.get_user(identity.id)
    if not user:
        raise _http_error("not_found", "user not found", status_code=404)
    return Envelope(status="ok", data=_user_response(user))


@router.get("/admin/token-stats", response_model=Envelope, tags=["admin"])
async def token_stats(identity: Identity = Depends(get_admin_identity)):
    runtime = get_runtime()
    stats = await runtime.auth.token_stats()
    return Envelope(status="ok", data=TokenStatsResponse(**stats))


@router.post("/admin/users/{user_id}/roles", response_model=Envelope, tags=["admin"])
async def add_user_role(
    body: RoleRequest,
    user_id: str = Path(..., min_length=1, max_length=128),
    identity: Identity = Depends(get_admin_identity),
):
    runtime = get_runtime()
    user = await runtime.auth.add_role(user_id, body.role.value)
    logger.info("admin_role_granted", admin_id=identity.id, user_id=user_id, role=body.role.value)
    return Envelope(status="ok", data=_user_response(user))


@router.delete("/admin/users/{user_id}/roles/{role}", response_model=Envelope, tags=["admin"])
async def remove_user_role(
    user_id: str = Path(..., min_length=1, max_length=128),
    role: str = Path(..., min_length=1, max_length=32),
    identity: Identity = Depends(get_admin_identity),
):
    runtime = get_runtime()
    user = await runtime.auth.remove_role(user_id, role)
    logger.info("admin_role_revoked", admin_id=identity.id, user_id=user_id, role=role)
    return Envelope(status="ok", data=_user_response(user))
