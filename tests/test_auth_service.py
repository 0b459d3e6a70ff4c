"""Unit tests for the auth service.

Covers:
- Password hashing and verification
- Registration and login on several devices
- Bearer authentication with role checks
- Password change revoking every device
- Role administration
"""

import pytest

from sessionvault.config import Settings
from sessionvault.service.auth import AuthService
from sessionvault.service.errors import (
    AuthenticationError,
    AuthErrorKind,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TokenRejectedError,
)
from sessionvault.storage.memory import MemoryStore
from sessionvault.storage.memory_cache import MemorySessionCache
from sessionvault.storage.models import DeviceInfo

PASSWORD = "TestPassword123!"


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def cache():
    return MemorySessionCache()


@pytest.fixture
def auth_service(memory_store, cache, settings):
    return AuthService(store=memory_store, cache=cache, settings=settings)


class TestPasswordHashing:
    def test_hash_is_argon2id(self, auth_service):
        pwd_hash, algo = auth_service._hash_password(PASSWORD)
        assert algo == "argon2id"
        assert pwd_hash.startswith("$argon2id$")
        assert PASSWORD not in pwd_hash

    def test_verify_password(self, auth_service, memory_store):
        user = memory_store.create_user("hash@example.com")
        auth_service.save_password(user.id, PASSWORD)
        assert auth_service.verify_password(user.id, PASSWORD)
        assert not auth_service.verify_password(user.id, "WrongPassword1!")

    def test_unknown_algorithm_never_verifies(self, auth_service, memory_store):
        user = memory_store.create_user("algo@example.com")
        memory_store.save_password(user.id, "plain", "plaintext")
        assert not auth_service.verify_password(user.id, "plain")

    def test_missing_record(self, auth_service):
        assert not auth_service.verify_password("nobody", PASSWORD)


class TestRegisterAndLogin:
    async def test_register_normalizes_email_and_signs_in(self, auth_service, cache):
        user, tokens = await auth_service.register("  New.User@Example.COM ", PASSWORD)
        assert user.email == "new.user@example.com"
        assert await cache.get_session(tokens.jti) is not None

    async def test_register_duplicate(self, auth_service):
        await auth_service.register("dup@example.com", PASSWORD)
        with pytest.raises(ConflictError):
            await auth_service.register("DUP@example.com", PASSWORD)

    async def test_register_disabled(self, memory_store, cache):
        settings = Settings(jwt_secret="s" * 40, allow_signup=False)
        service = AuthService(memory_store, cache, settings)
        with pytest.raises(ForbiddenError):
            await service.register("closed@example.com", PASSWORD)

    async def test_login_on_two_devices(self, auth_service, memory_store):
        user, _ = await auth_service.register("multi@example.com", PASSWORD)
        _, laptop = await auth_service.login("multi@example.com", PASSWORD, DeviceInfo(device_name="Laptop"))
        _, phone = await auth_service.login("multi@example.com", PASSWORD, DeviceInfo(device_name="Phone"))

        assert laptop.refresh_token != phone.refresh_token
        assert len(auth_service.list_devices(user.id)) == 3
        assert len(await auth_service.list_sessions(user.id)) == 3

    async def test_login_wrong_password(self, auth_service):
        await auth_service.register("wrong@example.com", PASSWORD)
        with pytest.raises(AuthenticationError) as excinfo:
            await auth_service.login("wrong@example.com", "nope-nope-nope")
        assert excinfo.value.message == "invalid credentials"

    async def test_login_unknown_and_inactive_look_identical(self, auth_service, memory_store):
        user, _ = await auth_service.register("inactive@example.com", PASSWORD)
        memory_store.set_user_active(user.id, False)
        with pytest.raises(AuthenticationError) as inactive:
            await auth_service.login("inactive@example.com", PASSWORD)
        with pytest.raises(AuthenticationError) as unknown:
            await auth_service.login("ghost@example.com", PASSWORD)
        assert inactive.value.message == unknown.value.message


class TestAuthenticate:
    async def test_authenticate_returns_identity(self, auth_service):
        user, tokens = await auth_service.register("authn@example.com", PASSWORD)
        identity = await auth_service.authenticate(f"Bearer {tokens.access_token}")
        assert identity.id == user.id
        assert identity.jti == tokens.jti

    async def test_missing_header(self, auth_service):
        with pytest.raises(TokenRejectedError) as excinfo:
            await auth_service.authenticate(None)
        assert excinfo.value.kind is AuthErrorKind.AUTHENTICATION_REQUIRED
        assert excinfo.value.message == "authentication required"
        assert excinfo.value.status_code == 401

    async def test_role_requirement(self, auth_service, memory_store):
        user, tokens = await auth_service.register("roles@example.com", PASSWORD)
        header = f"Bearer {tokens.access_token}"
        with pytest.raises(ForbiddenError):
            await auth_service.authenticate(header, "admin")
        await auth_service.add_role(user.id, "admin")
        identity = await auth_service.authenticate(header, "admin")
        assert identity.has_role("admin")

    async def test_require_fresh(self, auth_service):
        _, tokens = await auth_service.register("fresh@example.com", PASSWORD)
        identity = await auth_service.authenticate(f"Bearer {tokens.access_token}")
        auth_service.require_fresh(identity)
        with pytest.raises(TokenRejectedError):
            auth_service.require_fresh(identity, max_age_seconds=-1)


class TestPasswordChange:
    async def test_change_password_revokes_all_devices(self, auth_service, memory_store):
        user, first = await auth_service.register("change@example.com", PASSWORD)
        _, second = await auth_service.login("change@example.com", PASSWORD)

        summary = await auth_service.change_password(user.id, PASSWORD, "BrandNewPass456!")

        assert summary.token_version == 2
        assert summary.refresh_tokens_revoked == 2
        for tokens in (first, second):
            with pytest.raises(TokenRejectedError):
                await auth_service.authenticate(f"Bearer {tokens.access_token}")
            with pytest.raises(TokenRejectedError):
                await auth_service.refresh(tokens.refresh_token)
        _, fresh = await auth_service.login("change@example.com", "BrandNewPass456!")
        assert (await auth_service.authenticate(f"Bearer {fresh.access_token}")).token_version == 2

    async def test_wrong_current_password(self, auth_service, memory_store):
        user, _ = await auth_service.register("keep@example.com", PASSWORD)
        with pytest.raises(BadRequestError):
            await auth_service.change_password(user.id, "not-it-at-all", "BrandNewPass456!")
        assert memory_store.get_user(user.id).token_version == 1


class TestRoles:
    async def test_add_and_remove_roles(self, auth_service):
        user, _ = await auth_service.register("admin-me@example.com", PASSWORD)
        updated = await auth_service.add_role(user.id, "instructor")
        assert updated.roles == ["student", "instructor"]
        again = await auth_service.add_role(user.id, "instructor")
        assert again.roles == ["student", "instructor"]
        removed = await auth_service.remove_role(user.id, "student")
        assert removed.roles == ["instructor"]

    async def test_last_role_cannot_be_removed(self, auth_service):
        user, _ = await auth_service.register("last@example.com", PASSWORD)
        with pytest.raises(BadRequestError):
            await auth_service.remove_role(user.id, "student")

    async def test_unknown_role_and_user(self, auth_service):
        user, _ = await auth_service.register("bad-role@example.com", PASSWORD)
        with pytest.raises(BadRequestError):
            await auth_service.add_role(user.id, "superuser")
        with pytest.raises(NotFoundError):
            await auth_service.add_role("missing", "admin")


async def test_token_stats(auth_service):
    await auth_service.register("stats-a@example.com", PASSWORD)
    await auth_service.register("stats-b@example.com", PASSWORD)
    stats = await auth_service.token_stats()
    assert stats == {
        "active_sessions": 2,
        "users_with_sessions": 2,
        "active_refresh_tokens": 2,
        "memory_usage": None,
    }
