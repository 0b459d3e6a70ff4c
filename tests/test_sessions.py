"""Tests for the per-user session and device listings."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from sessionvault.config import Settings
from sessionvault.service.auth import AuthService
from sessionvault.storage.memory import MemoryStore
from sessionvault.storage.memory_cache import MemorySessionCache
from sessionvault.storage.models import DeviceInfo, RefreshToken, SessionRecord, utcnow


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def cache():
    return MemorySessionCache()


@pytest.fixture
def auth(store, cache):
    return AuthService(store, cache, Settings(jwt_secret="sessions-test-secret-0123456789-abcdefg"))


@pytest.fixture
def user(store):
    return store.create_user(f"{uuid.uuid4().hex[:8]}@example.com")


async def test_sessions_listed_newest_first_with_current_flag(auth, cache, user):
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for index, name in enumerate(["Desk", "Phone", "Tablet"]):
        record = SessionRecord(
            user_id=user.id,
            token_version=user.token_version,
            device=DeviceInfo(device_name=name),
            created_at=base + timedelta(minutes=index),
        )
        await cache.store_session(f"jti-{name}", record, ttl_seconds=600, set_ttl_seconds=660)

    views = await auth.list_sessions(user.id, current_jti="jti-Phone")

    assert [view.device.display_name for view in views] == ["Tablet", "Phone", "Desk"]
    assert [view.is_current for view in views] == [False, True, False]


async def test_sessions_exclude_other_users(auth, store, user):
    other = store.create_user("someone-else@example.com")
    await auth.issuer.issue(user)
    await auth.issuer.issue(other)

    views = await auth.list_sessions(user.id)

    assert len(views) == 1
    assert not views[0].is_current


async def test_revoked_session_disappears_from_listing(auth, user):
    tokens = await auth.issuer.issue(user)
    await auth.logout_session(user.id, tokens.jti)
    assert await auth.list_sessions(user.id) == []


async def test_devices_only_include_usable_refresh_tokens(auth, store, user):
    live = await auth.issuer.issue(user, DeviceInfo(device_name="Laptop"))
    revoked = await auth.issuer.issue(user, DeviceInfo(device_name="Old Phone"))
    store.revoke_refresh_token(revoked.refresh_token_id)
    expired = RefreshToken.new(user.id, user.token_version, ttl_minutes=1)
    expired.expires_at = utcnow() - timedelta(minutes=5)
    store.create_refresh_token(expired)

    devices = auth.list_devices(user.id)

    assert [row.id for row in devices] == [live.refresh_token_id]


async def test_devices_from_before_version_bump_are_hidden(auth, store, user):
    await auth.issuer.issue(user)
    store.increment_token_version(user.id)
    assert auth.list_devices(user.id) == []


def test_devices_for_unknown_user(auth):
    assert auth.list_devices("nobody") == []
