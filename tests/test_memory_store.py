from datetime import timedelta
from pathlib import Path

import pytest

from sessionvault.storage.errors import ConstraintViolation
from sessionvault.storage.memory import MemoryStore
from sessionvault.storage.models import DeviceInfo, RefreshToken, utcnow


def test_users_and_tokens_survive_reload(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("persist@example.com", roles=["student", "admin"])
    store.save_password(user.id, "hash", "argon2id")
    store.increment_token_version(user.id)
    row = store.create_refresh_token(
        RefreshToken.new(user.id, 2, ttl_minutes=60, device=DeviceInfo(device_name="Laptop"))
    )
    store.touch_refresh_token(row.id, utcnow())

    reloaded = MemoryStore(fs_root=str(tmp_path))

    restored = reloaded.get_user_by_email("persist@example.com")
    assert restored.id == user.id
    assert restored.token_version == 2
    assert restored.roles == ["student", "admin"]
    assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
    restored_row = reloaded.get_refresh_token_by_value(row.token)
    assert restored_row.id == row.id
    assert restored_row.device_name == "Laptop"
    assert restored_row.last_used_at is not None


def test_duplicate_email_is_a_constraint_violation(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("dup@example.com")
    with pytest.raises(ConstraintViolation):
        store.create_user("dup@example.com")


def test_refresh_token_requires_known_user(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    with pytest.raises(ConstraintViolation):
        store.create_refresh_token(RefreshToken.new("ghost", 1, ttl_minutes=5))


def test_increment_token_version_is_monotonic(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("version@example.com")
    assert user.token_version == 1
    assert [store.increment_token_version(user.id) for _ in range(3)] == [2, 3, 4]
    assert store.increment_token_version("missing") is None


def test_revoke_user_refresh_tokens_counts_only_live_rows(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("rows@example.com")
    other = store.create_user("rows-other@example.com")
    first = store.create_refresh_token(RefreshToken.new(user.id, 1, ttl_minutes=5))
    store.create_refresh_token(RefreshToken.new(user.id, 1, ttl_minutes=5))
    store.create_refresh_token(RefreshToken.new(other.id, 1, ttl_minutes=5))
    store.revoke_refresh_token(first.id)

    assert store.revoke_user_refresh_tokens(user.id) == 1
    assert store.revoke_user_refresh_tokens(user.id) == 0
    assert store.count_active_refresh_tokens() == 1


def test_list_refresh_tokens_newest_first(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("order@example.com")
    older = RefreshToken.new(user.id, 1, ttl_minutes=5)
    older.created_at = utcnow() - timedelta(minutes=10)
    newer = RefreshToken.new(user.id, 1, ttl_minutes=5)
    store.create_refresh_token(older)
    store.create_refresh_token(newer)

    assert [row.id for row in store.list_refresh_tokens(user.id)] == [newer.id, older.id]


def test_purge_drops_revoked_and_expired_rows(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("purge@example.com")
    live = store.create_refresh_token(RefreshToken.new(user.id, 1, ttl_minutes=5))
    revoked = store.create_refresh_token(RefreshToken.new(user.id, 1, ttl_minutes=5))
    store.revoke_refresh_token(revoked.id)
    expired = RefreshToken.new(user.id, 1, ttl_minutes=5)
    expired.expires_at = utcnow() - timedelta(seconds=1)
    store.create_refresh_token(expired)

    assert store.purge_refresh_tokens(utcnow()) == 2
    assert [row.id for row in store.list_refresh_tokens(user.id)] == [live.id]


def test_roles_and_activity_updates(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("roles@example.com")
    assert user.roles == ["student"]

    updated = store.set_user_roles(user.id, ["student", "instructor"])
    assert updated.has_role("instructor")
    assert store.set_user_active(user.id, False).is_active is False
    assert store.set_user_roles("missing", ["admin"]) is None
