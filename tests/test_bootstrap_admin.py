import uuid

import pytest

from scripts.bootstrap_admin import bootstrap_admin, main
from sessionvault.service.runtime import get_runtime


def _email():
    return f"root-{uuid.uuid4().hex[:8]}@example.com"


async def test_creates_admin_with_password():
    email = _email()
    result = await bootstrap_admin(email, "AdminPassword1!")

    assert result.status == "created"
    runtime = get_runtime()
    user = runtime.store.get_user(result.user_id)
    assert user.roles == ["admin"]
    assert runtime.auth.verify_password(user.id, "AdminPassword1!")


async def test_promotes_existing_user_and_can_sign_out():
    runtime = get_runtime()
    email = _email()
    user, _ = await runtime.auth.register(email, "StudentPassword1!")

    result = await bootstrap_admin(email.upper(), None, sign_out_everywhere=True)

    assert result.status == "promoted"
    assert result.token_version == 2
    assert runtime.store.get_user(user.id).has_role("admin")


async def test_new_account_requires_password():
    with pytest.raises(ValueError):
        await bootstrap_admin(_email(), None)


async def test_dry_run_changes_nothing():
    email = _email()
    result = await bootstrap_admin(email, "AdminPassword1!", dry_run=True)
    assert result.status == "would_create"
    assert get_runtime().store.get_user_by_email(email) is None


def test_main_rejects_short_password(capsys):
    assert main(["--email", _email(), "--password", "short"]) == 1
    assert "password must be" in capsys.readouterr().out
