from pathlib import Path

import pytest
from pydantic import ValidationError

from sessionvault.config import Settings


def test_defaults_match_documented_lifetimes():
    settings = Settings(jwt_secret="x" * 40)
    assert settings.access_token_ttl_minutes == 60
    assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
    assert settings.session_set_ttl_buffer_seconds == 60
    assert settings.freshness_window_seconds == 300


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("REFRESH_TOKEN_TTL_MINUTES", "120")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example ,")
    monkeypatch.setenv("ALLOW_SIGNUP", "false")

    settings = Settings.from_env()

    assert settings.access_token_ttl_minutes == 5
    assert settings.refresh_token_ttl_minutes == 120
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.allow_signup is False


@pytest.mark.parametrize("field", ["access_token_ttl_minutes", "refresh_token_ttl_minutes"])
def test_non_positive_ttl_is_rejected(field):
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, **{field: 0})


def test_missing_secret_is_generated_and_persisted(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    monkeypatch.delenv("JWT_SECRET", raising=False)

    first = Settings.from_env()
    second = Settings.from_env()

    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret == second.jwt_secret
    assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret
