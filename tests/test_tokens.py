"""Unit tests for the HS256 codec and the token issuer."""

import base64
import hashlib
import hmac
import json
import time

import pytest

from sessionvault.config import Settings
from sessionvault.service.tokens import (
    TokenDecodeError,
    TokenExpiredError,
    TokenIssuer,
    decode_jwt,
    encode_jwt,
)
from sessionvault.storage.memory import MemoryStore
from sessionvault.storage.memory_cache import MemorySessionCache
from sessionvault.storage.models import DeviceInfo

SECRET = "unit-test-secret-with-enough-entropy-0123456789"


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _signature(signing_input: str) -> str:
    digest = hmac.new(SECRET.encode(), signing_input.encode(), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


_DEEPLY_NESTED = base64.urlsafe_b64encode(b"[" * 5000).decode().rstrip("=")


class RecordingCache(MemorySessionCache):
    def __init__(self):
        super().__init__()
        self.stored = []

    async def store_session(self, jti, record, ttl_seconds, set_ttl_seconds):
        self.stored.append((jti, record, ttl_seconds, set_ttl_seconds))
        await super().store_session(jti, record, ttl_seconds, set_ttl_seconds)


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=SECRET,
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60,
        session_set_ttl_buffer_seconds=60,
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def cache():
    return RecordingCache()


@pytest.fixture
def issuer(store, cache, settings):
    return TokenIssuer(store, cache, settings)


class TestCodec:
    def test_round_trip_returns_claims(self):
        claims = {"id": "u1", "exp": int(time.time()) + 60}
        token = encode_jwt(claims, SECRET)
        assert token.count(".") == 2
        assert decode_jwt(token, SECRET) == claims

    def test_wrong_secret_is_rejected(self):
        token = encode_jwt({"id": "u1", "exp": int(time.time()) + 60}, SECRET)
        with pytest.raises(TokenDecodeError):
            decode_jwt(token, "another-secret")

    def test_tampered_payload_is_rejected(self):
        token = encode_jwt({"id": "u1", "exp": int(time.time()) + 60}, SECRET)
        header, _, signature = token.split(".")
        forged = _segment({"id": "admin", "exp": int(time.time()) + 60})
        with pytest.raises(TokenDecodeError):
            decode_jwt(f"{header}.{forged}.{signature}", SECRET)

    def test_non_hs256_header_is_rejected(self):
        header = _segment({"alg": "none", "typ": "JWT"})
        payload = _segment({"id": "u1", "exp": int(time.time()) + 60})
        with pytest.raises(TokenDecodeError):
            decode_jwt(f"{header}.{payload}.", SECRET)

    @pytest.mark.parametrize(
        "token",
        [
            "",
            "abc",
            "a.b",
            "a.b.c.d",
            "!!.@@.##",
            f"{_segment({'alg': 'HS256'})}.{_segment({'id': 'u1'})}.sigé",
            f"{_DEEPLY_NESTED}.e30.sig",
        ],
    )
    def test_malformed_tokens_are_rejected(self, token):
        with pytest.raises(TokenDecodeError):
            decode_jwt(token, SECRET)

    def test_signed_but_unsupported_algorithm_is_rejected(self):
        header = _segment({"alg": "none", "typ": "JWT"})
        payload = _segment({"id": "u1", "exp": int(time.time()) + 60})
        signing_input = f"{header}.{payload}"
        with pytest.raises(TokenDecodeError):
            decode_jwt(f"{signing_input}.{_signature(signing_input)}", SECRET)

    def test_signed_deeply_nested_payload_is_rejected(self):
        signing_input = f"{_segment({'alg': 'HS256'})}.{_DEEPLY_NESTED}"
        with pytest.raises(TokenDecodeError):
            decode_jwt(f"{signing_input}.{_signature(signing_input)}", SECRET)

    def test_missing_exp_is_rejected(self):
        token = encode_jwt({"id": "u1"}, SECRET)
        with pytest.raises(TokenDecodeError):
            decode_jwt(token, SECRET)

    def test_expired_token_carries_claims(self):
        token = encode_jwt({"id": "u1", "jti": "abc", "exp": int(time.time()) - 10}, SECRET)
        with pytest.raises(TokenExpiredError) as excinfo:
            decode_jwt(token, SECRET)
        assert excinfo.value.claims["jti"] == "abc"

    def test_leeway_accepts_recently_expired_token(self):
        token = encode_jwt({"id": "u1", "exp": int(time.time()) - 5}, SECRET)
        assert decode_jwt(token, SECRET, leeway_seconds=30)["id"] == "u1"


class TestIssuer:
    async def test_issue_access_embeds_identity_claims(self, issuer, store, settings):
        user = store.create_user("claims@example.com")
        access = await issuer.issue_access(user)

        claims = decode_jwt(access.access_token, SECRET)
        assert claims["id"] == user.id
        assert claims["email"] == "claims@example.com"
        assert claims["version"] == user.token_version
        assert claims["jti"] == access.jti
        assert len(bytes.fromhex(access.jti)) == 16
        assert claims["exp"] - claims["iat"] == settings.access_token_ttl_minutes * 60
        assert int(access.access_expires_at.timestamp()) == claims["exp"]

    async def test_each_issue_uses_a_fresh_jti(self, issuer, store):
        user = store.create_user("jti@example.com")
        first = await issuer.issue_access(user)
        second = await issuer.issue_access(user)
        assert first.jti != second.jti

    async def test_session_record_ttl_matches_token_lifetime(self, issuer, store, cache):
        user = store.create_user("ttl@example.com")
        device = DeviceInfo(ip_address="10.0.0.1", user_agent="Mozilla/5.0 Firefox/120.0")
        access = await issuer.issue_access(user, device)

        jti, record, ttl, set_ttl = cache.stored[-1]
        assert jti == access.jti
        assert record.user_id == user.id
        assert record.token_version == user.token_version
        assert record.device == device
        assert 0 < ttl <= 15 * 60
        assert set_ttl == ttl + 60

    async def test_issue_creates_device_refresh_row(self, issuer, store):
        user = store.create_user("device@example.com")
        device = DeviceInfo(user_agent="Mozilla/5.0 (iPhone) Mobile Safari", device_name=None)
        tokens = await issuer.issue(user, device)

        row = store.get_refresh_token(tokens.refresh_token_id)
        assert row is not None
        assert row.token == tokens.refresh_token
        assert row.version == user.token_version
        assert row.display_name == "Mobile Device"
        assert row.expires_at == tokens.refresh_expires_at
        assert tokens.token_type == "bearer"

    async def test_each_login_gets_its_own_refresh_token(self, issuer, store):
        user = store.create_user("multi@example.com")
        laptop = await issuer.issue(user, DeviceInfo(device_name="Laptop"))
        phone = await issuer.issue(user, DeviceInfo(device_name="Phone"))

        assert laptop.refresh_token != phone.refresh_token
        names = {row.display_name for row in store.list_refresh_tokens(user.id)}
        assert names == {"Laptop", "Phone"}
