from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from sessionvault.logging import get_logger
from sessionvault.storage.errors import ConstraintViolation
from sessionvault.storage.models import (
    DEFAULT_ROLE,
    RefreshToken,
    User,
    ensure_utc,
    utcnow,
)


class MemoryStore:
    """In-process identity store persisted to a JSON snapshot under ``fs_root``."""

    def __init__(self, fs_root: str = "/tmp/sessionvault") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> None:
        return None

    # users ---------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        roles: Optional[List[str]] = None,
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                roles=list(roles or [DEFAULT_ROLE]),
                is_active=is_active,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def set_user_roles(self, user_id: str, roles: List[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.roles = list(roles)
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def increment_token_version(self, user_id: str) -> Optional[int]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.token_version += 1
            user.updated_at = utcnow()
            self._persist_state()
            return user.token_version

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh tokens ------------------------------------------------------

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("unknown user", {"field": "user_id"})
            if any(existing.token == token.token for existing in self.refresh_tokens.values()):
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens[token.id] = token
            self._persist_state()
            return token

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return self.refresh_tokens.get(token_id)

    def get_refresh_token_by_value(self, value: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return next(
                (t for t in self.refresh_tokens.values() if t.token == value), None
            )

    def revoke_refresh_token(self, token_id: str) -> bool:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if not token:
                return False
            token.is_revoked = True
            self._persist_state()
            return True

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            revoked = 0
            for token in self.refresh_tokens.values():
                if token.user_id == user_id and not token.is_revoked:
                    token.is_revoked = True
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def touch_refresh_token(self, token_id: str, used_at: datetime) -> None:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if token:
                token.last_used_at = used_at
                self._persist_state()

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._data_lock:
            tokens = [t for t in self.refresh_tokens.values() if t.user_id == user_id]
        return sorted(tokens, key=lambda t: ensure_utc(t.created_at), reverse=True)

    def count_active_refresh_tokens(self) -> int:
        now = utcnow()
        with self._data_lock:
            return sum(
                1
                for t in self.refresh_tokens.values()
                if not t.is_revoked and not t.is_expired(now)
            )

    def purge_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            doomed = [
                token_id
                for token_id, token in self.refresh_tokens.items()
                if token.is_revoked or token.is_expired(now)
            ]
            for token_id in doomed:
                del self.refresh_tokens[token_id]
            if doomed:
                self._persist_state()
                self.logger.info("refresh_tokens_purged", count=len(doomed))
            return len(doomed)

    # persistence ---------------------------------------------------------

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return ensure_utc(datetime.fromisoformat(raw)) if raw else None

    def _persist_state(self) -> None:
        with self._data_lock:
            state = {
                "users": [self._serialize_user(u) for u in self.users.values()],
                "credentials": [
                    {
                        "user_id": user_id,
                        "password_hash": creds[0],
                        "password_algo": creds[1],
                    }
                    for user_id, creds in self.credentials.items()
                ],
                "refresh_tokens": [
                    self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
                ],
            }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        with self._data_lock:
            self.users = {
                u["id"]: self._deserialize_user(u) for u in data.get("users", [])
            }
            self.credentials = {
                entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
                for entry in data.get("credentials", [])
            }
            self.refresh_tokens = {
                t["id"]: self._deserialize_refresh_token(t)
                for t in data.get("refresh_tokens", [])
            }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "token_version": user.token_version,
            "roles": list(user.roles),
            "is_active": user.is_active,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            token_version=int(data.get("token_version", 1)),
            roles=list(data.get("roles") or [DEFAULT_ROLE]),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
        )

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "token": token.token,
            "version": token.version,
            "expires_at": self._serialize_datetime(token.expires_at),
            "device_name": token.device_name,
            "ip_address": token.ip_address,
            "user_agent": token.user_agent,
            "is_revoked": token.is_revoked,
            "last_used_at": self._serialize_datetime(token.last_used_at),
            "created_at": self._serialize_datetime(token.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            token=data["token"],
            version=int(data["version"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            device_name=data.get("device_name"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            is_revoked=bool(data.get("is_revoked", False)),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
