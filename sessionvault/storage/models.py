from __future__ import annotations

import json
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive timestamps from older rows as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Role(str, Enum):
    ADMIN = "admin"
    INSTRUCTOR = "instructor"
    STUDENT = "student"


DEFAULT_ROLE = Role.STUDENT.value


def _label_from_user_agent(user_agent: Optional[str]) -> str:
    agent = user_agent or ""
    if "Mobile" in agent:
        return "Mobile Device"
    if "Edg" in agent:
        return "Edge Browser"
    if "Chrome" in agent:
        return "Chrome Browser"
    if "Firefox" in agent:
        return "Firefox Browser"
    if "Safari" in agent:
        return "Safari Browser"
    return "Unknown Device"


@dataclass
class User:
    id: str
    email: str
    token_version: int = 1
    roles: List[str] = field(default_factory=lambda: [DEFAULT_ROLE])
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def has_role(self, *roles: str) -> bool:
        wanted = {Role(r).value if isinstance(r, Role) else r for r in roles}
        return any(role in wanted for role in self.roles)


@dataclass(frozen=True)
class DeviceInfo:
    """Device metadata captured when a credential is issued."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        if self.device_name:
            return self.device_name
        return _label_from_user_agent(self.user_agent)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "device_name": self.device_name,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DeviceInfo":
        data = data or {}
        return cls(
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            device_name=data.get("device_name"),
        )


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token: str
    version: int
    expires_at: datetime
    device_name: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_revoked: bool = False
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        version: int,
        ttl_minutes: int,
        device: Optional[DeviceInfo] = None,
    ) -> "RefreshToken":
        now = utcnow()
        device = device or DeviceInfo()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=secrets.token_urlsafe(48),
            version=version,
            expires_at=now + timedelta(minutes=ttl_minutes),
            device_name=device.device_name,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return ensure_utc(self.expires_at) <= (now or utcnow())

    def is_valid(self, user_token_version: int, now: Optional[datetime] = None) -> bool:
        return (
            not self.is_revoked
            and not self.is_expired(now)
            and self.version == user_token_version
        )

    @property
    def display_name(self) -> str:
        if self.device_name:
            return self.device_name
        return _label_from_user_agent(self.user_agent)

    @property
    def device(self) -> DeviceInfo:
        return DeviceInfo(
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            device_name=self.device_name,
        )


@dataclass
class SessionRecord:
    """Ephemeral record stored under ``session:{jti}``."""

    user_id: str
    token_version: int
    device: DeviceInfo = field(default_factory=DeviceInfo)
    created_at: datetime = field(default_factory=utcnow)

    def to_json(self) -> str:
        return json.dumps(
            {
                "user_id": self.user_id,
                "token_version": self.token_version,
                "device": self.device.to_dict(),
                "created_at": self.created_at.isoformat(),
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str) -> "SessionRecord":
        data = json.loads(raw)
        return cls(
            user_id=str(data["user_id"]),
            token_version=int(data["token_version"]),
            device=DeviceInfo.from_dict(data.get("device")),
            created_at=ensure_utc(datetime.fromisoformat(data["created_at"])),
        )
