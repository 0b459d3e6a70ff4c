from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sessionvault.service.tokens import IdentityStore, SessionCache
from sessionvault.storage.models import DeviceInfo, RefreshToken, utcnow


@dataclass
class SessionView:
    jti: str
    device: DeviceInfo
    token_version: int
    created_at: datetime
    is_current: bool = False


class SessionDirectory:
    """Read-only views over a user's live sessions and registered devices."""

    def __init__(self, store: IdentityStore, cache: SessionCache) -> None:
        self.store = store
        self.cache = cache

    async def list_sessions(
        self, user_id: str, current_jti: Optional[str] = None
    ) -> List[SessionView]:
        records = await self.cache.list_user_sessions(user_id)
        views = [
            SessionView(
                jti=jti,
                device=record.device,
                token_version=record.token_version,
                created_at=record.created_at,
                is_current=bool(current_jti) and jti == current_jti,
            )
            for jti, record in records
        ]
        views.sort(key=lambda view: view.created_at, reverse=True)
        return views

    def list_devices(self, user_id: str) -> List[RefreshToken]:
        user = self.store.get_user(user_id)
        if not user:
            return []
        now = utcnow()
        return [
            token
            for token in self.store.list_refresh_tokens(user_id)
            if token.is_valid(user.token_version, now)
        ]
