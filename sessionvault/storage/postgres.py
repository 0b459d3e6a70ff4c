from __future__ import annotations

import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessionvault.logging import get_logger
from sessionvault.storage.errors import ConstraintViolation
from sessionvault.storage.models import (
    DEFAULT_ROLE,
    RefreshToken,
    User,
    ensure_utc,
    utcnow,
)


def _is_uuid(value: str) -> bool:
    # Ids are UUID columns; anything else cannot match a row
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed system of record for users, passwords and device refresh tokens."""

    REQUIRED_TABLES = ("app_user", "user_auth_credential", "refresh_token")

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Ensure the identity tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in self.REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    @staticmethod
    def _parse_ts(value: Optional[Any]) -> Optional[datetime]:
        if value is None:
            return None
        if isinstance(value, datetime):
            return ensure_utc(value)
        return ensure_utc(datetime.fromisoformat(str(value)))

    def _user_from_row(self, row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            token_version=int(row.get("token_version") or 1),
            roles=list(row.get("roles") or [DEFAULT_ROLE]),
            is_active=row.get("is_active", True),
            created_at=self._parse_ts(row.get("created_at")) or utcnow(),
            updated_at=self._parse_ts(row.get("updated_at")),
        )

    def _refresh_token_from_row(self, row: dict) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            version=int(row["version"]),
            expires_at=self._parse_ts(row["expires_at"]),
            device_name=row.get("device_name"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            is_revoked=bool(row.get("is_revoked", False)),
            last_used_at=self._parse_ts(row.get("last_used_at")),
            created_at=self._parse_ts(row.get("created_at")) or utcnow(),
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        roles: Optional[List[str]] = None,
        is_active: bool = True,
    ) -> User:
        user_id = str(uuid.uuid4())
        role_list = list(roles or [DEFAULT_ROLE])
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, roles, is_active, token_version)
                    VALUES (%s, %s, %s, %s, 1)
                    RETURNING *
                    """,
                    (user_id, email, role_list, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_roles(self, user_id: str, roles: List[str]) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET roles = %s, updated_at = now() WHERE id = %s RETURNING *",
                (list(roles), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def increment_token_version(self, user_id: str) -> Optional[int]:
        if not _is_uuid(user_id):
            return None
        # Single UPDATE so concurrent bumps never lose an increment
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET token_version = token_version + 1, updated_at = now()
                WHERE id = %s
                RETURNING token_version
                """,
                (user_id,),
            ).fetchone()
        return int(row["token_version"]) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (user_id) DO UPDATE
                SET password_hash = EXCLUDED.password_hash,
                    password_algo = EXCLUDED.password_algo,
                    last_updated_at = now()
                """,
                (user_id, password_hash, password_algo),
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (
                        id, user_id, token, version, expires_at, device_name,
                        ip_address, user_agent, is_revoked, last_used_at, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.token,
                        token.version,
                        token.expires_at,
                        token.device_name,
                        token.ip_address,
                        token.user_agent,
                        token.is_revoked,
                        token.last_used_at,
                        token.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("unknown user", {"field": "user_id"})
        return token

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        if not _is_uuid(token_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._refresh_token_from_row(row) if row else None

    def get_refresh_token_by_value(self, value: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (value,)
            ).fetchone()
        return self._refresh_token_from_row(row) if row else None

    def revoke_refresh_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET is_revoked = TRUE WHERE id = %s", (token_id,)
            )
            return cur.rowcount > 0

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET is_revoked = TRUE WHERE user_id = %s AND NOT is_revoked",
                (user_id,),
            )
            return cur.rowcount

    def touch_refresh_token(self, token_id: str, used_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE refresh_token SET last_used_at = %s WHERE id = %s",
                (used_at, token_id),
            )

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._refresh_token_from_row(row) for row in rows]

    def count_active_refresh_tokens(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM refresh_token WHERE NOT is_revoked AND expires_at > now()"
            ).fetchone()
        return int(row["total"]) if row else 0

    def purge_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE is_revoked OR expires_at <= %s", (now,)
            )
            purged = cur.rowcount
        if purged:
            self.logger.info("refresh_tokens_purged", count=purged)
        return purged
