from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tonotes.logging import get_logger
from tonotes.storage.common import (
    SecretCipher,
    ensure_utc,
    generate_uuid,
    safe_row_value,
)
from tonotes.storage.errors import ConstraintViolation, StoreUnavailable
from tonotes.storage.models import Session, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_email_change TIMESTAMPTZ,
        last_password_change TIMESTAMPTZ,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        two_factor_secret TEXT,
        recovery_codes TEXT[] NOT NULL DEFAULT '{}'
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_username_key ON app_user (lower(username))",
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        display_name TEXT NOT NULL DEFAULT '',
        device_info TEXT NOT NULL DEFAULT '',
        ip_address TEXT NOT NULL DEFAULT '',
        location TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_activity_at TIMESTAMPTZ NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        protected BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id, is_active)",
)


class PostgresStore:
    """Postgres-backed store for users and sessions."""

    def __init__(self, dsn: str, *, secret_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = SecretCipher(secret_key)
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        """Create the user and session tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    @staticmethod
    def _unique_field(exc: errors.UniqueViolation) -> str:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", "") or ""
        return "username" if "username" in constraint else "email"

    def _row_to_user(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
            last_email_change=ensure_utc(row.get("last_email_change")),
            last_password_change=ensure_utc(row.get("last_password_change")),
            is_active=bool(row.get("is_active", True)),
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            two_factor_secret=self._cipher.decrypt(row.get("two_factor_secret")),
            recovery_codes=list(safe_row_value(row, "recovery_codes") or []),
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=ensure_utc(row["created_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            last_activity_at=ensure_utc(row["last_activity_at"]),
            display_name=row.get("display_name") or "",
            device_info=row.get("device_info") or "",
            ip_address=row.get("ip_address") or "",
            location=row.get("location") or "",
            is_active=bool(row.get("is_active", True)),
            protected=bool(row.get("protected", False)),
        )

    # users -----------------------------------------------------------------

    def create_user(self, username: str, email: str, password_hash: str) -> User:
        user_id = generate_uuid()
        now = utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, password_hash, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (user_id, username, email, password_hash, now),
                )
        except errors.UniqueViolation as exc:
            field = self._unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return User(
            id=user_id,
            username=username,
            email=email,
            password_hash=password_hash,
            created_at=now,
        )

    def _get_user_where(self, clause: str, value: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {clause}", (value,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._get_user_where("id = %s", user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._get_user_where("lower(username) = lower(%s)", username)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._get_user_where("lower(email) = lower(%s)", email)

    def update_user_password(
        self, user_id: str, password_hash: str, changed_at: datetime
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user SET password_hash = %s, last_password_change = %s
                WHERE id = %s
                """,
                (password_hash, changed_at, user_id),
            )
            return cur.rowcount > 0

    def update_user_email(self, user_id: str, email: str, changed_at: datetime) -> bool:
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    "UPDATE app_user SET email = %s, last_email_change = %s WHERE id = %s",
                    (email, changed_at, user_id),
                )
                return cur.rowcount > 0
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})

    def enable_two_factor(
        self, user_id: str, secret: str, recovery_hashes: Sequence[str]
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET two_factor_enabled = TRUE, two_factor_secret = %s, recovery_codes = %s
                WHERE id = %s
                """,
                (self._cipher.encrypt(secret), list(recovery_hashes), user_id),
            )
            return cur.rowcount > 0

    def disable_two_factor(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET two_factor_enabled = FALSE, two_factor_secret = NULL, recovery_codes = '{}'
                WHERE id = %s
                """,
                (user_id,),
            )
            return cur.rowcount > 0

    def remove_recovery_code(self, user_id: str, stored_hash: str) -> Optional[int]:
        """Remove one recovery hash in a single statement; None when already gone."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET recovery_codes = array_remove(recovery_codes, %s)
                WHERE id = %s AND %s = ANY(recovery_codes)
                RETURNING cardinality(recovery_codes) AS remaining
                """,
                (stored_hash, user_id, stored_hash),
            ).fetchone()
        if not row:
            return None
        return int(row["remaining"])

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    # sessions --------------------------------------------------------------

    def insert_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, user_id, display_name, device_info, ip_address, location,
                        created_at, expires_at, last_activity_at, is_active, protected
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.display_name,
                        session.device_info,
                        session.ip_address,
                        session.location,
                        session.created_at,
                        session.expires_at,
                        session.last_activity_at,
                        session.is_active,
                        session.protected,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"field": "user_id"})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def touch_session(self, session_id: str, at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session SET last_activity_at = %s
                WHERE id = %s AND is_active
                """,
                (at, session_id),
            )
            return cur.rowcount > 0

    def deactivate_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET is_active = FALSE WHERE id = %s", (session_id,)
            )
            return cur.rowcount > 0

    def set_session_protected(self, session_id: str, protected: bool) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET protected = %s WHERE id = %s",
                (protected, session_id),
            )
            return cur.rowcount > 0

    def list_live_sessions(
        self, user_id: str, now: datetime, idle_cutoff: datetime
    ) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND is_active
                  AND expires_at > %s AND last_activity_at > %s
                ORDER BY last_activity_at ASC, created_at ASC
                """,
                (user_id, now, idle_cutoff),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def deactivate_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE
                WHERE user_id = %s AND is_active AND id IS DISTINCT FROM %s
                """,
                (user_id, except_session_id),
            )
            return cur.rowcount
