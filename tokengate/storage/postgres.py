from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokengate.logging import get_logger
from tokengate.storage.errors import ConstraintViolation
from tokengate.storage.models import TokenRecord, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id BIGSERIAL PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id BIGINT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_token (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        access_token TEXT NOT NULL,
        refresh_token TEXT NOT NULL,
        access_token_expires_at TIMESTAMPTZ NOT NULL,
        refresh_token_expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT auth_token_access_token_key UNIQUE (access_token),
        CONSTRAINT auth_token_refresh_token_key UNIQUE (refresh_token),
        CONSTRAINT auth_token_expiry_order
            CHECK (access_token_expires_at <= refresh_token_expires_at)
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_token_user_id_idx ON auth_token (user_id)",
)

_CONSTRAINT_FIELDS = {
    "app_user_username_key": "username",
    "app_user_email_key": "email",
    "auth_token_access_token_key": "access_token",
    "auth_token_refresh_token_key": "refresh_token",
    "auth_token_expiry_order": "access_token_expires_at",
}


def _violation(exc: errors.IntegrityError, message: str) -> ConstraintViolation:
    diag = getattr(exc, "diag", None)
    constraint = getattr(diag, "constraint_name", None) if diag else None
    field = _CONSTRAINT_FIELDS.get(constraint or "")
    detail: dict[str, Any] = {"constraint": constraint}
    if field:
        detail["field"] = field
    return ConstraintViolation(message, detail)


class PostgresStore:
    """Identity and token persistence on Postgres through a psycopg pool."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the user, credential and token tables when missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=["app_user", "auth_token"])

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row["ok"] == 1)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=int(row["id"]),
            username=row["username"],
            email=row["email"],
            role=row.get("role", "user"),
            created_at=row.get("created_at") or utcnow(),
            is_active=row.get("is_active", True),
        )

    @staticmethod
    def _row_to_token(row: dict) -> TokenRecord:
        return TokenRecord(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            access_token_expires_at=row["access_token_expires_at"],
            refresh_token_expires_at=row["refresh_token_expires_at"],
            created_at=row.get("created_at") or utcnow(),
        )

    # identities
    def create_user(
        self,
        username: str,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (username, email, role, is_active)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (username, email, role, is_active),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _violation(exc, "user already exists") from exc
        return self._row_to_user(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    def save_password(
        self, user_id: int, password_hash: str, password_algo: str
    ) -> None:
        try:
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
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            ) from exc

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # token records
    def find_by_access_token(self, access_token: str) -> Optional[TokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_token WHERE access_token = %s", (access_token,)
            ).fetchone()
        return self._row_to_token(row) if row else None

    def find_by_refresh_token(self, refresh_token: str) -> Optional[TokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_token WHERE refresh_token = %s", (refresh_token,)
            ).fetchone()
        return self._row_to_token(row) if row else None

    def all_active_for(
        self, user_id: int, *, now: Optional[datetime] = None
    ) -> List[TokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_token
                WHERE user_id = %s AND refresh_token_expires_at > %s
                """,
                (user_id, now or utcnow()),
            ).fetchall()
        return [self._row_to_token(row) for row in rows]

    def save(self, record: TokenRecord) -> TokenRecord:
        try:
            with self._connect() as conn:
                if record.id is None:
                    row = conn.execute(
                        """
                        INSERT INTO auth_token (
                            user_id, access_token, refresh_token,
                            access_token_expires_at, refresh_token_expires_at, created_at
                        )
                        VALUES (%s, %s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (
                            record.user_id,
                            record.access_token,
                            record.refresh_token,
                            record.access_token_expires_at,
                            record.refresh_token_expires_at,
                            record.created_at,
                        ),
                    ).fetchone()
                else:
                    row = conn.execute(
                        """
                        UPDATE auth_token
                        SET access_token = %s,
                            refresh_token = %s,
                            access_token_expires_at = %s,
                            refresh_token_expires_at = %s
                        WHERE id = %s
                        RETURNING *
                        """,
                        (
                            record.access_token,
                            record.refresh_token,
                            record.access_token_expires_at,
                            record.refresh_token_expires_at,
                            record.id,
                        ),
                    ).fetchone()
        except (errors.UniqueViolation, errors.CheckViolation) as exc:
            raise _violation(exc, "token record rejected") from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "token owner does not exist", {"user_id": record.user_id}
            ) from exc
        if row is None:
            # updated record was deleted concurrently
            raise ConstraintViolation("token record not found", {"id": record.id})
        return self._row_to_token(row)

    def delete(self, record: TokenRecord) -> None:
        if record.id is None:
            return
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_token WHERE id = %s", (record.id,))

    def delete_all_for(self, user_id: int) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_token WHERE user_id = %s", (user_id,))
            return cur.rowcount
