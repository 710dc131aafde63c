from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from otpauth.logging import get_logger
from otpauth.storage.errors import (
    ConstraintViolation,
    LockNotAvailable,
    TransactionClosedError,
)
from otpauth.storage.models import (
    Admin,
    AdminRole,
    AppSetting,
    User,
    UserOtp,
    UserSearchParams,
    UserStatus,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id BIGSERIAL PRIMARY KEY,
        phone_number TEXT NOT NULL UNIQUE,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        status SMALLINT NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_otps (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES users(id),
        code TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        used_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS user_otps_user_created ON user_otps (user_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS admins (
        id BIGSERIAL PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        hashed_password TEXT NOT NULL,
        role SMALLINT NOT NULL DEFAULT 3,
        password_reset_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_settings (
        id BIGSERIAL PRIMARY KEY,
        secret_key TEXT NOT NULL,
        access_token_expire INTEGER NOT NULL
    )
    """,
)

_USER_COLUMNS = "id, phone_number, first_name, last_name, status, created_at"
_ADMIN_COLUMNS = "id, username, hashed_password, role, password_reset_at, created_at"


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=row["id"],
        phone_number=row["phone_number"],
        first_name=row.get("first_name") or "",
        last_name=row.get("last_name") or "",
        status=UserStatus(row["status"]),
        created_at=row["created_at"],
    )


def _otp_from_row(row: Dict[str, Any]) -> UserOtp:
    return UserOtp(
        id=row["id"],
        user_id=row["user_id"],
        code=row["code"],
        created_at=row["created_at"],
        used_at=row.get("used_at"),
    )


def _admin_from_row(row: Dict[str, Any]) -> Admin:
    return Admin(
        id=row["id"],
        username=row["username"],
        hashed_password=row["hashed_password"],
        role=AdminRole(row["role"]),
        password_reset_at=row.get("password_reset_at"),
        created_at=row["created_at"],
    )


def _setting_from_row(row: Dict[str, Any]) -> AppSetting:
    return AppSetting(
        id=row["id"],
        secret_key=row["secret_key"],
        access_token_expire=row["access_token_expire"],
    )


class PostgresTransaction:
    """A pooled connection checked out for one unit of work."""

    def __init__(self, pool: ConnectionPool, conn) -> None:
        self._pool = pool
        self._conn = conn
        self.closed = False

    @property
    def conn(self):
        if self.closed:
            raise TransactionClosedError("transaction already finished")
        return self._conn

    def commit(self) -> None:
        conn = self.conn
        try:
            conn.commit()
        finally:
            self._finish()

    def rollback(self) -> None:
        if self.closed:
            return
        try:
            self._conn.rollback()
        finally:
            self._finish()

    def _finish(self) -> None:
        self.closed = True
        self._pool.putconn(self._conn)


class PostgresStore:
    """Postgres-backed store; every data method runs on the caller's transaction."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        statement_timeout_ms: int = 5000,
        pool: Optional[ConnectionPool] = None,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )

    def begin(self) -> PostgresTransaction:
        return PostgresTransaction(self.pool, self.pool.getconn())

    def close(self) -> None:
        self.pool.close()

    def ensure_schema(self) -> None:
        """Create the tables if they are missing."""

        with self.pool.connection() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("db_schema_ready")

    # -- users ----------------------------------------------------------------

    def create_user(
        self,
        tx: PostgresTransaction,
        phone_number: str,
        first_name: str = "",
        last_name: str = "",
    ) -> User:
        conn = tx.conn
        try:
            # savepoint keeps the outer transaction usable after a conflict
            with conn.transaction():
                row = conn.execute(
                    f"""
                    INSERT INTO users (phone_number, first_name, last_name, status)
                    VALUES (%s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (phone_number, first_name, last_name, int(UserStatus.ACTIVE)),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "users.phone_number already exists",
                {"table": "users", "field": "phone_number"},
            )
        return _user_from_row(row)

    def get_user(self, tx: PostgresTransaction, user_id: int) -> Optional[User]:
        row = tx.conn.execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,)
        ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_phone(
        self, tx: PostgresTransaction, phone_number: str
    ) -> Optional[User]:
        row = tx.conn.execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE phone_number = %s",
            (phone_number,),
        ).fetchone()
        return _user_from_row(row) if row else None

    def update_user_profile(
        self, tx: PostgresTransaction, user_id: int, first_name: str, last_name: str
    ) -> Optional[User]:
        row = tx.conn.execute(
            f"""
            UPDATE users SET first_name = %s, last_name = %s
            WHERE id = %s
            RETURNING {_USER_COLUMNS}
            """,
            (first_name, last_name, user_id),
        ).fetchone()
        return _user_from_row(row) if row else None

    def update_user_status(
        self, tx: PostgresTransaction, user_id: int, status: UserStatus
    ) -> Optional[User]:
        row = tx.conn.execute(
            f"UPDATE users SET status = %s WHERE id = %s RETURNING {_USER_COLUMNS}",
            (int(status), user_id),
        ).fetchone()
        return _user_from_row(row) if row else None

    def search_users(
        self, tx: PostgresTransaction, params: UserSearchParams
    ) -> Tuple[List[User], int]:
        params = params.normalized()
        clauses: List[sql.Composable] = []
        values: List[Any] = []
        if params.id is not None:
            clauses.append(sql.SQL("id = %s"))
            values.append(params.id)
        for column in ("phone_number", "first_name", "last_name"):
            needle = getattr(params, column)
            if needle:
                clauses.append(sql.SQL("{} LIKE %s").format(sql.Identifier(column)))
                values.append(f"%{needle}%")
        if params.status is not None:
            clauses.append(sql.SQL("status = %s"))
            values.append(int(params.status))
        where = (
            sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses)
            if clauses
            else sql.SQL("")
        )
        conn = tx.conn
        total_row = conn.execute(
            sql.SQL("SELECT COUNT(*) AS total FROM users") + where, values
        ).fetchone()
        # sort_by / sort_order are whitelisted by normalized()
        query = (
            sql.SQL("SELECT {} FROM users").format(sql.SQL(_USER_COLUMNS))
            + where
            + sql.SQL(" ORDER BY {} {} LIMIT %s OFFSET %s").format(
                sql.Identifier(params.sort_by),
                sql.SQL(params.sort_order.upper()),
            )
        )
        rows = conn.execute(query, [*values, params.limit, params.offset]).fetchall()
        total = total_row["total"] if total_row else 0
        return [_user_from_row(row) for row in rows], total

    def lock_user(self, tx: PostgresTransaction, user_id: int) -> None:
        """Row-lock ``user_id`` for the rest of ``tx``; never waits."""
        conn = tx.conn
        try:
            with conn.transaction():
                conn.execute(
                    "SELECT id FROM users WHERE id = %s FOR UPDATE NOWAIT", (user_id,)
                )
        except errors.LockNotAvailable:
            raise LockNotAvailable("users", user_id)

    # -- otps -----------------------------------------------------------------

    def create_otp(self, tx: PostgresTransaction, user_id: int, code: str) -> UserOtp:
        row = tx.conn.execute(
            """
            INSERT INTO user_otps (user_id, code)
            VALUES (%s, %s)
            RETURNING id, user_id, code, created_at, used_at
            """,
            (user_id, code),
        ).fetchone()
        return _otp_from_row(row)

    def get_otp(self, tx: PostgresTransaction, otp_id: int) -> Optional[UserOtp]:
        row = tx.conn.execute(
            "SELECT id, user_id, code, created_at, used_at FROM user_otps WHERE id = %s",
            (otp_id,),
        ).fetchone()
        return _otp_from_row(row) if row else None

    def find_recent_unused_otp(
        self, tx: PostgresTransaction, user_id: int, since: datetime
    ) -> Optional[UserOtp]:
        row = tx.conn.execute(
            """
            SELECT id, user_id, code, created_at, used_at FROM user_otps
            WHERE user_id = %s AND used_at IS NULL AND created_at > %s
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (user_id, since),
        ).fetchone()
        return _otp_from_row(row) if row else None

    def count_otps_since(
        self, tx: PostgresTransaction, user_id: int, since: datetime
    ) -> int:
        row = tx.conn.execute(
            "SELECT COUNT(*) AS total FROM user_otps WHERE user_id = %s AND created_at > %s",
            (user_id, since),
        ).fetchone()
        return row["total"] if row else 0

    def mark_otp_used(
        self, tx: PostgresTransaction, otp_id: int, used_at: datetime
    ) -> bool:
        cur = tx.conn.execute(
            "UPDATE user_otps SET used_at = %s WHERE id = %s AND used_at IS NULL",
            (used_at, otp_id),
        )
        return cur.rowcount == 1

    # -- admins ---------------------------------------------------------------

    def create_admin(
        self,
        tx: PostgresTransaction,
        username: str,
        hashed_password: str,
        role: AdminRole = AdminRole.VISITOR,
    ) -> Admin:
        conn = tx.conn
        try:
            with conn.transaction():
                row = conn.execute(
                    f"""
                    INSERT INTO admins (username, hashed_password, role)
                    VALUES (%s, %s, %s)
                    RETURNING {_ADMIN_COLUMNS}
                    """,
                    (username, hashed_password, int(role)),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "admins.username already exists",
                {"table": "admins", "field": "username"},
            )
        return _admin_from_row(row)

    def get_admin(self, tx: PostgresTransaction, admin_id: int) -> Optional[Admin]:
        row = tx.conn.execute(
            f"SELECT {_ADMIN_COLUMNS} FROM admins WHERE id = %s", (admin_id,)
        ).fetchone()
        return _admin_from_row(row) if row else None

    def get_admin_by_username(
        self, tx: PostgresTransaction, username: str
    ) -> Optional[Admin]:
        row = tx.conn.execute(
            f"SELECT {_ADMIN_COLUMNS} FROM admins WHERE username = %s", (username,)
        ).fetchone()
        return _admin_from_row(row) if row else None

    def update_admin(
        self,
        tx: PostgresTransaction,
        admin_id: int,
        *,
        username: Optional[str] = None,
        hashed_password: Optional[str] = None,
        role: Optional[AdminRole] = None,
        password_reset_at: Optional[datetime] = None,
    ) -> Optional[Admin]:
        changes: Dict[str, Any] = {}
        if username is not None:
            changes["username"] = username
        if hashed_password is not None:
            changes["hashed_password"] = hashed_password
        if role is not None:
            changes["role"] = int(role)
        if password_reset_at is not None:
            changes["password_reset_at"] = password_reset_at
        if not changes:
            return self.get_admin(tx, admin_id)
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(column)) for column in changes
        )
        query = sql.SQL("UPDATE admins SET {} WHERE id = %s RETURNING {}").format(
            assignments, sql.SQL(_ADMIN_COLUMNS)
        )
        conn = tx.conn
        try:
            with conn.transaction():
                row = conn.execute(query, [*changes.values(), admin_id]).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "admins.username already exists",
                {"table": "admins", "field": "username"},
            )
        return _admin_from_row(row) if row else None

    def delete_admin(self, tx: PostgresTransaction, admin_id: int) -> bool:
        cur = tx.conn.execute("DELETE FROM admins WHERE id = %s", (admin_id,))
        return cur.rowcount == 1

    def list_admins(self, tx: PostgresTransaction) -> List[Admin]:
        rows = tx.conn.execute(
            f"SELECT {_ADMIN_COLUMNS} FROM admins ORDER BY id"
        ).fetchall()
        return [_admin_from_row(row) for row in rows]

    # -- settings -------------------------------------------------------------

    def get_app_setting(self, tx: PostgresTransaction) -> Optional[AppSetting]:
        row = tx.conn.execute(
            "SELECT id, secret_key, access_token_expire FROM app_settings ORDER BY id LIMIT 1"
        ).fetchone()
        return _setting_from_row(row) if row else None

    def create_app_setting(
        self, tx: PostgresTransaction, secret_key: str, access_token_expire: int
    ) -> AppSetting:
        row = tx.conn.execute(
            """
            INSERT INTO app_settings (secret_key, access_token_expire)
            VALUES (%s, %s)
            RETURNING id, secret_key, access_token_expire
            """,
            (secret_key, access_token_expire),
        ).fetchone()
        return _setting_from_row(row)

    def update_app_setting(
        self,
        tx: PostgresTransaction,
        *,
        secret_key: Optional[str] = None,
        access_token_expire: Optional[int] = None,
    ) -> Optional[AppSetting]:
        current = self.get_app_setting(tx)
        if current is None:
            return None
        row = tx.conn.execute(
            """
            UPDATE app_settings
            SET secret_key = %s, access_token_expire = %s
            WHERE id = %s
            RETURNING id, secret_key, access_token_expire
            """,
            (
                secret_key if secret_key is not None else current.secret_key,
                access_token_expire
                if access_token_expire is not None
                else current.access_token_expire,
                current.id,
            ),
        ).fetchone()
        return _setting_from_row(row) if row else None


__all__ = ["PostgresStore", "PostgresTransaction"]
