from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from feastid.logging import get_logger
from feastid.storage.common import (
    DEFAULT_ROLE_PERMISSIONS,
    decode_permissions,
    decode_roles,
    encode_permissions,
    encode_roles,
    ensure_utc,
    generate_uuid,
    normalize_email,
    parse_json_meta,
    safe_row_value,
    scope_key,
)
from feastid.storage.errors import ConstraintViolation, StoreUnavailable
from feastid.storage.models import (
    GLOBAL_SCOPE,
    OTPRecord,
    OTPStatus,
    RolePermissionBinding,
    User,
    UserStatus,
    utcnow,
)

_USER_COLUMNS = frozenset(
    {
        "name",
        "hashed_password",
        "roles",
        "status",
        "mfa_enabled",
        "business_id",
        "invite_token",
        "invite_expiry",
        "last_login_at",
        "meta",
    }
)

_UNSET: Any = object()

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS feast_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL DEFAULT '',
        hashed_password TEXT,
        roles TEXT NOT NULL DEFAULT '[]',
        status TEXT NOT NULL DEFAULT 'pending',
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        business_id TEXT,
        invited_by TEXT,
        invite_token TEXT UNIQUE,
        invite_expiry TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        meta JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS otp_record (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        code_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        max_attempts INTEGER NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'issued',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        consumed_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS otp_record_email_idx ON otp_record (email, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS role_permission (
        business_id TEXT NOT NULL,
        role TEXT NOT NULL,
        permissions TEXT NOT NULL DEFAULT '[]',
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (business_id, role)
    )
    """,
)


class PostgresStore:
    """Postgres-backed credential store.

    Atomicity comes from single-statement conditional updates, so no
    in-process locking is needed. Every statement is bounded by
    ``statement_timeout`` and every pool checkout by the pool timeout; both
    surface as :class:`StoreUnavailable`.
    """

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.timeout_seconds = timeout_seconds
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
            },
        )
        self._ensure_schema()
        self._ensure_default_role_bindings()

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _connection(self, operation: str) -> Iterator[Any]:
        try:
            with self._connect() as conn:
                yield conn
        except (errors.OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_store_unavailable", operation=operation, error=str(exc)
            )
            raise StoreUnavailable(operation, exc) from exc

    def _ensure_schema(self) -> None:
        with self._connection("ensure_schema") as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def _ensure_default_role_bindings(self) -> None:
        with self._connection("seed_role_bindings") as conn:
            for role, permissions in DEFAULT_ROLE_PERMISSIONS.items():
                conn.execute(
                    """
                    INSERT INTO role_permission (business_id, role, permissions)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (business_id, role) DO NOTHING
                    """,
                    (GLOBAL_SCOPE, role, encode_permissions(permissions)),
                )

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=safe_row_value(row, "name") or "",
            hashed_password=safe_row_value(row, "hashed_password"),
            roles=decode_roles(safe_row_value(row, "roles")),
            status=UserStatus(safe_row_value(row, "status", UserStatus.PENDING.value)),
            mfa_enabled=bool(safe_row_value(row, "mfa_enabled", False)),
            business_id=safe_row_value(row, "business_id"),
            invited_by=safe_row_value(row, "invited_by"),
            invite_token=safe_row_value(row, "invite_token"),
            invite_expiry=ensure_utc(safe_row_value(row, "invite_expiry")),
            last_login_at=ensure_utc(safe_row_value(row, "last_login_at")),
            created_at=ensure_utc(safe_row_value(row, "created_at")) or utcnow(),
            updated_at=ensure_utc(safe_row_value(row, "updated_at")) or utcnow(),
            meta=parse_json_meta(safe_row_value(row, "meta")),
        )

    @staticmethod
    def _otp_from_row(row: Dict[str, Any]) -> OTPRecord:
        return OTPRecord(
            id=row["id"],
            email=row["email"],
            code_hash=row["code_hash"],
            expires_at=ensure_utc(row["expires_at"]),
            max_attempts=int(row["max_attempts"]),
            attempts=int(row.get("attempts", 0)),
            status=OTPStatus(row.get("status", OTPStatus.ISSUED.value)),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
            consumed_at=ensure_utc(row.get("consumed_at")),
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        name: str = "",
        roles: Iterable[str] = (),
        status: UserStatus = UserStatus.PENDING,
        business_id: Optional[str] = None,
        invited_by: Optional[str] = None,
        hashed_password: Optional[str] = None,
        mfa_enabled: bool = False,
        meta: Optional[Dict] = None,
    ) -> User:
        user_id = generate_uuid()
        try:
            with self._connection("create_user") as conn:
                row = conn.execute(
                    """
                    INSERT INTO feast_user (id, email, name, hashed_password, roles, status,
                                            mfa_enabled, business_id, invited_by, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        normalize_email(email),
                        name,
                        hashed_password,
                        encode_roles(roles),
                        UserStatus(status).value,
                        mfa_enabled,
                        business_id,
                        invited_by,
                        json.dumps(meta) if meta else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connection("get_user") as conn:
            row = conn.execute(
                "SELECT * FROM feast_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connection("get_user_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM feast_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_invite_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        with self._connection("get_user_by_invite_token") as conn:
            row = conn.execute(
                "SELECT * FROM feast_user WHERE invite_token = %s", (token,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(
        self, business_id: Optional[str] = None, limit: int = 100
    ) -> List[User]:
        with self._connection("list_users") as conn:
            if business_id:
                rows = conn.execute(
                    "SELECT * FROM feast_user WHERE business_id = %s ORDER BY created_at DESC LIMIT %s",
                    (business_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM feast_user ORDER BY created_at DESC LIMIT %s",
                    (limit,),
                ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def update_user(
        self,
        user_id: str,
        fields: Dict[str, Any],
        *,
        expected_invite_token: Any = _UNSET,
        expected_status: Optional[UserStatus] = None,
    ) -> Optional[User]:
        """Single-statement (optionally conditional) update; ``None`` when no row matched."""
        unknown = set(fields) - _USER_COLUMNS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        assignments: List[str] = []
        params: List[Any] = []
        for column, value in fields.items():
            if column == "roles":
                value = encode_roles(value)
            elif column == "status":
                value = UserStatus(value).value
            elif column == "meta":
                value = json.dumps(value) if value else None
            assignments.append(f"{column} = %s")
            params.append(value)
        assignments.append("updated_at = now()")
        where = ["id = %s"]
        params.append(user_id)
        if expected_invite_token is not _UNSET:
            where.append("invite_token IS NOT DISTINCT FROM %s")
            params.append(expected_invite_token)
        if expected_status is not None:
            where.append("status = %s")
            params.append(UserStatus(expected_status).value)
        query = (
            f"UPDATE feast_user SET {', '.join(assignments)} "
            f"WHERE {' AND '.join(where)} RETURNING *"
        )
        try:
            with self._connection("update_user") as conn:
                row = conn.execute(query, tuple(params)).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("invite token collision", {"field": "invite_token"})
        return self._user_from_row(row) if row else None

    # one-time passcodes
    def create_otp_record(self, record: OTPRecord) -> OTPRecord:
        try:
            with self._connection("create_otp_record") as conn:
                row = conn.execute(
                    """
                    INSERT INTO otp_record (id, email, code_hash, expires_at, max_attempts,
                                            attempts, status, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        record.id,
                        normalize_email(record.email),
                        record.code_hash,
                        record.expires_at,
                        record.max_attempts,
                        record.attempts,
                        record.status.value,
                        record.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("otp id already exists", {"field": "id"})
        return self._otp_from_row(row)

    def get_otp_record(self, otp_id: str) -> Optional[OTPRecord]:
        with self._connection("get_otp_record") as conn:
            row = conn.execute(
                "SELECT * FROM otp_record WHERE id = %s", (otp_id,)
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def latest_otp_record_for_email(self, email: str) -> Optional[OTPRecord]:
        with self._connection("latest_otp_record_for_email") as conn:
            row = conn.execute(
                "SELECT * FROM otp_record WHERE email = %s ORDER BY created_at DESC LIMIT 1",
                (normalize_email(email),),
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def increment_otp_attempts(self, otp_id: str) -> Optional[int]:
        with self._connection("increment_otp_attempts") as conn:
            row = conn.execute(
                """
                UPDATE otp_record SET attempts = attempts + 1
                WHERE id = %s AND status = %s
                RETURNING attempts
                """,
                (otp_id, OTPStatus.ISSUED.value),
            ).fetchone()
        return int(row["attempts"]) if row else None

    def mark_otp_consumed(
        self, otp_id: str, status: OTPStatus = OTPStatus.VERIFIED
    ) -> bool:
        if status == OTPStatus.ISSUED:
            raise ValueError("consumed status must be terminal")
        with self._connection("mark_otp_consumed") as conn:
            row = conn.execute(
                """
                UPDATE otp_record SET status = %s, consumed_at = now()
                WHERE id = %s AND status = %s
                RETURNING id
                """,
                (status.value, otp_id, OTPStatus.ISSUED.value),
            ).fetchone()
        return row is not None

    def invalidate_otp_records_for_email(self, email: str) -> int:
        with self._connection("invalidate_otp_records_for_email") as conn:
            cur = conn.execute(
                """
                UPDATE otp_record SET status = %s, consumed_at = now()
                WHERE email = %s AND status = %s
                """,
                (
                    OTPStatus.SUPERSEDED.value,
                    normalize_email(email),
                    OTPStatus.ISSUED.value,
                ),
            )
            return cur.rowcount or 0

    def delete_expired_otp_records(self, now: datetime) -> int:
        with self._connection("delete_expired_otp_records") as conn:
            cur = conn.execute(
                "DELETE FROM otp_record WHERE status <> %s OR expires_at <= %s",
                (OTPStatus.ISSUED.value, now),
            )
            return cur.rowcount or 0

    # role registry
    def get_role_permission_bindings(
        self, business_id: Optional[str] = None
    ) -> Dict[str, frozenset]:
        with self._connection("get_role_permission_bindings") as conn:
            rows = conn.execute(
                "SELECT role, permissions FROM role_permission WHERE business_id = %s",
                (scope_key(business_id),),
            ).fetchall()
        return {row["role"]: decode_permissions(row["permissions"]) for row in rows}

    def set_role_permissions(
        self,
        role: str,
        permissions: Iterable[str],
        *,
        business_id: Optional[str] = None,
    ) -> RolePermissionBinding:
        scope = scope_key(business_id)
        granted = frozenset(p.strip() for p in permissions if p and p.strip())
        with self._connection("set_role_permissions") as conn:
            conn.execute(
                """
                INSERT INTO role_permission (business_id, role, permissions, updated_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (business_id, role)
                DO UPDATE SET permissions = EXCLUDED.permissions, updated_at = now()
                """,
                (scope, role, encode_permissions(granted)),
            )
        return RolePermissionBinding(role=role, permissions=granted, business_id=scope)
