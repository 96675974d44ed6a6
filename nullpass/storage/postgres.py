from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from nullpass.logging import get_logger
from nullpass.service.ciphers import SecretCipher
from nullpass.storage.common import (
    ENTITLEMENT_FIELDS,
    USER_FIELDS,
    check_entitlement_patch,
    check_patch_keys,
    validate_service,
)
from nullpass.storage.errors import ConstraintViolation, RecordNotFound
from nullpass.storage.models import AuditLogEntry, ServiceEntitlement, Session, User

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS np_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT,
        display_name TEXT,
        avatar TEXT,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        two_factor_secret TEXT,
        pending_two_factor_secret TEXT,
        disabled BOOLEAN NOT NULL DEFAULT FALSE,
        migrated BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS np_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES np_user(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        ip TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS np_session_user_ip_idx ON np_session (user_id, ip)",
    "CREATE INDEX IF NOT EXISTS np_session_expires_idx ON np_session (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS np_service_entitlement (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES np_user(id) ON DELETE CASCADE,
        service TEXT NOT NULL,
        tier TEXT NOT NULL DEFAULT 'free',
        is_premium BOOLEAN NOT NULL DEFAULT FALSE,
        access_flags JSONB NOT NULL DEFAULT '{}'::jsonb,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        custom_storage_limit BIGINT,
        custom_api_key_limit INTEGER,
        polar_customer_id TEXT,
        polar_subscription_id TEXT,
        polar_subscription_status TEXT,
        connected BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (user_id, service)
    )
    """,
    "CREATE INDEX IF NOT EXISTS np_entitlement_customer_idx ON np_service_entitlement (polar_customer_id)",
    """
    CREATE TABLE IF NOT EXISTS np_audit_log (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES np_user(id) ON DELETE CASCADE,
        action TEXT NOT NULL,
        data JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS np_audit_user_idx ON np_audit_log (user_id, created_at DESC)",
)

_JSON_COLUMNS = {"access_flags", "metadata"}
_SEALED_USER_COLUMNS = {"two_factor_secret", "pending_two_factor_secret"}


class PostgresStore:
    """Postgres-backed identity store."""

    def __init__(self, dsn: str, *, cipher: SecretCipher | None = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = cipher
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        """Create tables and indexes that are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _seal(self, value: Optional[str]) -> Optional[str]:
        if not value or not self._cipher:
            return value
        return self._cipher.encrypt(value)

    def _unseal(self, value: Optional[str]) -> Optional[str]:
        if not value or not self._cipher:
            return value
        return self._cipher.decrypt(value)

    # row mapping

    def _user_from_row(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row.get("password_hash"),
            display_name=row.get("display_name"),
            avatar=row.get("avatar"),
            two_factor_enabled=bool(row.get("two_factor_enabled")),
            two_factor_secret=self._unseal(row.get("two_factor_secret")),
            pending_two_factor_secret=self._unseal(row.get("pending_two_factor_secret")),
            disabled=bool(row.get("disabled")),
            migrated=bool(row.get("migrated")),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            ip=row.get("ip"),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _entitlement_from_row(row: Dict[str, Any]) -> ServiceEntitlement:
        return ServiceEntitlement(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            service=row["service"],
            tier=row.get("tier") or "free",
            is_premium=bool(row.get("is_premium")),
            access_flags=row.get("access_flags") or {},
            metadata=row.get("metadata") or {},
            custom_storage_limit=row.get("custom_storage_limit"),
            custom_api_key_limit=row.get("custom_api_key_limit"),
            polar_customer_id=row.get("polar_customer_id"),
            polar_subscription_id=row.get("polar_subscription_id"),
            polar_subscription_status=row.get("polar_subscription_status"),
            connected=bool(row.get("connected", True)),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _audit_from_row(row: Dict[str, Any]) -> AuditLogEntry:
        return AuditLogEntry(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            action=row["action"],
            data=row.get("data") or {},
            created_at=row["created_at"],
        )

    # users

    def create_user(
        self,
        email: str,
        password_hash: Optional[str],
        *,
        display_name: Optional[str] = None,
        migrated: bool = False,
        created_at: Optional[datetime] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO np_user (id, email, password_hash, display_name, migrated, created_at)
                    VALUES (%s, %s, %s, %s, %s, COALESCE(%s, now()))
                    RETURNING *
                    """,
                    (user_id, email, password_hash, display_name, migrated, created_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM np_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM np_user WHERE email = %s", (email,)).fetchone()
        return self._user_from_row(row) if row else None

    def update_user(self, user_id: str, **fields: Any) -> User:
        check_patch_keys(fields, USER_FIELDS)
        assignments = ["updated_at = now()"]
        params: List[Any] = []
        for key, value in fields.items():
            assignments.append(f"{key} = %s")
            params.append(self._seal(value) if key in _SEALED_USER_COLUMNS else value)
        params.append(user_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE np_user SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        if not row:
            raise RecordNotFound("user", user_id)
        return self._user_from_row(row)

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM np_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    def list_users(self, *, offset: int = 0, limit: int = 50) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM np_user ORDER BY created_at DESC LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
        return [self._user_from_row(r) for r in rows]

    def count_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM np_user").fetchone()
        return int(row["total"])

    # sessions

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO np_session (id, user_id, token, ip, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token,
                        session.ip,
                        session.expires_at,
                        session.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("session token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
        return self._session_from_row(row)

    def find_live_session(
        self, user_id: str, ip: Optional[str], now: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM np_session
                WHERE user_id = %s AND ip IS NOT DISTINCT FROM %s AND expires_at > %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (user_id, ip, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM np_session WHERE token = %s", (token,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def update_session(
        self, session_id: str, *, expires_at: datetime, token: Optional[str] = None
    ) -> Session:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE np_session
                    SET expires_at = %s, token = COALESCE(%s, token)
                    WHERE id = %s
                    RETURNING *
                    """,
                    (expires_at, token, session_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("session token already exists", {"field": "token"})
        if not row:
            raise RecordNotFound("session", session_id)
        return self._session_from_row(row)

    def list_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM np_session WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(r) for r in rows]

    def delete_session(self, session_id: str, user_id: Optional[str] = None) -> bool:
        try:
            uuid.UUID(str(session_id))
        except ValueError:
            return False
        with self._connect() as conn:
            if user_id is None:
                cur = conn.execute("DELETE FROM np_session WHERE id = %s", (session_id,))
            else:
                cur = conn.execute(
                    "DELETE FROM np_session WHERE id = %s AND user_id = %s",
                    (session_id, user_id),
                )
            return cur.rowcount > 0

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM np_session WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def purge_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM np_session WHERE expires_at < %s", (now,))
            return cur.rowcount

    # entitlements

    def get_entitlement(self, user_id: str, service: str) -> Optional[ServiceEntitlement]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM np_service_entitlement WHERE user_id = %s AND service = %s",
                (user_id, validate_service(service)),
            ).fetchone()
        return self._entitlement_from_row(row) if row else None

    def list_entitlements(
        self, user_id: str, service: Optional[str] = None
    ) -> List[ServiceEntitlement]:
        with self._connect() as conn:
            if service:
                rows = conn.execute(
                    """
                    SELECT * FROM np_service_entitlement
                    WHERE user_id = %s AND service = %s ORDER BY service
                    """,
                    (user_id, validate_service(service)),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM np_service_entitlement WHERE user_id = %s ORDER BY service",
                    (user_id,),
                ).fetchall()
        return [self._entitlement_from_row(r) for r in rows]

    def upsert_entitlement(
        self, user_id: str, service: str, patch: Dict[str, Any]
    ) -> ServiceEntitlement:
        """Insert or partially update in one statement; absent keys keep their value."""
        check_entitlement_patch(patch)
        service = validate_service(service)
        columns = [key for key in ENTITLEMENT_FIELDS if key in patch]
        values = [
            json.dumps(patch[key] or {}) if key in _JSON_COLUMNS else patch[key]
            for key in columns
        ]
        placeholders = [
            "%s::jsonb" if key in _JSON_COLUMNS else "%s" for key in columns
        ]
        updates = [f"{key} = EXCLUDED.{key}" for key in columns] + ["updated_at = now()"]
        insert_columns = ["id", "user_id", "service"] + columns
        sql = (
            f"INSERT INTO np_service_entitlement ({', '.join(insert_columns)}) "
            f"VALUES (%s, %s, %s{''.join(', ' + p for p in placeholders)}) "
            f"ON CONFLICT (user_id, service) DO UPDATE SET {', '.join(updates)} "
            "RETURNING *"
        )
        try:
            with self._connect() as conn:
                row = conn.execute(
                    sql, [str(uuid.uuid4()), user_id, service, *values]
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return self._entitlement_from_row(row)

    def find_entitlements_by_customer(
        self, polar_customer_id: str, service: Optional[str] = None
    ) -> List[ServiceEntitlement]:
        with self._connect() as conn:
            if service:
                rows = conn.execute(
                    """
                    SELECT * FROM np_service_entitlement
                    WHERE polar_customer_id = %s AND service = %s
                    """,
                    (polar_customer_id, validate_service(service)),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM np_service_entitlement WHERE polar_customer_id = %s",
                    (polar_customer_id,),
                ).fetchall()
        return [self._entitlement_from_row(r) for r in rows]

    def find_custom_domain_owner(self, domain: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT user_id FROM np_service_entitlement
                WHERE service = 'DROP' AND metadata->>'customDomain' = %s
                LIMIT 1
                """,
                (domain,),
            ).fetchone()
        return str(row["user_id"]) if row else None

    def count_premium(self, service: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total FROM np_service_entitlement
                WHERE service = %s AND is_premium
                """,
                (validate_service(service),),
            ).fetchone()
        return int(row["total"])

    # audit

    def append_audit(self, user_id: str, action: str, data: Dict[str, Any]) -> AuditLogEntry:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO np_audit_log (id, user_id, action, data)
                    VALUES (%s, %s, %s, %s::jsonb)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), user_id, action, json.dumps(data, default=str)),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return self._audit_from_row(row)

    def list_audit(
        self,
        user_id: str,
        *,
        action: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[AuditLogEntry], int]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM np_audit_log
                WHERE user_id = %s AND (%s::text IS NULL OR action = %s)
                ORDER BY created_at DESC
                LIMIT %s OFFSET %s
                """,
                (user_id, action, action, limit, offset),
            ).fetchall()
            total = conn.execute(
                """
                SELECT COUNT(*) AS total FROM np_audit_log
                WHERE user_id = %s AND (%s::text IS NULL OR action = %s)
                """,
                (user_id, action, action),
            ).fetchone()
        return [self._audit_from_row(r) for r in rows], int(total["total"])
