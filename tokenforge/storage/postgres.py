from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokenforge.logging import get_logger
from tokenforge.storage.errors import ConstraintViolation
from tokenforge.storage.models import (
    AuditAction,
    AuditEvent,
    Session,
    SigningKeyPair,
    User,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        username TEXT NOT NULL UNIQUE,
        roles TEXT[] NOT NULL DEFAULT ARRAY['user'],
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        last_login_ip TEXT,
        sessions_revoked_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_lower_idx ON app_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id),
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id),
        refresh_token TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        ip_addr TEXT,
        user_agent TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        revoked_at TIMESTAMPTZ,
        revoked_reason TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id) WHERE is_active",
    """
    CREATE TABLE IF NOT EXISTS audit_event (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        action TEXT NOT NULL,
        ip_addr TEXT,
        user_agent TEXT,
        success BOOLEAN NOT NULL DEFAULT TRUE,
        detail JSONB,
        error_message TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_event_user_idx ON audit_event (user_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS signing_key (
        kid TEXT PRIMARY KEY,
        public_pem TEXT NOT NULL,
        private_pem TEXT NOT NULL,
        algorithm TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
)


class PostgresStore:
    """Postgres-backed durable record store.

    Conditional updates are single statements so concurrent workers in
    separate processes serialize on the row lock rather than on any
    application-level lock.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # row mapping

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            roles=list(row.get("roles") or ["user"]),
            is_active=bool(row.get("is_active", True)),
            email_verified=bool(row.get("email_verified", False)),
            mfa_enabled=bool(row.get("mfa_enabled", False)),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            last_login_ip=row.get("last_login_ip"),
            sessions_revoked_at=row.get("sessions_revoked_at"),
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
        )

    @staticmethod
    def _row_to_session(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token=row["refresh_token"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
            is_active=bool(row.get("is_active")),
            revoked_at=row.get("revoked_at"),
            revoked_reason=row.get("revoked_reason"),
        )

    @staticmethod
    def _row_to_audit_event(row: dict) -> AuditEvent:
        detail = row.get("detail")
        if isinstance(detail, str):
            try:
                detail = json.loads(detail)
            except json.JSONDecodeError:
                detail = {"raw": detail}
        return AuditEvent(
            id=str(row["id"]),
            action=AuditAction(row["action"]),
            user_id=row.get("user_id"),
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
            success=bool(row.get("success", True)),
            detail=detail,
            error_message=row.get("error_message"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_signing_key(row: dict) -> SigningKeyPair:
        return SigningKeyPair(
            kid=row["kid"],
            public_pem=row["public_pem"],
            private_pem=row["private_pem"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            algorithm=row.get("algorithm") or "RS256",
        )

    # users

    def create_user(
        self,
        email: str,
        username: str,
        *,
        roles: Optional[List[str]] = None,
        is_active: bool = True,
        email_verified: bool = False,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, username, roles, is_active, email_verified)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, username, list(roles or ["user"]), is_active, email_verified),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._identity_conflict(exc)
        return self._row_to_user(row)

    @staticmethod
    def _identity_conflict(exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(exc.diag, "constraint_name", "") or ""
        field = "username" if "username" in constraint else "email"
        return ConstraintViolation(f"{field} already exists", {"field": field})

    def _fetch_user(self, where: str, value: Any) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM app_user WHERE {where}", (value,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id = %s", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("lower(email) = lower(%s)", email)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user("username = %s", username)

    def _update_user(self, user_id: str, assignments: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments} WHERE id = %s RETURNING *",
                (*params, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_user_active(self, user_id: str, active: bool, *, at: datetime) -> Optional[User]:
        return self._update_user(user_id, "is_active = %s, updated_at = %s", (active, at))

    def set_mfa_enabled(self, user_id: str, enabled: bool, *, at: datetime) -> Optional[User]:
        return self._update_user(user_id, "mfa_enabled = %s, updated_at = %s", (enabled, at))

    def set_email_verified(self, user_id: str, verified: bool, *, at: datetime) -> Optional[User]:
        return self._update_user(
            user_id, "email_verified = %s, updated_at = %s", (verified, at)
        )

    def update_user_profile(
        self,
        user_id: str,
        *,
        at: datetime,
        email: Optional[str] = None,
        username: Optional[str] = None,
        email_verified: Optional[bool] = None,
    ) -> Optional[User]:
        columns = {"email": email, "username": username, "email_verified": email_verified}
        assignments = [f"{name} = %s" for name, value in columns.items() if value is not None]
        params = [value for value in columns.values() if value is not None]
        assignments.append("updated_at = %s")
        params.append(at)
        try:
            return self._update_user(user_id, ", ".join(assignments), tuple(params))
        except errors.UniqueViolation as exc:
            raise self._identity_conflict(exc)

    def record_failed_login(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout_until: datetime,
    ) -> Optional[User]:
        return self._update_user(
            user_id,
            """
            failed_login_attempts = failed_login_attempts + 1,
            locked_until = CASE
                WHEN failed_login_attempts + 1 >= %s THEN %s
                ELSE locked_until
            END
            """,
            (max_attempts, lockout_until),
        )

    def record_successful_login(
        self, user_id: str, *, at: datetime, ip_addr: Optional[str]
    ) -> Optional[User]:
        return self._update_user(
            user_id,
            """
            failed_login_attempts = 0, locked_until = NULL,
            last_login_at = %s, last_login_ip = %s, updated_at = %s
            """,
            (at, ip_addr, at),
        )

    def reset_login_failures(self, user_id: str, *, at: datetime) -> Optional[User]:
        return self._update_user(
            user_id,
            "failed_login_attempts = 0, locked_until = NULL, updated_at = %s",
            (at,),
        )

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
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
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # sessions

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, refresh_token, created_at, expires_at, ip_addr, user_agent, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, TRUE)
                    RETURNING *
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token,
                        session.created_at,
                        session.expires_at,
                        session.ip_addr,
                        session.user_agent,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "refresh_token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
        return self._row_to_session(row)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE refresh_token = %s", (refresh_token,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def revoke_session_if_active(
        self,
        refresh_token: str,
        *,
        reason: str,
        revoked_at: datetime,
        user_id: Optional[str] = None,
    ) -> Optional[Session]:
        query = """
            UPDATE auth_session
            SET is_active = FALSE, revoked_at = %s, revoked_reason = %s
            WHERE refresh_token = %s AND is_active AND revoked_at IS NULL
        """
        params: tuple = (revoked_at, reason, refresh_token)
        if user_id is not None:
            query += " AND user_id = %s"
            params = (*params, user_id)
        with self._connect() as conn:
            row = conn.execute(query + " RETURNING *", params).fetchone()
        return self._row_to_session(row) if row else None

    def revoke_user_sessions(
        self, user_id: str, *, reason: str, revoked_at: datetime
    ) -> int:
        with self._connect() as conn:
            with conn.transaction():
                cur = conn.execute(
                    """
                    UPDATE auth_session
                    SET is_active = FALSE, revoked_at = %s, revoked_reason = %s
                    WHERE user_id = %s AND is_active AND revoked_at IS NULL
                    """,
                    (revoked_at, reason, user_id),
                )
                revoked = cur.rowcount or 0
                conn.execute(
                    "UPDATE app_user SET sessions_revoked_at = %s WHERE id = %s",
                    (revoked_at, user_id),
                )
        return revoked

    def list_user_sessions(self, user_id: str, *, active_only: bool = True) -> List[Session]:
        query = "SELECT * FROM auth_session WHERE user_id = %s"
        if active_only:
            query += " AND is_active"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at DESC", (user_id,)).fetchall()
        return [self._row_to_session(r) for r in rows]

    # audit

    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_event (id, user_id, action, ip_addr, user_agent, success, detail, error_message, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.user_id,
                    event.action.value,
                    event.ip_addr,
                    event.user_agent,
                    event.success,
                    json.dumps(event.detail) if event.detail else None,
                    event.error_message,
                    event.created_at,
                ),
            )
        return event

    def list_audit_events(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if action is not None:
            clauses.append("action = %s")
            params.append(action.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_event {where} ORDER BY created_at DESC LIMIT %s",
                (*params, limit),
            ).fetchall()
        return [self._row_to_audit_event(r) for r in rows]

    # signing keys

    def save_signing_key(self, key: SigningKeyPair) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO signing_key (kid, public_pem, private_pem, algorithm, created_at, expires_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    key.kid,
                    key.public_pem,
                    key.private_pem,
                    key.algorithm,
                    key.created_at,
                    key.expires_at,
                ),
            )

    def list_signing_keys(self) -> List[SigningKeyPair]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM signing_key ORDER BY created_at ASC"
            ).fetchall()
        return [self._row_to_signing_key(r) for r in rows]

    def delete_signing_key(self, kid: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM signing_key WHERE kid = %s", (kid,))
            return bool(cur.rowcount)
