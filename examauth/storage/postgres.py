from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from examauth.logging import get_logger
from examauth.storage.errors import ConstraintViolation
from examauth.storage.models import AuditEvent, RefreshToken, SsoState, User

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id BIGSERIAL PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        display_name TEXT,
        roles TEXT[] NOT NULL DEFAULT '{}',
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
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
    CREATE TABLE IF NOT EXISTS user_auth_provider (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        subject TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (provider, subject)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        chain_id TEXT NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        chain_expires_at TIMESTAMPTZ NOT NULL,
        used_at TIMESTAMPTZ,
        revoked_at TIMESTAMPTZ,
        revoked_reason TEXT,
        replaced_by_id UUID,
        client_ip TEXT,
        user_agent TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_chain_idx ON refresh_token (chain_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS sso_state (
        state TEXT PRIMARY KEY,
        redirect_uri TEXT NOT NULL,
        code_verifier TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        consumed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_event (
        id UUID PRIMARY KEY,
        category TEXT NOT NULL,
        severity TEXT NOT NULL,
        action TEXT NOT NULL,
        actor TEXT,
        details JSONB,
        correlation_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PostgresStore:
    """Postgres-backed store for users, refresh tokens, SSO states and audit events.

    Rotation and state consumption are single conditional ``UPDATE`` statements
    so the database arbitrates concurrent callers.
    """

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
        """Create the service tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=int(row["id"]),
            email=row["email"],
            display_name=row.get("display_name"),
            roles=list(row.get("roles") or []),
            email_verified=bool(row.get("email_verified", False)),
            is_active=bool(row.get("is_active", True)),
            created_at=row.get("created_at") or _utcnow(),
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _refresh_from_row(row: dict) -> RefreshToken:
        replaced_by = row.get("replaced_by_id")
        return RefreshToken(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            user_id=int(row["user_id"]),
            chain_id=row["chain_id"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            chain_expires_at=row["chain_expires_at"],
            used_at=row.get("used_at"),
            revoked_at=row.get("revoked_at"),
            revoked_reason=row.get("revoked_reason"),
            replaced_by_id=str(replaced_by) if replaced_by else None,
            client_ip=row.get("client_ip"),
            user_agent=row.get("user_agent"),
        )

    @staticmethod
    def _state_from_row(row: dict) -> SsoState:
        return SsoState(
            state=row["state"],
            redirect_uri=row["redirect_uri"],
            code_verifier=row.get("code_verifier"),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            consumed_at=row.get("consumed_at"),
        )

    # users
    def create_user(
        self,
        email: str,
        display_name: Optional[str] = None,
        *,
        roles: Optional[List[str]] = None,
        email_verified: bool = False,
        is_active: bool = True,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (email, display_name, roles, email_verified, is_active)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        email.strip().lower(),
                        display_name,
                        list(roles or []),
                        email_verified,
                        is_active,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def link_user_auth_provider(self, user_id: int, provider: str, subject: str) -> None:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_auth_provider (user_id, provider, subject)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (provider, subject) DO UPDATE SET provider = EXCLUDED.provider
                    RETURNING user_id
                    """,
                    (user_id, provider, subject),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for link", {"user_id": user_id})
        if row and int(row["user_id"]) != user_id:
            raise ConstraintViolation(
                "provider identity already linked", {"provider": provider}
            )

    def get_user_by_provider(self, provider: str, subject: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT u.* FROM user_auth_provider p JOIN app_user u ON u.id = p.user_id WHERE p.provider = %s AND p.subject = %s",
                (provider, subject),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_active(self, user_id: int, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_roles(self, user_id: int, roles: List[str]) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET roles = %s WHERE id = %s RETURNING *",
                (list(roles), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_login(self, user_id: int, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s", (at, user_id)
            )

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None:
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
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # refresh tokens
    def _insert_refresh_token(self, conn: Any, record: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (id, token_hash, user_id, chain_id, issued_at, expires_at,
                                       chain_expires_at, client_ip, user_agent)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.id,
                record.token_hash,
                record.user_id,
                record.chain_id,
                record.issued_at,
                record.expires_at,
                record.chain_expires_at,
                record.client_ip,
                record.user_agent,
            ),
        )

    def add_refresh_token(self, record: RefreshToken) -> None:
        try:
            with self._connect() as conn:
                self._insert_refresh_token(conn, record)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token hash collision", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", {"user_id": record.user_id})

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def get_chain_expiry(self, chain_id: str) -> Optional[datetime]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT chain_expires_at FROM refresh_token WHERE chain_id = %s LIMIT 1",
                (chain_id,),
            ).fetchone()
        return row["chain_expires_at"] if row else None

    def list_chain_tokens(self, chain_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE chain_id = %s ORDER BY issued_at",
                (chain_id,),
            ).fetchall()
        return [self._refresh_from_row(row) for row in rows]

    def rotate_refresh_token(
        self, old_id: str, successor: RefreshToken, *, now: datetime | None = None
    ) -> bool:
        """Mark ``old_id`` used and insert ``successor`` in one transaction.

        The guarded ``UPDATE`` matches at most once across all concurrent
        transactions; a caller that matches zero rows inserts nothing.
        """
        used_at = now or _utcnow()
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        """
                        UPDATE refresh_token
                        SET used_at = %s, replaced_by_id = %s
                        WHERE id = %s AND used_at IS NULL AND revoked_at IS NULL
                        RETURNING id
                        """,
                        (used_at, successor.id, old_id),
                    ).fetchone()
                    if not row:
                        return False
                    self._insert_refresh_token(conn, successor)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token hash collision", {"field": "token_hash"})
        return True

    def revoke_refresh_chain(
        self, chain_id: str, reason: str, *, now: datetime | None = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = %s, revoked_reason = %s
                WHERE chain_id = %s AND revoked_at IS NULL
                """,
                (now or _utcnow(), reason, chain_id),
            )
            return cur.rowcount or 0

    def revoke_user_refresh_tokens(
        self, user_id: int, reason: str, *, now: datetime | None = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = %s, revoked_reason = %s
                WHERE user_id = %s AND revoked_at IS NULL
                """,
                (now or _utcnow(), reason, user_id),
            )
            return cur.rowcount or 0

    def list_active_refresh_tokens(
        self, user_id: int, *, now: datetime | None = None
    ) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE user_id = %s AND used_at IS NULL AND revoked_at IS NULL AND expires_at > %s
                ORDER BY chain_expires_at
                """,
                (user_id, now or _utcnow()),
            ).fetchall()
        return [self._refresh_from_row(row) for row in rows]

    def purge_refresh_tokens(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE chain_expires_at < %s", (before,)
            )
            return cur.rowcount or 0

    # sso state
    def save_sso_state(self, record: SsoState) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sso_state (state, redirect_uri, code_verifier, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        record.state,
                        record.redirect_uri,
                        record.code_verifier,
                        record.created_at,
                        record.expires_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("sso state collision", {"field": "state"})

    def get_sso_state(self, state: str) -> Optional[SsoState]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sso_state WHERE state = %s", (state,)
            ).fetchone()
        return self._state_from_row(row) if row else None

    def mark_sso_state_consumed(self, state: str, now: datetime) -> Optional[SsoState]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE sso_state SET consumed_at = %s
                WHERE state = %s AND consumed_at IS NULL AND expires_at > %s
                RETURNING *
                """,
                (now, state, now),
            ).fetchone()
        return self._state_from_row(row) if row else None

    def purge_sso_states(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM sso_state WHERE expires_at < %s", (before,))
            return cur.rowcount or 0

    # audit
    def record_audit_event(
        self,
        category: str,
        severity: str,
        action: str,
        *,
        actor: Optional[str] = None,
        details: Optional[dict] = None,
        correlation_id: Optional[str] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            id=str(uuid.uuid4()),
            category=category,
            severity=severity,
            action=action,
            actor=actor,
            details=dict(details or {}),
            correlation_id=correlation_id,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_event (id, category, severity, action, actor, details, correlation_id, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    category,
                    severity,
                    action,
                    actor,
                    json.dumps(event.details, default=str),
                    correlation_id,
                    event.created_at,
                ),
            )
        return event

    def list_audit_events(
        self, *, category: Optional[str] = None, action: Optional[str] = None
    ) -> List[AuditEvent]:
        clauses = []
        params: list[Any] = []
        if category is not None:
            clauses.append("category = %s")
            params.append(category)
        if action is not None:
            clauses.append("action = %s")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_event {where} ORDER BY created_at", params
            ).fetchall()
        return [
            AuditEvent(
                id=str(row["id"]),
                category=row["category"],
                severity=row["severity"],
                action=row["action"],
                actor=row.get("actor"),
                details=row.get("details") or {},
                correlation_id=row.get("correlation_id"),
                created_at=row["created_at"],
            )
            for row in rows
        ]
