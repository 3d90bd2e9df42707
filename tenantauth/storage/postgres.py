from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tenantauth.logging import get_logger
from tenantauth.storage.errors import (
    ConstraintViolation,
    DeadlineExceeded,
    RotationConflict,
    check_deadline,
)
from tenantauth.storage.models import RefreshToken, User, utcnow

REQUIRED_TABLES = (
    "app_user",
    "user_auth_credential",
    "refresh_token",
    "user_role",
    "role_permission",
)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PostgresStore:
    """Postgres-backed user and refresh-token store for one database.

    One instance exists for the global database and one per tenant database
    (see ``TenantSQLManager``). Statements are bounded by ``statement_timeout``
    so a request deadline is never outlived by a stuck query.
    """

    def __init__(
        self,
        dsn: str,
        *,
        name: str = "global",
        min_size: int = 2,
        max_size: int = 10,
        statement_timeout_ms: int = 3000,
        verify_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.name = name
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(statement_timeout_ms)}",
            },
        )
        if verify_schema:
            self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Fail fast when the auth tables have not been installed."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql to database {!r}.".format(
                    ", ".join(sorted(missing_tables)), self.name
                )
            )

    # -- row mapping -----------------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        meta = row.get("metadata")
        if isinstance(meta, str):
            meta = json.loads(meta)
        return User(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            email=row["email"],
            email_verified=bool(row.get("email_verified", False)),
            metadata=meta or {},
            created_at=_aware(row.get("created_at")) or utcnow(),
            disabled_at=_aware(row.get("disabled_at")),
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            client_id=row["client_id"],
            subject_id=str(row["subject_id"]),
            token_hash=row["token_hash"],
            scope=list(row.get("scope") or []),
            issued_at=_aware(row["issued_at"]),
            expires_at=_aware(row["expires_at"]),
            revoked_at=_aware(row.get("revoked_at")),
            parent_id=str(row["parent_id"]) if row.get("parent_id") else None,
        )

    # -- users -------------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        tenant_id: str,
        email_verified: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> User:
        uid = user_id or str(uuid.uuid4())
        normalized = email.strip().lower()
        now = utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, tenant_id, email, email_verified, metadata, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        uid,
                        tenant_id,
                        normalized,
                        email_verified,
                        json.dumps(metadata or {}),
                        now,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return User(
            id=uid,
            tenant_id=tenant_id,
            email=normalized,
            email_verified=email_verified,
            metadata=dict(metadata or {}),
            created_at=now,
        )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_user_by_email(self, tenant_id: str, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE tenant_id = %s AND lower(email) = %s",
                (tenant_id, email.strip().lower()),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

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

    # -- RBAC ----------------------------------------------------------------------

    def assign_role(self, user_id: str, role: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO user_role (user_id, role) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                (user_id, role),
            )

    def grant_permission(self, role: str, permission: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO role_permission (role, permission) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                (role, permission),
            )

    def get_user_roles(self, user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT role FROM user_role WHERE user_id = %s ORDER BY role", (user_id,)
            ).fetchall()
        return [row["role"] for row in rows]

    def get_user_permissions(self, user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT rp.permission
                FROM user_role ur JOIN role_permission rp ON rp.role = ur.role
                WHERE ur.user_id = %s
                ORDER BY rp.permission
                """,
                (user_id,),
            ).fetchall()
        return [row["permission"] for row in rows]

    # -- refresh tokens ----------------------------------------------------------

    _INSERT_REFRESH_SQL = """
        INSERT INTO refresh_token
            (id, tenant_id, client_id, subject_id, token_hash, scope, issued_at, expires_at, revoked_at, parent_id)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
    """

    @staticmethod
    def _refresh_params(token: RefreshToken) -> tuple:
        return (
            token.id,
            token.tenant_id,
            token.client_id,
            token.subject_id,
            token.token_hash,
            list(token.scope),
            token.issued_at,
            token.expires_at,
            token.revoked_at,
            token.parent_id,
        )

    @staticmethod
    def _bound_by_deadline(conn, deadline: Optional[float]) -> None:
        """Cap the current transaction's statements at the time left before ``deadline``."""
        remaining_ms = check_deadline(deadline)
        if remaining_ms is not None:
            conn.execute("SELECT set_config('statement_timeout', %s, true)", (str(remaining_ms),))

    def create_refresh_token(
        self, token: RefreshToken, *, deadline: Optional[float] = None
    ) -> RefreshToken:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    self._bound_by_deadline(conn, deadline)
                    conn.execute(self._INSERT_REFRESH_SQL, self._refresh_params(token))
                    # Raising inside the block rolls the insert back
                    check_deadline(deadline)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token hash collision", {"field": "token_hash"})
        except errors.QueryCanceled as exc:
            raise DeadlineExceeded("refresh token insert cancelled") from exc
        return token

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        if not row:
            return None
        return self._refresh_from_row(row)

    def revoke_refresh_token(self, token_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE refresh_token SET revoked_at = now() WHERE id = %s AND revoked_at IS NULL",
                (token_id,),
            )

    def revoke_all_refresh_tokens(self, subject_id: str, client_id: Optional[str] = None) -> int:
        with self._connect() as conn:
            if client_id:
                cur = conn.execute(
                    """
                    UPDATE refresh_token SET revoked_at = now()
                    WHERE subject_id = %s AND client_id = %s AND revoked_at IS NULL
                    """,
                    (subject_id, client_id),
                )
            else:
                cur = conn.execute(
                    "UPDATE refresh_token SET revoked_at = now() WHERE subject_id = %s AND revoked_at IS NULL",
                    (subject_id,),
                )
            return max(cur.rowcount or 0, 0)

    def rotate_refresh_token(
        self, old_hash: str, new_token: RefreshToken, *, deadline: Optional[float] = None
    ) -> RefreshToken:
        """Revoke the active token at ``old_hash`` and insert ``new_token`` as its child.

        Runs in one transaction with the old row locked, so exactly one of two
        concurrent rotations of the same token commits. With a ``deadline``
        the transaction is bounded by the time left and rolls back instead of
        committing once it has passed.
        """
        try:
            with self._connect() as conn:
                with conn.transaction():
                    self._bound_by_deadline(conn, deadline)
                    row = conn.execute(
                        "SELECT * FROM refresh_token WHERE token_hash = %s FOR UPDATE",
                        (old_hash,),
                    ).fetchone()
                    if not row:
                        raise RotationConflict("refresh token not found")
                    old = self._refresh_from_row(row)
                    now = utcnow()
                    if old.revoked_at is not None:
                        raise RotationConflict("refresh token already revoked", old)
                    if old.is_expired(now):
                        raise RotationConflict("refresh token expired", old)
                    new_token.parent_id = old.id
                    conn.execute(
                        "UPDATE refresh_token SET revoked_at = %s WHERE id = %s",
                        (now, old.id),
                    )
                    conn.execute(self._INSERT_REFRESH_SQL, self._refresh_params(new_token))
                    check_deadline(deadline)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token hash collision", {"field": "token_hash"})
        except errors.QueryCanceled as exc:
            raise DeadlineExceeded("refresh token rotation cancelled") from exc
        return new_token

    def has_child_refresh_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS present FROM refresh_token WHERE parent_id = %s LIMIT 1",
                (token_id,),
            ).fetchone()
        return bool(row)

    def list_refresh_tokens(
        self, subject_id: str, client_id: Optional[str] = None
    ) -> List[RefreshToken]:
        with self._connect() as conn:
            if client_id:
                rows = conn.execute(
                    "SELECT * FROM refresh_token WHERE subject_id = %s AND client_id = %s ORDER BY issued_at",
                    (subject_id, client_id),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM refresh_token WHERE subject_id = %s ORDER BY issued_at",
                    (subject_id,),
                ).fetchall()
        return [self._refresh_from_row(row) for row in rows]

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1")
        return True

    def close(self) -> None:
        self.pool.close()
