from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from expensebuddy.logging import get_logger
from expensebuddy.storage.common import (
    SEARCH_RESULT_LIMIT,
    check_family_fields,
    check_user_fields,
    family_from_row,
    generate_uuid,
    join_request_from_row,
    normalize_email,
    to_storable,
    user_from_row,
)
from expensebuddy.storage.errors import (
    PENDING_JOIN_REQUEST_UNIQUE,
    USER_EMAIL_UNIQUE,
    ConstraintViolation,
)
from expensebuddy.storage.models import (
    Family,
    FamilyJoinRequest,
    JoinRequestStatus,
    Role,
    User,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS family (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        owner_id UUID,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        invite_code TEXT,
        invite_code_expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        middle_name TEXT NOT NULL DEFAULT '',
        is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        email_verification_token TEXT,
        email_verification_expires_at TIMESTAMPTZ,
        password_reset_token TEXT,
        password_reset_expires_at TIMESTAMPTZ,
        family_id UUID REFERENCES family (id) ON DELETE SET NULL,
        role_in_family TEXT NOT NULL DEFAULT 'MEMBER',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    f"CREATE UNIQUE INDEX IF NOT EXISTS {USER_EMAIL_UNIQUE} ON app_user (lower(email))",
    "CREATE INDEX IF NOT EXISTS app_user_family_idx ON app_user (family_id)",
    "CREATE INDEX IF NOT EXISTS family_invite_code_idx ON family (invite_code)",
    "CREATE INDEX IF NOT EXISTS family_owner_idx ON family (owner_id)",
    """
    CREATE TABLE IF NOT EXISTS family_join_request (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user (id) ON DELETE CASCADE,
        family_id UUID NOT NULL REFERENCES family (id) ON DELETE CASCADE,
        owner_id UUID NOT NULL,
        status TEXT NOT NULL DEFAULT 'PENDING',
        message TEXT,
        response_message TEXT,
        requested_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        responded_at TIMESTAMPTZ,
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS {PENDING_JOIN_REQUEST_UNIQUE}
        ON family_join_request (user_id, family_id)
        WHERE status = 'PENDING' AND is_active
    """,
    """
    CREATE INDEX IF NOT EXISTS family_join_request_owner_idx
        ON family_join_request (owner_id, status, requested_at DESC)
    """,
)


class PostgresStore:
    """Postgres-backed store for users, families, and join requests."""

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
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: str = "",
        last_name: str = "",
        middle_name: str = "",
        family_id: Optional[str] = None,
        role_in_family: Role = Role.MEMBER,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (
                        id, email, password_hash, first_name, last_name, middle_name,
                        family_id, role_in_family
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        generate_uuid(),
                        normalize_email(email),
                        password_hash,
                        first_name,
                        last_name,
                        middle_name,
                        family_id,
                        role_in_family.value,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email"}, constraint=USER_EMAIL_UNIQUE
            )
        return user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = %s", (normalize_email(email),)
            ).fetchone()
        return user_from_row(row) if row else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        return self.update_user_if(user_id, {}, **fields)

    def update_user_if(
        self, user_id: str, expected: Mapping[str, Any], **fields: Any
    ) -> Optional[User]:
        """Single-statement conditional update; None when a precondition fails."""
        check_user_fields(fields)
        check_user_fields(expected)
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        assignments = [
            sql.SQL("{} = %s").format(sql.Identifier(key)) for key in fields
        ] + [sql.SQL("updated_at = now()")]
        conditions = [sql.SQL("id = %s")]
        params: list[Any] = [to_storable(value) for value in fields.values()]
        params.append(user_id)
        for key, value in expected.items():
            if value is None:
                conditions.append(sql.SQL("{} IS NULL").format(sql.Identifier(key)))
            else:
                conditions.append(sql.SQL("{} = %s").format(sql.Identifier(key)))
                params.append(to_storable(value))
        query = sql.SQL("UPDATE app_user SET {} WHERE {} RETURNING *").format(
            sql.SQL(", ").join(assignments), sql.SQL(" AND ").join(conditions)
        )
        try:
            with self._connect() as conn:
                row = conn.execute(query, params).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email"}, constraint=USER_EMAIL_UNIQUE
            )
        return user_from_row(row) if row else None

    def list_family_members(self, family_id: str) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM app_user
                WHERE family_id = %s AND is_active
                ORDER BY created_at
                """,
                (family_id,),
            ).fetchall()
        return [user_from_row(row) for row in rows]

    def count_family_members(self, family_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS total FROM app_user WHERE family_id = %s AND is_active",
                (family_id,),
            ).fetchone()
        return int(row["total"]) if row else 0

    # -- families ------------------------------------------------------------

    def create_family(
        self,
        name: str,
        description: str = "",
        *,
        owner_id: Optional[str] = None,
        invite_code: Optional[str] = None,
        invite_code_expires_at: Optional[datetime] = None,
    ) -> Family:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO family (id, name, description, owner_id, invite_code, invite_code_expires_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    generate_uuid(),
                    name,
                    description or "",
                    owner_id,
                    invite_code,
                    invite_code_expires_at,
                ),
            ).fetchone()
        return family_from_row(row)

    def get_family(
        self, family_id: str, *, include_ownerless: bool = False
    ) -> Optional[Family]:
        query = "SELECT * FROM family WHERE id = %s"
        if not include_ownerless:
            query += " AND owner_id IS NOT NULL"
        with self._connect() as conn:
            row = conn.execute(query, (family_id,)).fetchone()
        return family_from_row(row) if row else None

    def get_family_by_invite_code(self, invite_code: str) -> Optional[Family]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM family WHERE invite_code = %s AND owner_id IS NOT NULL",
                (invite_code,),
            ).fetchone()
        return family_from_row(row) if row else None

    def assign_family_owner(self, family_id: str, owner_id: str) -> Optional[Family]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE family SET owner_id = %s, updated_at = now()
                WHERE id = %s AND owner_id IS NULL
                RETURNING *
                """,
                (owner_id, family_id),
            ).fetchone()
        return family_from_row(row) if row else None

    def update_family(self, family_id: str, **fields: Any) -> Optional[Family]:
        check_family_fields(fields)
        assignments = [
            sql.SQL("{} = %s").format(sql.Identifier(key)) for key in fields
        ] + [sql.SQL("updated_at = now()")]
        query = sql.SQL(
            "UPDATE family SET {} WHERE id = %s AND owner_id IS NOT NULL RETURNING *"
        ).format(sql.SQL(", ").join(assignments))
        with self._connect() as conn:
            row = conn.execute(query, [*fields.values(), family_id]).fetchone()
        return family_from_row(row) if row else None

    def delete_family(self, family_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM family WHERE id = %s", (family_id,))
            return cur.rowcount > 0

    def search_families(self, term: str, limit: int = SEARCH_RESULT_LIMIT) -> List[Family]:
        needle = (term or "").strip()
        # Escape LIKE wildcards so the term is matched literally
        escaped = needle.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM family
                WHERE is_active AND owner_id IS NOT NULL AND name ILIKE %s
                ORDER BY lower(name)
                LIMIT %s
                """,
                (f"%{escaped}%", limit),
            ).fetchall()
        return [family_from_row(row) for row in rows]

    # -- join requests -------------------------------------------------------

    def create_join_request(
        self,
        user_id: str,
        family_id: str,
        owner_id: str,
        message: Optional[str] = None,
    ) -> FamilyJoinRequest:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO family_join_request (id, user_id, family_id, owner_id, message)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (generate_uuid(), user_id, family_id, owner_id, message),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "pending join request already exists",
                {"user_id": user_id, "family_id": family_id},
                constraint=PENDING_JOIN_REQUEST_UNIQUE,
            )
        return join_request_from_row(row)

    def get_join_request(self, request_id: str) -> Optional[FamilyJoinRequest]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM family_join_request WHERE id = %s", (request_id,)
            ).fetchone()
        return join_request_from_row(row) if row else None

    def resolve_join_request(
        self,
        request_id: str,
        status: JoinRequestStatus,
        *,
        response_message: Optional[str] = None,
        responded_at: Optional[datetime] = None,
    ) -> Optional[FamilyJoinRequest]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE family_join_request
                SET status = %s, response_message = %s, responded_at = %s
                WHERE id = %s AND status = 'PENDING'
                RETURNING *
                """,
                (
                    status.value,
                    response_message,
                    responded_at or datetime.now(timezone.utc),
                    request_id,
                ),
            ).fetchone()
        return join_request_from_row(row) if row else None

    def list_join_requests(
        self,
        *,
        owner_id: Optional[str] = None,
        user_id: Optional[str] = None,
        status: Optional[JoinRequestStatus] = None,
    ) -> List[FamilyJoinRequest]:
        clauses = ["is_active"]
        params: list[Any] = []
        if owner_id is not None:
            clauses.append("owner_id = %s")
            params.append(owner_id)
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        query = (
            "SELECT * FROM family_join_request WHERE "
            + " AND ".join(clauses)
            + " ORDER BY requested_at DESC"
        )
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [join_request_from_row(row) for row in rows]
