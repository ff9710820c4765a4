from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sesam.logging import get_logger
from sesam.storage.errors import ConstraintViolation
from sesam.storage.models import (
    PATCHABLE_FIELDS,
    ResetTicket,
    UserMatch,
    UserRecord,
    VerificationTicket,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sesam_user (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    name TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
    is_verified BOOLEAN NOT NULL DEFAULT FALSE,
    verification_token TEXT,
    verification_expires_at TIMESTAMPTZ,
    verification_issued_at TIMESTAMPTZ,
    last_verification_sent_at TIMESTAMPTZ,
    reset_token TEXT,
    reset_expires_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS sesam_user_email_key ON sesam_user (lower(email));
CREATE INDEX IF NOT EXISTS sesam_user_verification_token_idx
    ON sesam_user (verification_token) WHERE verification_token IS NOT NULL;
CREATE INDEX IF NOT EXISTS sesam_user_reset_token_idx
    ON sesam_user (reset_token) WHERE reset_token IS NOT NULL;
"""


def build_match_clause(match: UserMatch) -> Tuple[str, List[Any]]:
    """Translate a :class:`UserMatch` into extra ``WHERE`` conditions.

    The returned SQL starts with `` AND`` for each condition (or is empty) so
    it can be appended to ``WHERE id = %s``.
    """
    clauses: List[str] = []
    params: List[Any] = []
    if match.is_verified is not None:
        clauses.append("is_verified = %s")
        params.append(match.is_verified)
    if match.verification_token is not None:
        clauses.append("verification_token = %s")
        params.append(match.verification_token)
        if match.active_at is not None:
            clauses.append("verification_expires_at > %s")
            params.append(match.active_at)
    if match.reset_token is not None:
        clauses.append("reset_token = %s")
        params.append(match.reset_token)
        if match.active_at is not None:
            clauses.append("reset_expires_at > %s")
            params.append(match.active_at)
    sql = "".join(f" AND {clause}" for clause in clauses)
    return sql, params


def build_patch_assignments(patch: Mapping[str, Any]) -> Tuple[str, List[Any]]:
    """Translate a record patch into ``SET`` assignments and parameters."""
    unknown = set(patch) - PATCHABLE_FIELDS
    if unknown:
        raise ValueError(f"unsupported patch fields: {sorted(unknown)}")
    columns: Dict[str, Any] = {}
    for key, value in patch.items():
        if key == "verification":
            ticket: Optional[VerificationTicket] = value
            columns["verification_token"] = ticket.token if ticket else None
            columns["verification_expires_at"] = ticket.expires_at if ticket else None
            columns["verification_issued_at"] = ticket.issued_at if ticket else None
        elif key == "reset":
            reset: Optional[ResetTicket] = value
            columns["reset_token"] = reset.token if reset else None
            columns["reset_expires_at"] = reset.expires_at if reset else None
        else:
            columns[key] = value
    assignments = [f"{column} = %s" for column in columns]
    assignments.append("updated_at = now()")
    return ", ".join(assignments), list(columns.values())


class PostgresStore:
    """Postgres-backed user store.

    Every conditional update is a single ``UPDATE ... WHERE ... RETURNING``
    statement, so concurrent consumers of the same ticket cannot both match.
    """

    def __init__(
        self,
        dsn: str,
        *,
        pool: Optional[ConnectionPool] = None,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``sesam_user`` table and its indexes if missing."""

        with self._connect() as conn:
            conn.execute(_SCHEMA)
        self.logger.info("postgres_schema_ready")

    @staticmethod
    def _user_from_row(row: Mapping[str, Any]) -> UserRecord:
        verification = None
        if row.get("verification_token"):
            verification = VerificationTicket(
                token=row["verification_token"],
                expires_at=row["verification_expires_at"],
                issued_at=row.get("verification_issued_at")
                or row["verification_expires_at"],
            )
        reset = None
        if row.get("reset_token"):
            reset = ResetTicket(
                token=row["reset_token"], expires_at=row["reset_expires_at"]
            )
        return UserRecord(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            password_hash=row["password_hash"],
            role=row.get("role", "user"),
            is_verified=bool(row.get("is_verified", False)),
            verification=verification,
            reset=reset,
            last_verification_sent_at=row.get("last_verification_sent_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _fetch_one(self, query: str, params: Tuple[Any, ...]) -> Optional[UserRecord]:
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def create(
        self,
        email: str,
        name: str,
        password_hash: str,
        *,
        role: str = "user",
        is_verified: bool = False,
    ) -> UserRecord:
        user = UserRecord.new(
            email, name, password_hash, role=role, is_verified=is_verified
        )
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO sesam_user (id, email, name, password_hash, role, is_verified, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user.id,
                        user.email,
                        user.name,
                        user.password_hash,
                        user.role,
                        user.is_verified,
                        user.created_at,
                        user.updated_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row) if row else user

    def find_by_email(self, email: str) -> Optional[UserRecord]:
        return self._fetch_one(
            "SELECT * FROM sesam_user WHERE lower(email) = lower(%s)",
            (email.strip(),),
        )

    def find_by_id(self, user_id: str) -> Optional[UserRecord]:
        return self._fetch_one("SELECT * FROM sesam_user WHERE id = %s", (user_id,))

    def find_by_verification_token(
        self, token: str, now: datetime
    ) -> Optional[UserRecord]:
        return self._fetch_one(
            "SELECT * FROM sesam_user WHERE verification_token = %s AND verification_expires_at > %s",
            (token, now),
        )

    def find_by_reset_token(self, token: str, now: datetime) -> Optional[UserRecord]:
        return self._fetch_one(
            "SELECT * FROM sesam_user WHERE reset_token = %s AND reset_expires_at > %s",
            (token, now),
        )

    def update_by_id_if_match(
        self, user_id: str, match: UserMatch, patch: Mapping[str, Any]
    ) -> Optional[UserRecord]:
        assignments, set_params = build_patch_assignments(patch)
        where_sql, where_params = build_match_clause(match)
        query = f"UPDATE sesam_user SET {assignments} WHERE id = %s{where_sql} RETURNING *"
        return self._fetch_one(query, tuple(set_params + [user_id] + where_params))

    def update_role(self, user_id: str, role: str) -> Optional[UserRecord]:
        return self.update_by_id_if_match(user_id, UserMatch(), {"role": role})

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()
