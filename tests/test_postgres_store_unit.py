from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from sesam.storage.errors import ConstraintViolation
from sesam.storage.models import ResetTicket, UserMatch, VerificationTicket
from sesam.storage.postgres import (
    PostgresStore,
    build_match_clause,
    build_patch_assignments,
)

NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _row(**overrides):
    row = {
        "id": "user-1",
        "email": "alice@example.com",
        "name": "Alice",
        "password_hash": "hash",
        "role": "user",
        "is_verified": False,
        "verification_token": None,
        "verification_expires_at": None,
        "verification_issued_at": None,
        "last_verification_sent_at": None,
        "reset_token": None,
        "reset_expires_at": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


class RecordingCursor:
    def __init__(self, row):
        self.row = row

    def fetchone(self):
        return self.row


class RecordingConnection:
    def __init__(self, pool):
        self.pool = pool

    def execute(self, query, params=None):
        self.pool.calls.append((" ".join(query.split()), params))
        if self.pool.error is not None:
            raise self.pool.error
        return RecordingCursor(self.pool.row)


class RecordingPool:
    def __init__(self, row=None, error=None):
        self.row = row
        self.error = error
        self.calls = []

    @contextmanager
    def connection(self):
        yield RecordingConnection(self)


def _store(pool) -> PostgresStore:
    return PostgresStore("postgresql://unused", pool=pool, ensure_schema=False)


def test_match_clause_for_verification_consume():
    sql, params = build_match_clause(UserMatch(verification_token="tok", active_at=NOW))

    assert sql == " AND verification_token = %s AND verification_expires_at > %s"
    assert params == ["tok", NOW]


def test_match_clause_for_reset_and_verified_flag():
    sql, params = build_match_clause(
        UserMatch(reset_token="r", active_at=NOW, is_verified=True)
    )

    assert sql == " AND is_verified = %s AND reset_token = %s AND reset_expires_at > %s"
    assert params == [True, "r", NOW]
    assert build_match_clause(UserMatch()) == ("", [])


def test_patch_assignments_expand_tickets():
    ticket = VerificationTicket("tok", NOW + timedelta(hours=24), NOW)

    sql, params = build_patch_assignments({"verification": ticket, "reset": None})

    assert sql == (
        "verification_token = %s, verification_expires_at = %s, "
        "verification_issued_at = %s, reset_token = %s, reset_expires_at = %s, "
        "updated_at = now()"
    )
    assert params == ["tok", NOW + timedelta(hours=24), NOW, None, None]


def test_patch_assignments_reject_unknown_fields():
    with pytest.raises(ValueError):
        build_patch_assignments({"email": "x@example.com"})


def test_conditional_update_is_one_statement():
    pool = RecordingPool(row=_row(is_verified=True))
    store = _store(pool)

    user = store.update_by_id_if_match(
        "user-1",
        UserMatch(verification_token="tok", active_at=NOW),
        {"is_verified": True, "verification": None},
    )

    assert user.is_verified
    assert len(pool.calls) == 1
    query, params = pool.calls[0]
    assert query == (
        "UPDATE sesam_user SET is_verified = %s, verification_token = %s, "
        "verification_expires_at = %s, verification_issued_at = %s, updated_at = now() "
        "WHERE id = %s AND verification_token = %s AND verification_expires_at > %s "
        "RETURNING *"
    )
    assert params == (True, None, None, None, "user-1", "tok", NOW)


def test_conditional_update_without_match_returns_none():
    store = _store(RecordingPool(row=None))

    assert store.update_by_id_if_match("user-1", UserMatch(is_verified=False), {"name": "X"}) is None


def test_row_mapping_builds_tickets():
    row = _row(
        verification_token="tok",
        verification_expires_at=NOW + timedelta(hours=24),
        verification_issued_at=NOW,
        reset_token="r",
        reset_expires_at=NOW + timedelta(hours=1),
    )

    user = _store(RecordingPool(row=row)).find_by_id("user-1")

    assert user.verification == VerificationTicket("tok", NOW + timedelta(hours=24), NOW)
    assert user.reset == ResetTicket("r", NOW + timedelta(hours=1))


def test_token_lookup_filters_on_expiry():
    pool = RecordingPool(row=None)

    assert _store(pool).find_by_reset_token("r", NOW) is None
    query, params = pool.calls[0]
    assert "reset_expires_at > %s" in query
    assert params == ("r", NOW)


def test_unique_violation_maps_to_constraint_violation():
    store = _store(RecordingPool(error=errors.UniqueViolation("duplicate key")))

    with pytest.raises(ConstraintViolation):
        store.create("alice@example.com", "Alice", "hash")
