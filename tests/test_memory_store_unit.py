from datetime import timedelta

import pytest

from sesam.storage.errors import ConstraintViolation
from sesam.storage.memory import MemoryStore
from sesam.storage.models import ResetTicket, UserMatch, VerificationTicket, utcnow


@pytest.fixture
def store():
    return MemoryStore()


def test_email_is_unique_case_insensitively(store):
    store.create("Alice@Example.com", "Alice", "hash")

    with pytest.raises(ConstraintViolation):
        store.create("alice@example.COM", "Other", "hash")
    assert store.find_by_email(" ALICE@example.com ").name == "Alice"


def test_returned_records_are_copies(store):
    user = store.create("alice@example.com", "Alice", "hash")
    user.is_verified = True

    assert store.find_by_id(user.id).is_verified is False


def test_find_by_tokens_skips_expired(store):
    now = utcnow()
    user = store.create("alice@example.com", "Alice", "hash")
    store.update_by_id_if_match(
        user.id,
        UserMatch(),
        {
            "verification": VerificationTicket("v-token", now + timedelta(hours=1), now),
            "reset": ResetTicket("r-token", now + timedelta(minutes=5)),
        },
    )

    assert store.find_by_verification_token("v-token", now).id == user.id
    assert store.find_by_reset_token("r-token", now).id == user.id
    assert store.find_by_verification_token("v-token", now + timedelta(hours=1)) is None
    assert store.find_by_reset_token("r-token", now + timedelta(minutes=6)) is None
    assert store.find_by_reset_token("v-token", now) is None


def test_conditional_update_requires_match(store):
    now = utcnow()
    user = store.create("alice@example.com", "Alice", "hash")
    store.update_by_id_if_match(
        user.id,
        UserMatch(),
        {"verification": VerificationTicket("v-token", now + timedelta(hours=1), now)},
    )

    miss = store.update_by_id_if_match(
        user.id,
        UserMatch(verification_token="other", active_at=now),
        {"is_verified": True, "verification": None},
    )
    assert miss is None
    assert store.find_by_id(user.id).is_verified is False

    hit = store.update_by_id_if_match(
        user.id,
        UserMatch(verification_token="v-token", active_at=now),
        {"is_verified": True, "verification": None},
    )
    assert hit.is_verified and hit.verification is None

    again = store.update_by_id_if_match(
        user.id,
        UserMatch(verification_token="v-token", active_at=now),
        {"is_verified": True, "verification": None},
    )
    assert again is None


def test_is_verified_predicate(store):
    user = store.create("alice@example.com", "Alice", "hash", is_verified=True)

    assert store.update_by_id_if_match(user.id, UserMatch(is_verified=False), {"name": "X"}) is None
    assert store.find_by_id(user.id).name == "Alice"


def test_unknown_patch_field_is_rejected(store):
    user = store.create("alice@example.com", "Alice", "hash")

    with pytest.raises(ValueError):
        store.update_by_id_if_match(user.id, UserMatch(), {"email": "x@example.com"})


def test_update_role_and_missing_user(store):
    user = store.create("alice@example.com", "Alice", "hash")

    assert store.update_role(user.id, "admin").role == "admin"
    assert store.update_role("missing", "admin") is None
