from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from sesam.storage.errors import ConstraintViolation
from sesam.storage.models import PATCHABLE_FIELDS, UserMatch, UserRecord, utcnow


class MemoryStore:
    """In-memory user store for tests and single-process development.

    Records are handed out as copies so callers can never mutate stored
    state outside ``_data_lock``; every write goes through the lock.
    """

    def __init__(self) -> None:
        self.users: Dict[str, UserRecord] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

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
        with self._data_lock:
            if any(existing.email == user.email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.users[user.id] = user
            return replace(user)

    def find_by_email(self, email: str) -> Optional[UserRecord]:
        normalized = self._normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def find_by_id(self, user_id: str) -> Optional[UserRecord]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def find_by_verification_token(
        self, token: str, now: datetime
    ) -> Optional[UserRecord]:
        match = UserMatch(verification_token=token, active_at=now)
        with self._data_lock:
            user = next((u for u in self.users.values() if match.matches(u)), None)
            return replace(user) if user else None

    def find_by_reset_token(self, token: str, now: datetime) -> Optional[UserRecord]:
        match = UserMatch(reset_token=token, active_at=now)
        with self._data_lock:
            user = next((u for u in self.users.values() if match.matches(u)), None)
            return replace(user) if user else None

    def update_by_id_if_match(
        self, user_id: str, match: UserMatch, patch: Mapping[str, Any]
    ) -> Optional[UserRecord]:
        """Apply ``patch`` only if the stored record still satisfies ``match``.

        Returns the updated record, or ``None`` when the record is missing or
        the predicate no longer holds.
        """
        unknown = set(patch) - PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported patch fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or not match.matches(user):
                return None
            updated = replace(user, **patch, updated_at=utcnow())
            self.users[user_id] = updated
            return replace(updated)

    def update_role(self, user_id: str, role: str) -> Optional[UserRecord]:
        return self.update_by_id_if_match(user_id, UserMatch(), {"role": role})
