from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sesam.logging import get_logger

logger = get_logger(__name__)

_pwd_hasher = PasswordHasher(type=Type.ID)

# Verified against when the account does not exist, so that unknown emails
# cost the same argon2 work as wrong passwords.
_DUMMY_HASH = _pwd_hasher.hash("sesam-timing-equalizer")


def hash_password(password: str) -> str:
    return _pwd_hasher.hash(password)


def verify_password(stored_hash: str | None, password: str) -> bool:
    """Check ``password`` against an argon2id hash.

    ``stored_hash=None`` runs a dummy verification and returns False.
    """
    try:
        if stored_hash is None:
            _pwd_hasher.verify(_DUMMY_HASH, password)
            return False
        return _pwd_hasher.verify(stored_hash, password)
    except VerifyMismatchError:
        return False
    except (InvalidHash, VerificationError):
        logger.warning("password_hash_unusable")
        return False
