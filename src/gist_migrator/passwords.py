"""
Generation and hashing of account passwords for migrated users.
"""

from __future__ import annotations

import secrets
import string
from typing import Final

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

_ALPHABET: Final[str] = string.ascii_letters + string.digits
DEFAULT_PASSWORD_LENGTH: Final[int] = 16

_hasher = PasswordHasher()


def generate_password(length: int = DEFAULT_PASSWORD_LENGTH) -> str:
    """Generate a random alphanumeric password."""
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    """Check a password against an argon2 hash. Never raises on mismatch."""
    try:
        return _hasher.verify(password_hash, password)
    except (VerificationError, InvalidHashError):
        return False
