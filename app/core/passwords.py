"""Password hashing backed by passlib's bcrypt scheme."""

from __future__ import annotations

from functools import lru_cache

from passlib.context import CryptContext

DEFAULT_BCRYPT_ROUNDS = 10


class PasswordHasher:
    """Salted one-way hashing and constant-time verification of passwords."""

    def __init__(self, rounds: int = DEFAULT_BCRYPT_ROUNDS) -> None:
        self._context = CryptContext(
            schemes=["bcrypt"],
            deprecated="auto",
            bcrypt__rounds=rounds,
        )

    def hash(self, password: str) -> str:
        """Return a bcrypt hash for the plaintext password."""
        return str(self._context.hash(password))

    def verify(self, password: str, password_hash: str) -> bool:
        """Return True when the password matches; malformed hashes never match."""
        try:
            return bool(self._context.verify(password, password_hash))
        except (TypeError, ValueError):
            return False

    def dummy_verify(self) -> None:
        """Spend one verification worth of time when there is no hash to check."""
        self._context.dummy_verify()


@lru_cache
def get_password_hasher() -> PasswordHasher:
    """Create and cache the process-wide password hasher."""
    return PasswordHasher()
