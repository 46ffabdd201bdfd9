from __future__ import annotations

import secrets

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sessionward.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """argon2id hashing with a fresh random salt per call.

    ``hash`` and ``verify`` hold no shared mutable state and are safe to call
    from any number of threads.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = _Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Target for verify_dummy when no identity matches
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, derived: str) -> bool:
        if not derived:
            return False
        try:
            return self._hasher.verify(derived, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def verify_dummy(self, plaintext: str) -> bool:
        """Spend one full verification and return False."""
        self.verify(plaintext or "", self._dummy_hash)
        return False

    def needs_rehash(self, derived: str) -> bool:
        """True when ``derived`` was produced with different cost parameters."""
        try:
            return self._hasher.check_needs_rehash(derived)
        except InvalidHash:
            return True


__all__ = ["PasswordHasher"]
