from __future__ import annotations

import secrets
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from taptab.logging import get_logger

logger = get_logger(__name__)


class PasswordVerifier:
    """argon2id password checks with a constant-cost unknown-user path.

    ``verify`` never raises for a bad or foreign hash; it answers False. When
    no stored hash exists it still runs one argon2 verification against a
    dummy hash, so "no such user" and "wrong password" cost the same.
    """

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Random throwaway password; only the hash's cost parameters matter
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, stored_hash: Optional[str]) -> bool:
        if not stored_hash:
            self._burn(plaintext)
            return False
        try:
            return self._hasher.verify(stored_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        """True when the hash was made with weaker parameters than current ones."""
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except (InvalidHash, ValueError):
            return True

    def _burn(self, plaintext: str) -> None:
        try:
            self._hasher.verify(self._dummy_hash, plaintext)
        except VerifyMismatchError:
            pass
