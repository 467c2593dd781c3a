from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from courseauth.logging import get_logger

logger = get_logger(__name__)


class Argon2Hasher:
    """argon2id credential hasher; digests embed their own salt and parameters."""

    algo = "argon2id"

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, plaintext: str) -> str:
        return self._pwd_hasher.hash(plaintext)

    def matches(self, plaintext: str, digest: str) -> bool:
        if not digest:
            return False
        try:
            return self._pwd_hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False
