from __future__ import annotations

from typing import Optional

import bcrypt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from nullpass.logging import get_logger

logger = get_logger(__name__)

LEGACY_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")


def is_legacy_hash(stored_hash: Optional[str]) -> bool:
    return bool(stored_hash) and stored_hash.startswith(LEGACY_BCRYPT_PREFIXES)


class PasswordHasherService:
    """argon2id for new hashes; bcrypt verification for imported accounts."""

    def __init__(self) -> None:
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify(self, stored_hash: Optional[str], password: str) -> bool:
        if not stored_hash or password is None:
            return False
        if is_legacy_hash(stored_hash):
            try:
                return bcrypt.checkpw(password.encode(), stored_hash.encode())
            except ValueError:
                logger.warning("password_legacy_hash_invalid")
                return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        if is_legacy_hash(stored_hash):
            return True
        try:
            return self._pwd_hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True
