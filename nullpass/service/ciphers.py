from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from nullpass.logging import get_logger

logger = get_logger(__name__)


def derive_fernet_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class SecretCipher:
    """Symmetric encryption for values kept at rest (TOTP secrets, audit IPs)."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("cipher key material is required")
        self._material = key_material
        self._fernet = Fernet(derive_fernet_key(key_material))

    def encrypt(self, value: str) -> str:
        if not value:
            return value
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: str) -> str | None:
        """Return the plaintext, or None when the value was not produced by this key."""
        if not value:
            return value
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken:
            logger.warning("secret_decrypt_failed")
            return None

    def for_subject(self, subject: str) -> "SecretCipher":
        """Derive a cipher bound to one subject, e.g. a user id.

        Values encrypted with it can only be read back through the same subject,
        so an operator browsing raw rows sees ciphertext only.
        """
        return SecretCipher(f"{self._material}:{subject}")
