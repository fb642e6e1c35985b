from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from tokenforge.service.errors import InvalidConfiguration


class SecretSealer:
    """Fernet envelope for private key material and MFA secrets at rest."""

    def __init__(self, key_material: str | None) -> None:
        if not key_material:
            raise InvalidConfiguration("KEY_ENCRYPTION_KEY is not configured")
        self._cipher = Fernet(self._derive_cipher_key(key_material))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def seal(self, plaintext: str) -> str:
        return self._cipher.encrypt(plaintext.encode()).decode()

    def unseal(self, sealed: str) -> str:
        """Raises ``cryptography.fernet.InvalidToken`` on tampering or a wrong key."""
        return self._cipher.decrypt(sealed.encode()).decode()


__all__ = ["SecretSealer", "InvalidToken"]
