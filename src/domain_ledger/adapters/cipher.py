"""
Auth-code cipher — Fernet (AES-128-CBC + HMAC) encryption of transfer codes.

Adapter layer — implements the AuthCodeCipher port with the `cryptography`
package. Codes are stored only as Fernet tokens; the key comes from
configuration (AUTH_CODE_KEY) and never reaches the database.
"""

from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

from domain_ledger.domain.errors import ConstraintViolation


class FernetAuthCodeCipher:
    """Implements the AuthCodeCipher port."""

    def __init__(self, key: str | bytes) -> None:
        self._fernet = Fernet(key)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")

    def encrypt(self, plaintext: str) -> bytes:
        return self._fernet.encrypt(plaintext.encode("utf-8"))

    def decrypt(self, token: bytes) -> str:
        """Raises ConstraintViolation when the token was not produced with this key."""
        try:
            return self._fernet.decrypt(token).decode("utf-8")
        except InvalidToken as e:
            raise ConstraintViolation("stored auth code cannot be decrypted with the configured key") from e
