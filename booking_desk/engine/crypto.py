"""Symmetric encryption for credentials at rest."""

import base64
import hashlib
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from booking_desk.errors import CredentialError

logger = logging.getLogger(__name__)


def get_fernet_key(secret: str) -> bytes:
    """Use ``secret`` as-is when it is already a Fernet key, otherwise derive one."""
    try:
        Fernet(secret.encode())
        return secret.encode()
    except (ValueError, TypeError):
        key = hashlib.sha256(secret.encode()).digest()
        return base64.urlsafe_b64encode(key)


class TokenCipher:
    def __init__(self, secret: str):
        if not secret:
            raise ValueError("Encryption key must not be empty")
        self._fernet = Fernet(get_fernet_key(secret))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.error("Failed to decrypt stored credential")
            raise CredentialError(
                "Stored credential could not be decrypted; reconnect the calendar"
            )

    def encrypt_optional(self, plaintext: Optional[str]) -> Optional[str]:
        return self.encrypt(plaintext) if plaintext else None

    def decrypt_optional(self, ciphertext: Optional[str]) -> Optional[str]:
        return self.decrypt(ciphertext) if ciphertext else None
