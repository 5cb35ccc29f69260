"""Encryption of the stored Readwise API token."""

import logging
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken

from shared.config import get_env

logger = logging.getLogger(__name__)


class EncryptionService:
    """Encrypts and decrypts secrets at rest with Fernet (AES-128-CBC + HMAC)."""

    def __init__(self, encryption_key: Optional[str] = None):
        """
        Initialize encryption service.

        Args:
            encryption_key: Fernet key. If not provided, ENCRYPTION_KEY is read
                          from the environment; without it an ephemeral key is
                          generated, so stored tokens will not survive a restart
        """
        key = encryption_key or get_env('ENCRYPTION_KEY')
        if not key:
            logger.warning("ENCRYPTION_KEY not set, using an ephemeral key")
            key = Fernet.generate_key().decode()

        self.cipher = Fernet(key.encode())

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a plaintext string.

        Args:
            plaintext: The string to encrypt

        Returns:
            Fernet token as text, or "" for empty input
        """
        if not plaintext:
            return ""

        return self.cipher.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt an encrypted string.

        Args:
            ciphertext: Fernet token produced by encrypt()

        Returns:
            Decrypted plaintext string

        Raises:
            ValueError: If the token was not produced with this key
        """
        if not ciphertext:
            return ""

        try:
            return self.cipher.decrypt(ciphertext.encode()).decode()
        except InvalidToken as e:
            raise ValueError("Stored secret cannot be decrypted with the configured key") from e

    @staticmethod
    def generate_key() -> str:
        """Generate a new Fernet key."""
        return Fernet.generate_key().decode()
