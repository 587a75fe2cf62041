"""Symmetric encryption of stored registry passwords."""

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from rostersync.core.config import get_settings
from rostersync.core.errors import ConfigurationError


class CredentialCipher:
    """
    Encrypts and decrypts credentials with a Fernet key derived from the
    server-held secret.

    The secret may be any string; it is stretched to a 32-byte key with
    SHA-256 so operators do not have to generate a Fernet key by hand.
    """

    def __init__(self, secret: str):
        if not secret:
            raise ConfigurationError("CREDENTIAL_ENCRYPTION_KEY is not configured")
        key = base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest())
        self._fernet = Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise ConfigurationError(
                "Stored credential cannot be decrypted with the configured key"
            ) from e


def get_cipher() -> CredentialCipher:
    """Build a cipher from application settings."""
    return CredentialCipher(get_settings().credential_encryption_key)
