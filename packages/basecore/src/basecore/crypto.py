"""
Credential vault

Symmetric encryption of provider credentials at rest (Fernet). Plaintext
credentials only exist transiently, while a provider is being called or a
webhook signature checked.
"""

import functools

from cryptography.fernet import Fernet, InvalidToken

from basecore.settings import get_settings


class CredentialError(Exception):
    """A credential could not be encrypted or decrypted."""


class CredentialVault:
    """Encrypts and decrypts provider credentials with one Fernet key."""

    def __init__(self, key: str):
        if not key:
            raise CredentialError("CREDENTIAL_ENCRYPTION_KEY is not configured")
        try:
            self._fernet = Fernet(key.encode())
        except ValueError as e:
            raise CredentialError(f"Invalid credential encryption key: {e}") from e

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise CredentialError("Stored credential could not be decrypted") from e


@functools.lru_cache()
def get_vault() -> CredentialVault:
    """Get the process-wide vault built from settings (cached)."""
    return CredentialVault(get_settings().CREDENTIAL_ENCRYPTION_KEY)
