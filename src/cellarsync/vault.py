"""Credential vault: reversible encryption of provider passwords at rest.

CalDAV passwords must be recoverable (basic auth needs the plaintext on every
request), so they are stored as Fernet tokens derived from the process-wide
``cellarsync.vault.encryption_key``.  The key is mandatory; there is no
built-in fallback.

Also hosts the OAuth expiry policy shared by the Microsoft and Google
adapters: a token is usable only while valid, active, and more than
``TOKEN_REFRESH_BUFFER`` away from expiry.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
from datetime import UTC, datetime, timedelta

from cryptography.fernet import Fernet, InvalidToken

from cellarsync.models import GoogleCredentials, MicrosoftCredentials

logger = logging.getLogger(__name__)

# Refresh this long before the provider-reported expiry so in-flight calls
# never race the deadline.
TOKEN_REFRESH_BUFFER = timedelta(minutes=5)


class DecryptionError(Exception):
    """Raised when ciphertext is malformed, was produced with another key, or is empty."""


def _derive_fernet_key(secret: str) -> bytes:
    raw = secret.encode("utf-8")
    try:
        if len(base64.urlsafe_b64decode(raw)) == 32:
            return raw
    except (binascii.Error, ValueError):
        pass
    return base64.urlsafe_b64encode(hashlib.sha256(raw).digest())


class CredentialVault:
    """Symmetric encrypt/decrypt bound to one process-wide secret."""

    def __init__(self, secret_key: str) -> None:
        if not secret_key or not secret_key.strip():
            raise ValueError("CredentialVault requires a non-empty secret key")
        self._fernet = Fernet(_derive_fernet_key(secret_key.strip()))

    def __repr__(self) -> str:
        return "CredentialVault(secret_key=<REDACTED>)"

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("Refusing to encrypt an empty value")
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            raise DecryptionError("Cannot decrypt an empty value")
        try:
            plaintext = self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            raise DecryptionError("Failed to decrypt value: invalid key or corrupted data") from exc
        if not plaintext:
            raise DecryptionError("Decrypted value is empty")
        return plaintext


def token_is_usable(
    credentials: MicrosoftCredentials | GoogleCredentials,
    *,
    now: datetime | None = None,
) -> bool:
    """Return True when the stored access token can be used without refreshing."""
    current = now or datetime.now(UTC)
    return credentials.is_usable and current < credentials.expires_at - TOKEN_REFRESH_BUFFER
