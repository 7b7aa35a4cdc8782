"""
Secret encryption and log redaction.

CRITICAL SECURITY REQUIREMENTS:
- Shop access tokens are stored encrypted (Fernet) and decrypted only
  immediately before a Shopify API call
- Never log decrypted tokens; SecretRedactingFilter masks them if they leak

The Fernet key is derived from the ENCRYPTION_KEY environment variable.

Usage:
    from seo_billing.platform.secrets import encrypt_secret, decrypt_secret

    shop.access_token_encrypted = encrypt_secret(access_token)
    access_token = decrypt_secret(shop.access_token_encrypted)
"""

import base64
import hashlib
import logging
import os
import re
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

SECRET_KEY_PATTERN = re.compile(
    r"(access[_-]?token|api[_-]?key|secret|password|encryption[_-]?key|database[_-]?url)",
    re.IGNORECASE,
)

SECRET_VALUE_PATTERNS = [
    re.compile(r"(shpat_[a-fA-F0-9]{32,})"),  # Shopify access tokens
    re.compile(r"(shpss_[a-zA-Z0-9]{24,})"),  # Shopify shared secrets
    re.compile(r"(sk-or-[a-zA-Z0-9-]{20,})"),  # OpenRouter keys
    re.compile(r"(Bearer\s+[a-zA-Z0-9._-]+)"),
]

REDACTED_VALUE = "[REDACTED]"

_KEY_DERIVATION_SALT = b"seo-billing-salt"


class EncryptionError(Exception):
    """Raised when encryption/decryption operations fail."""
    pass


class SecretsManager:
    """Fernet encryption keyed from ENCRYPTION_KEY, initialized lazily."""

    def __init__(self):
        self._fernet: Optional[Fernet] = None

    def _get_fernet(self) -> Fernet:
        if self._fernet is not None:
            return self._fernet

        encryption_key = os.getenv("ENCRYPTION_KEY")
        if not encryption_key:
            raise EncryptionError("ENCRYPTION_KEY is not configured")

        derived_key = hashlib.pbkdf2_hmac(
            "sha256",
            encryption_key.encode(),
            _KEY_DERIVATION_SALT,
            100000,
            dklen=32,  # Fernet requires 32 bytes
        )
        self._fernet = Fernet(base64.urlsafe_b64encode(derived_key))
        return self._fernet

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("Cannot encrypt empty string")
        return self._get_fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            raise ValueError("Cannot decrypt empty string")
        try:
            return self._get_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            raise EncryptionError("Invalid ciphertext or wrong encryption key")

    def reset(self) -> None:
        self._fernet = None


_secrets_manager = SecretsManager()


def encrypt_secret(plaintext: str) -> str:
    """Encrypt a secret for storage."""
    return _secrets_manager.encrypt(plaintext)


def decrypt_secret(ciphertext: str) -> str:
    """Decrypt a stored secret."""
    return _secrets_manager.decrypt(ciphertext)


def reset_secrets_manager() -> None:
    """Drop the cached key (for tests only)."""
    _secrets_manager.reset()


def redact_value(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    result = value
    for pattern in SECRET_VALUE_PATTERNS:
        result = pattern.sub(REDACTED_VALUE, result)
    return result


class SecretRedactingFilter(logging.Filter):
    """
    Logging filter that redacts secrets from log records.

    Usage:
        handler.addFilter(SecretRedactingFilter())
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_value(record.msg)

        if isinstance(record.args, tuple):
            record.args = tuple(redact_value(arg) for arg in record.args)

        for key in list(record.__dict__.keys()):
            if SECRET_KEY_PATTERN.search(key):
                setattr(record, key, REDACTED_VALUE)

        return True
