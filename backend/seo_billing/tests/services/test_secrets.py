"""
Tests for secret encryption and log redaction.
"""

import logging

import pytest

from seo_billing.platform.secrets import (
    REDACTED_VALUE,
    EncryptionError,
    SecretRedactingFilter,
    decrypt_secret,
    encrypt_secret,
    redact_value,
    reset_secrets_manager,
)

SHOPIFY_TOKEN = "shpat_" + "0f" * 16


class TestEncryption:

    def test_round_trip(self):
        ciphertext = encrypt_secret(SHOPIFY_TOKEN)

        assert ciphertext != SHOPIFY_TOKEN
        assert decrypt_secret(ciphertext) == SHOPIFY_TOKEN

    def test_wrong_key(self, monkeypatch):
        ciphertext = encrypt_secret(SHOPIFY_TOKEN)
        monkeypatch.setenv("ENCRYPTION_KEY", "another-key")
        reset_secrets_manager()

        with pytest.raises(EncryptionError):
            decrypt_secret(ciphertext)

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("ENCRYPTION_KEY")
        reset_secrets_manager()

        with pytest.raises(EncryptionError, match="ENCRYPTION_KEY"):
            encrypt_secret(SHOPIFY_TOKEN)

    def test_empty_values_rejected(self):
        with pytest.raises(ValueError):
            encrypt_secret("")
        with pytest.raises(ValueError):
            decrypt_secret("")


class TestRedaction:

    def test_redact_value(self):
        assert redact_value(f"token={SHOPIFY_TOKEN}") == f"token={REDACTED_VALUE}"
        assert redact_value("Authorization: Bearer abc.def") == f"Authorization: {REDACTED_VALUE}"
        assert redact_value(42) == 42

    def test_filter_masks_message_args_and_extra(self):
        record = logging.LogRecord(
            name="test",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="calling Shopify with %s",
            args=(SHOPIFY_TOKEN,),
            exc_info=None,
        )
        record.access_token = "plain-token"
        record.shop_domain = "test-store.myshopify.com"

        assert SecretRedactingFilter().filter(record) is True
        assert SHOPIFY_TOKEN not in record.getMessage()
        assert record.access_token == REDACTED_VALUE
        assert record.shop_domain == "test-store.myshopify.com"
