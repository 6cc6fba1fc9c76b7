"""Unit tests for envelope encryption, re-wrap and redaction."""

from __future__ import annotations

import os

import pytest

from stepiq.core.exceptions import CryptoIntegrityError
from stepiq.vault.crypto import (
    ENVELOPE_SIZE,
    FORMAT_VERSION,
    KEY_LENGTH,
    MIN_BLOB_SIZE,
    REDACTED,
    decrypt_secret,
    derive_user_key,
    encrypt_secret,
    find_env_references,
    re_wrap_secret,
    redact_secrets,
    wiped,
)

MASTER = bytes(range(32))
OTHER_MASTER = bytes(range(1, 33))


class TestEncryptDecrypt:
    @pytest.mark.parametrize(
        "plaintext",
        ["sk-test-1234567890", "ключ-🔑-鍵", "x" * 10_240],
        ids=["ascii", "unicode", "10kb"],
    )
    def test_round_trip(self, plaintext):
        blob = encrypt_secret("user-1", plaintext, MASTER)
        assert decrypt_secret("user-1", blob, MASTER) == plaintext

    def test_blob_layout(self):
        blob = encrypt_secret("user-1", "abc", MASTER)
        assert blob[0] == FORMAT_VERSION
        assert len(blob) == MIN_BLOB_SIZE + len("abc".encode())

    def test_same_plaintext_encrypts_differently(self):
        assert encrypt_secret("u", "value", MASTER) != encrypt_secret("u", "value", MASTER)

    def test_empty_plaintext_rejected(self):
        with pytest.raises(ValueError, match="empty"):
            encrypt_secret("user-1", "", MASTER)

    def test_wrong_master_key_length_rejected(self):
        with pytest.raises(ValueError):
            encrypt_secret("user-1", "value", b"short")

    def test_accepts_bytearray_key(self):
        blob = encrypt_secret("user-1", "value", bytearray(MASTER))
        assert decrypt_secret("user-1", blob, bytearray(MASTER)) == "value"


class TestIntegrity:
    def test_any_flipped_byte_fails(self):
        blob = encrypt_secret("user-1", "sk-live-secret", MASTER)
        for index in range(1, len(blob)):
            tampered = bytearray(blob)
            tampered[index] ^= 0x01
            with pytest.raises(CryptoIntegrityError):
                decrypt_secret("user-1", bytes(tampered), MASTER)

    def test_unknown_version_fails(self):
        blob = bytearray(encrypt_secret("user-1", "value", MASTER))
        blob[0] = 0x02
        with pytest.raises(CryptoIntegrityError):
            decrypt_secret("user-1", bytes(blob), MASTER)

    def test_truncated_blob_fails(self):
        blob = encrypt_secret("user-1", "value", MASTER)
        with pytest.raises(CryptoIntegrityError):
            decrypt_secret("user-1", blob[: MIN_BLOB_SIZE - 1], MASTER)

    def test_other_user_cannot_decrypt(self):
        blob = encrypt_secret("user-1", "value", MASTER)
        with pytest.raises(CryptoIntegrityError):
            decrypt_secret("user-2", blob, MASTER)

    def test_other_master_key_cannot_decrypt(self):
        blob = encrypt_secret("user-1", "value", MASTER)
        with pytest.raises(CryptoIntegrityError):
            decrypt_secret("user-1", blob, OTHER_MASTER)


class TestDeriveUserKey:
    def test_deterministic_per_user(self):
        assert derive_user_key(MASTER, "a") == derive_user_key(MASTER, "a")
        assert derive_user_key(MASTER, "a") != derive_user_key(MASTER, "b")
        assert len(derive_user_key(MASTER, "a")) == KEY_LENGTH

    def test_wiped_zeroes_buffer_on_error(self):
        buf = bytearray(os.urandom(8))
        with pytest.raises(RuntimeError):
            with wiped(buf):
                raise RuntimeError("boom")
        assert buf == bytearray(8)


class TestReWrap:
    def test_new_key_decrypts_old_key_does_not(self):
        blob = encrypt_secret("user-1", "sk-rotate-me", MASTER)
        rotated = re_wrap_secret("user-1", blob, MASTER, OTHER_MASTER)
        assert decrypt_secret("user-1", rotated, OTHER_MASTER) == "sk-rotate-me"
        with pytest.raises(CryptoIntegrityError):
            decrypt_secret("user-1", rotated, MASTER)

    def test_secret_region_is_byte_identical(self):
        blob = encrypt_secret("user-1", "sk-rotate-me", MASTER)
        rotated = re_wrap_secret("user-1", blob, MASTER, OTHER_MASTER)
        assert rotated[ENVELOPE_SIZE:] == blob[ENVELOPE_SIZE:]
        assert rotated[:ENVELOPE_SIZE] != blob[:ENVELOPE_SIZE]

    def test_wrong_old_key_fails(self):
        blob = encrypt_secret("user-1", "value", MASTER)
        with pytest.raises(CryptoIntegrityError):
            re_wrap_secret("user-1", blob, OTHER_MASTER, MASTER)


class TestRedaction:
    def test_env_markers_redacted(self):
        assert redact_secrets("key={{ env.OPENAI_API_KEY }}") == f"key={REDACTED}"

    def test_known_values_redacted(self):
        text = "Authorization: Bearer sk-abcdef"
        assert redact_secrets(text, ["sk-abcdef"]) == f"Authorization: Bearer {REDACTED}"

    def test_short_values_left_alone(self):
        assert redact_secrets("abc value", ["abc"]) == "abc value"

    def test_longest_value_wins(self):
        out = redact_secrets("token=secret-long-value", ["secret", "secret-long-value"])
        assert out == f"token={REDACTED}"

    def test_idempotent(self):
        once = redact_secrets("a sk-abcdef b {{env.X}}", ["sk-abcdef", "REDACTED"])
        assert redact_secrets(once, ["sk-abcdef", "REDACTED"]) == once

    def test_find_env_references_first_seen_order(self):
        texts = ["{{env.B}} {{ env.A }}", "{{env.B}} {{env.C}}"]
        assert find_env_references(texts) == ["B", "A", "C"]
