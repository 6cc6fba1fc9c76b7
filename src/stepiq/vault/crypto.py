"""Secret vault: envelope encryption for user secrets.

Key hierarchy: master key -> per-user key (HKDF-SHA256, never stored)
-> random per-secret DEK. Both layers use AES-256-GCM.

Blob layout (version 1)::

    [version:1][dek_nonce:12][encrypted_dek:32][dek_tag:16]
    [secret_nonce:12][ciphertext:N][secret_tag:16]

Rotation re-wraps the DEK envelope only; the secret region is copied
byte-for-byte. Key material lives in ``bytearray`` buffers that are zeroed
on every exit path. CPython may still hold transient immutable copies, so
wiping is best-effort.
"""

from __future__ import annotations

import os
import re
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from stepiq.core.exceptions import CryptoIntegrityError

KEY_LENGTH = 32
NONCE_LENGTH = 12
AUTH_TAG_LENGTH = 16
FORMAT_VERSION = 0x01
HKDF_INFO_PREFIX = "stepiq:user-key:"

# version + dek_nonce + encrypted_dek + dek_tag
ENVELOPE_SIZE = 1 + NONCE_LENGTH + KEY_LENGTH + AUTH_TAG_LENGTH
HEADER_SIZE = ENVELOPE_SIZE + NONCE_LENGTH
MIN_BLOB_SIZE = HEADER_SIZE + AUTH_TAG_LENGTH

REDACTED = "[REDACTED]"
MIN_REDACT_LENGTH = 4
ENV_REFERENCE_RE = re.compile(r"\{\{\s*env\.(\w+)\s*\}\}")


@contextmanager
def wiped(buf: bytearray) -> Iterator[bytearray]:
    """Yield ``buf`` and overwrite it with zeros on exit, error or not."""
    try:
        yield buf
    finally:
        for i in range(len(buf)):
            buf[i] = 0


def _check_master_key(master_key: bytes | bytearray) -> None:
    if len(master_key) != KEY_LENGTH:
        raise ValueError(f"Master key must be {KEY_LENGTH} bytes")


def derive_user_key(master_key: bytes | bytearray, user_id: str) -> bytearray:
    """HKDF-SHA256(master_key, salt=None, info="stepiq:user-key:<user_id>").

    Deterministic. Callers own the returned buffer and must wipe it.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,
        info=f"{HKDF_INFO_PREFIX}{user_id}".encode("utf-8"),
    )
    return bytearray(hkdf.derive(master_key))


def _split_envelope(blob: bytes) -> tuple[bytes, bytes, bytes]:
    """Return (dek_nonce, encrypted_dek_with_tag, secret_region)."""
    if len(blob) < MIN_BLOB_SIZE:
        raise CryptoIntegrityError("Ciphertext too short")
    version = blob[0]
    if version != FORMAT_VERSION:
        raise CryptoIntegrityError(f"Unknown encryption format version: {version}")
    dek_nonce = blob[1:1 + NONCE_LENGTH]
    sealed_dek = blob[1 + NONCE_LENGTH:ENVELOPE_SIZE]
    return dek_nonce, sealed_dek, blob[ENVELOPE_SIZE:]


def _open_dek(user_key: bytearray, dek_nonce: bytes, sealed_dek: bytes) -> bytearray:
    try:
        return bytearray(AESGCM(user_key).decrypt(dek_nonce, sealed_dek, None))
    except InvalidTag as exc:
        raise CryptoIntegrityError("DEK authentication failed (wrong key or tampered blob)") from exc


def _seal_dek(user_key: bytearray, dek: bytearray) -> bytes:
    dek_nonce = os.urandom(NONCE_LENGTH)
    return dek_nonce + AESGCM(user_key).encrypt(dek_nonce, dek, None)


def encrypt_secret(user_id: str, plaintext: str, master_key: bytes | bytearray) -> bytes:
    """Encrypt ``plaintext`` for ``user_id`` and return the packed blob."""
    if not plaintext:
        raise ValueError("Secret value cannot be empty")
    _check_master_key(master_key)

    with wiped(derive_user_key(master_key, user_id)) as user_key, \
            wiped(bytearray(os.urandom(KEY_LENGTH))) as dek:
        envelope = _seal_dek(user_key, dek)
        secret_nonce = os.urandom(NONCE_LENGTH)
        sealed_secret = AESGCM(dek).encrypt(secret_nonce, plaintext.encode("utf-8"), None)

    return bytes([FORMAT_VERSION]) + envelope + secret_nonce + sealed_secret


def decrypt_secret(user_id: str, blob: bytes, master_key: bytes | bytearray) -> str:
    """Decrypt a blob produced by :func:`encrypt_secret`.

    Any tampering, a different user id or a different master key raises
    :class:`CryptoIntegrityError`; corrupted plaintext is never returned.
    """
    _check_master_key(master_key)
    dek_nonce, sealed_dek, secret_region = _split_envelope(blob)
    secret_nonce = secret_region[:NONCE_LENGTH]
    sealed_secret = secret_region[NONCE_LENGTH:]

    with wiped(derive_user_key(master_key, user_id)) as user_key, \
            wiped(_open_dek(user_key, dek_nonce, sealed_dek)) as dek:
        try:
            plaintext = AESGCM(dek).decrypt(secret_nonce, sealed_secret, None)
        except InvalidTag as exc:
            raise CryptoIntegrityError("Secret authentication failed (tampered blob)") from exc

    return plaintext.decode("utf-8")


def re_wrap_secret(
    user_id: str,
    blob: bytes,
    old_master_key: bytes | bytearray,
    new_master_key: bytes | bytearray,
) -> bytes:
    """Re-encrypt the DEK under the new master key; secret region untouched."""
    _check_master_key(old_master_key)
    _check_master_key(new_master_key)
    dek_nonce, sealed_dek, secret_region = _split_envelope(blob)

    with wiped(derive_user_key(old_master_key, user_id)) as old_user_key:
        dek = _open_dek(old_user_key, dek_nonce, sealed_dek)
    with wiped(dek), wiped(derive_user_key(new_master_key, user_id)) as new_user_key:
        envelope = _seal_dek(new_user_key, dek)

    return bytes([FORMAT_VERSION]) + envelope + secret_region


def find_env_references(texts: Iterable[str]) -> list[str]:
    """Names referenced as ``{{env.NAME}}`` across ``texts``, first-seen order."""
    names: list[str] = []
    for text in texts:
        for name in ENV_REFERENCE_RE.findall(text):
            if name not in names:
                names.append(name)
    return names


def redact_secrets(text: str, known_values: Iterable[str] | None = None) -> str:
    """Replace ``{{env.X}}`` markers and known secret values with [REDACTED].

    Values shorter than four characters are left alone to avoid redacting
    incidental substrings. Longer values win when one contains another.
    """
    redacted = ENV_REFERENCE_RE.sub(REDACTED, text)
    values = sorted(
        {v for v in (known_values or ()) if len(v) >= MIN_REDACT_LENGTH and v not in REDACTED},
        key=len,
        reverse=True,
    )
    if not values:
        return redacted
    pattern = re.compile("|".join(re.escape(v) for v in values))
    return pattern.sub(REDACTED, redacted)
