"""Encryption helpers for courier credentials stored in ``delivery_agencies``.

Agency passwords and API keys are written through :func:`encrypt` and read
back through :func:`decrypt`. Ciphertexts use AES-GCM with a key derived from
the application secret and are stored as:

    ENC:v1:<base64(nonce || ciphertext || tag)>

Values without the prefix are treated as legacy plain-text and returned
unchanged, so rows seeded by hand keep working until they are next saved.
"""

from __future__ import annotations

import base64
import os
from typing import Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from crm_delivery.config import settings
from crm_delivery.utils.logger import logger


_PREFIX = "ENC:v1:"
_NONCE_SIZE = 12  # 96-bit nonce recommended for AES-GCM
_KEY_SIZE = 32    # 256-bit AES key


def _get_key() -> bytes:
    """Derive the AES-GCM key from ``settings.secret_key`` with HKDF-SHA256."""

    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=_KEY_SIZE,
        salt=None,
        info=b"delivery-agency-credentials",
    )
    return hkdf.derive(settings.secret_key.encode("utf-8"))


def is_encrypted(value: Optional[str]) -> bool:
    return isinstance(value, str) and value.startswith(_PREFIX)


def encrypt(plaintext: Optional[str]) -> Optional[str]:
    """Encrypt a credential. ``None`` and empty strings pass through unchanged."""

    if not plaintext:
        return plaintext
    if is_encrypted(plaintext):
        return plaintext

    aesgcm = AESGCM(_get_key())
    nonce = os.urandom(_NONCE_SIZE)
    ct = aesgcm.encrypt(nonce, str(plaintext).encode("utf-8"), associated_data=None)
    return _PREFIX + base64.b64encode(nonce + ct).decode("ascii")


def decrypt(value: Optional[str]) -> Optional[str]:
    """Decrypt a value produced by :func:`encrypt`.

    Plain-text values are returned as-is. A ciphertext that fails to decrypt
    (rotated secret, corrupted row) yields ``None`` so the agency shows up as
    unconfigured instead of sending ciphertext to the courier as a password.
    """

    if value is None or not is_encrypted(value):
        return value

    try:
        raw = base64.b64decode(value[len(_PREFIX):].encode("ascii"))
        if len(raw) <= _NONCE_SIZE:
            raise ValueError("ciphertext too short")
        nonce, ct = raw[:_NONCE_SIZE], raw[_NONCE_SIZE:]
        return AESGCM(_get_key()).decrypt(nonce, ct, associated_data=None).decode("utf-8")
    except Exception as e:
        logger.error(f"Credential decryption failed: {type(e).__name__}: {e}")
        return None


def mask_secret(value: Optional[str]) -> Optional[str]:
    """Return a display-safe version of a secret (``ab...yz`` or ``***``)."""

    if not value:
        return None
    if len(value) > 8:
        return f"{value[:2]}...{value[-2:]}"
    return "***"
