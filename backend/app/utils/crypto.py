"""Encryption helpers for carrier credentials stored in store_integrations.

:func:`encrypt` wraps AES-GCM with a key derived from the application secret.
The stored format is::

    ENC:v1:<base64(nonce || ciphertext || tag)>

Older rows hold plain base64-encoded values; :func:`decrypt` still reads
them. Anything that cannot be decoded raises :class:`CredentialDecryptError`
so the caller can treat that integration row as misconfigured instead of
matching credentials against garbage.

Passwords for the dedicated Basic-Auth mode are hashed, never encrypted.
"""

from __future__ import annotations

import base64
import binascii
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from app.config import settings


_PREFIX = "ENC:v1:"
_NONCE_SIZE = 12  # 96-bit nonce recommended for AES-GCM
_KEY_SIZE = 32    # 256-bit AES key


class CredentialDecryptError(Exception):
    """Raised when a stored credential cannot be decrypted or decoded."""


def _get_key() -> bytes:
    base = settings.secret_key.encode("utf-8")

    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=_KEY_SIZE,
        salt=None,
        info=b"carrier-credential-encryption",
    )
    return hkdf.derive(base)


def is_encrypted(value: Optional[str]) -> bool:
    return isinstance(value, str) and value.startswith(_PREFIX)


def encrypt(plaintext: Optional[str]) -> Optional[str]:
    """Encrypt a string value using AES-GCM. ``None`` passes through."""

    if plaintext is None:
        return None
    if not isinstance(plaintext, str):
        plaintext = str(plaintext)

    aesgcm = AESGCM(_get_key())
    nonce = os.urandom(_NONCE_SIZE)
    ct = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), associated_data=None)

    blob = base64.b64encode(nonce + ct).decode("ascii")
    return _PREFIX + blob


def decrypt(value: Optional[str]) -> Optional[str]:
    """Decrypt a value produced by :func:`encrypt` or a legacy base64 value."""

    if value is None:
        return None
    if not isinstance(value, str):
        raise CredentialDecryptError(f"unexpected credential type {type(value).__name__}")

    if not value.startswith(_PREFIX):
        try:
            return base64.b64decode(value.encode("ascii"), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeError, ValueError) as exc:
            raise CredentialDecryptError("legacy credential is not valid base64") from exc

    try:
        raw = base64.b64decode(value[len(_PREFIX):].encode("ascii"), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CredentialDecryptError("encrypted credential is not valid base64") from exc
    if len(raw) <= _NONCE_SIZE:
        raise CredentialDecryptError("encrypted credential is truncated")

    nonce, ct = raw[:_NONCE_SIZE], raw[_NONCE_SIZE:]
    try:
        pt_bytes = AESGCM(_get_key()).decrypt(nonce, ct, associated_data=None)
    except InvalidTag as exc:
        raise CredentialDecryptError("credential authentication tag mismatch") from exc
    return pt_bytes.decode("utf-8")
