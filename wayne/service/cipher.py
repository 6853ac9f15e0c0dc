"""Secret cipher used to keep delegated storage credentials encrypted at rest.

Stored layout is ``IV (12) | GCM tag (16) | ciphertext``. Callers always pass
associated data naming the owning user, so a blob copied onto another user's
row fails authentication instead of decrypting.
"""
from __future__ import annotations

import base64
import binascii
import os
from typing import Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

IV_SIZE = 12
TAG_SIZE = 16
KEY_LENGTH = 32

_KDF_CONTEXT = b"wayne-credential-vault"


class CipherError(Exception):
    """Ciphertext is malformed, tampered with, or bound to different associated data."""


class SecretCipher(Protocol):
    """Pluggable authenticated cipher; a KMS-backed implementation can replace the local key."""

    def encrypt(self, plaintext: bytes, *, associated_data: bytes) -> bytes: ...

    def decrypt(self, blob: bytes, *, associated_data: bytes) -> bytes: ...


def derive_key(material: str) -> bytes:
    """Turn configured key material into a 32-byte AES key.

    A value that already decodes to exactly 32 bytes (hex or base64) is used
    as-is; anything else is stretched with HKDF-SHA256.
    """
    candidate = material.strip()
    if len(candidate) == KEY_LENGTH * 2:
        try:
            return bytes.fromhex(candidate)
        except ValueError:
            pass
    try:
        decoded = base64.b64decode(candidate, validate=True)
    except (binascii.Error, ValueError):
        decoded = b""
    if len(decoded) == KEY_LENGTH:
        return decoded
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,
        info=_KDF_CONTEXT,
    )
    return hkdf.derive(candidate.encode("utf-8"))


class AesGcmSecretCipher:
    """AES-256-GCM with a fresh random IV per call."""

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_LENGTH:
            raise ValueError("AES-256-GCM requires a 32-byte key")
        self._aead = AESGCM(key)

    @classmethod
    def from_material(cls, material: str) -> "AesGcmSecretCipher":
        return cls(derive_key(material))

    def encrypt(self, plaintext: bytes, *, associated_data: bytes) -> bytes:
        iv = os.urandom(IV_SIZE)
        sealed = self._aead.encrypt(iv, plaintext, associated_data)
        # AESGCM appends the tag; store it ahead of the ciphertext
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return iv + tag + ciphertext

    def decrypt(self, blob: bytes, *, associated_data: bytes) -> bytes:
        if len(blob) < IV_SIZE + TAG_SIZE:
            raise CipherError("ciphertext too short")
        iv = blob[:IV_SIZE]
        tag = blob[IV_SIZE : IV_SIZE + TAG_SIZE]
        ciphertext = blob[IV_SIZE + TAG_SIZE :]
        try:
            return self._aead.decrypt(iv, ciphertext + tag, associated_data)
        except InvalidTag as exc:
            raise CipherError("ciphertext failed authentication") from exc


__all__ = [
    "AesGcmSecretCipher",
    "CipherError",
    "IV_SIZE",
    "SecretCipher",
    "TAG_SIZE",
    "derive_key",
]
