from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    """A persisted session grant; only the keyed digest of the token is kept."""

    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class KeyEnvelope:
    """Client-wrapped master key material. The server never interprets the bytes."""

    id: str
    user_id: str
    version: int
    password_salt: bytes
    mkek_nonce: bytes
    mkek_payload: bytes
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class StorjBucket:
    """Per-user bucket with its key pair encrypted at rest (IV | tag | ciphertext)."""

    id: str
    user_id: str
    bucket_name: str
    access_key_id_encrypted: bytes
    secret_access_key_encrypted: bytes
    endpoint: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
