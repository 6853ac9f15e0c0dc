from __future__ import annotations

import re
import unicodedata
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, RootModel, field_validator

from wayne.service.auth import MAX_PASSWORD_LENGTH, MIN_PASSWORD_LENGTH

# Upper bounds for opaque byte fields sent as JSON integer arrays
MAX_SALT_BYTES = 1024
MAX_NONCE_BYTES = 1024
MAX_PAYLOAD_BYTES = 65536
MAX_TOKEN_LENGTH = 1024

Byte = Annotated[int, Field(ge=0, le=255, strict=True)]
SaltBytes = Annotated[List[Byte], Field(min_length=1, max_length=MAX_SALT_BYTES)]
NonceBytes = Annotated[List[Byte], Field(min_length=1, max_length=MAX_NONCE_BYTES)]
PayloadBytes = Annotated[List[Byte], Field(min_length=1, max_length=MAX_PAYLOAD_BYTES)]


def _normalize_unicode(value: str) -> str:
    """NFKC-normalise and drop zero-width and bidi-override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Every error response: stable ``error`` code plus a human message."""

    error: str
    message: str
    details: Optional[Any] = None


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


# -- auth ----------------------------------------------------------------------


class RegisterRequest(BaseModel):
    email: str
    password: str
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    # Format is not checked here: a malformed email gets the same 401 as a wrong one.
    email: str = Field(..., min_length=1, max_length=320)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _normalize_login_email(cls, value: str) -> str:
        return _normalize_unicode(value.strip().lower())


class AuthTokensResponse(BaseModel):
    user_id: str
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class RefreshResponse(BaseModel):
    access_token: str
    expires_in: int


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class MessageResponse(BaseModel):
    message: str


# -- key envelopes -------------------------------------------------------------


class MkekBody(BaseModel):
    nonce: NonceBytes
    payload: PayloadBytes


class KeyEnvelopeBody(BaseModel):
    """Wire form of a key envelope; byte strings travel as integer arrays."""

    version: int = Field(..., ge=1, strict=True)
    password_salt: SaltBytes
    mkek: MkekBody

    @classmethod
    def from_bytes(
        cls, *, version: int, password_salt: bytes, mkek_nonce: bytes, mkek_payload: bytes
    ) -> "KeyEnvelopeBody":
        return cls(
            version=version,
            password_salt=list(password_salt),
            mkek=MkekBody(nonce=list(mkek_nonce), payload=list(mkek_payload)),
        )

    def salt_bytes(self) -> bytes:
        return bytes(self.password_salt)

    def nonce_bytes(self) -> bytes:
        return bytes(self.mkek.nonce)

    def payload_bytes(self) -> bytes:
        return bytes(self.mkek.payload)


class KeyEnvelopeRequest(BaseModel):
    envelope: KeyEnvelopeBody


class KeyEnvelopeCreated(BaseModel):
    envelope_id: str


class KeyEnvelopeResponse(BaseModel):
    envelope: KeyEnvelopeBody


class MyKeyEnvelopeResponse(BaseModel):
    envelope: KeyEnvelopeBody
    envelope_id: str


# -- change password -----------------------------------------------------------


class WaynePasswordChange(BaseModel):
    """Change the login password; signs out every device."""

    model_config = ConfigDict(extra="forbid")

    password_type: Literal["wayne"]
    old_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class MasterSecretRotation(BaseModel):
    """Replace the key envelope after the client re-wrapped its master key."""

    model_config = ConfigDict(extra="forbid")

    password_type: Literal["master"]
    envelope: KeyEnvelopeBody


class ChangePasswordRequest(
    RootModel[
        Annotated[
            Union[WaynePasswordChange, MasterSecretRotation],
            Field(discriminator="password_type"),
        ]
    ]
):
    pass


# -- storj ---------------------------------------------------------------------


class StorjCreateResponse(BaseModel):
    bucket_id: str
    bucket_name: str
    endpoint: str
    message: str


class StorjConfigResponse(BaseModel):
    bucket_id: str
    bucket_name: str
    access_key_id: str
    secret_access_key: str
    endpoint: str
