from __future__ import annotations

import asyncio
import unicodedata
from dataclasses import dataclass
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from wayne.logging import get_logger
from wayne.service.envelopes import KeyEnvelopeService
from wayne.service.errors import AuthError, ConflictError, ValidationError
from wayne.service.tokens import IssuedTokens, TokenService
from wayne.service.vault import CredentialVault
from wayne.storage.errors import ConstraintViolation
from wayne.storage.models import KeyEnvelope, User

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
MAX_EMAIL_LENGTH = 254

_LOGIN_FAILED = "invalid email or password"


class UserStore(Protocol):
    def create_user(self, email: str, password_hash: str) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]: ...


@dataclass
class AuthContext:
    """Identity injected into protected handlers."""

    user_id: str
    email: str


@dataclass
class AuthResult:
    user: User
    tokens: IssuedTokens


def normalize_email(email: str) -> str:
    return unicodedata.normalize("NFKC", email or "").strip().lower()


def _check_password_length(password: str, *, field: str = "password") -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"{field} must be at least {MIN_PASSWORD_LENGTH} characters",
            detail={"field": field},
        )
    if len(password) > MAX_PASSWORD_LENGTH:
        raise ValidationError(
            f"{field} must be at most {MAX_PASSWORD_LENGTH} characters",
            detail={"field": field},
        )


class AuthService:
    """Registration, login, logout and password changes.

    Composes the user store with the token, key-envelope and credential-vault
    services. Password hashing (argon2id) is CPU-bound and runs in a worker
    thread. Login answers "unknown email" and "wrong password" identically,
    including a dummy verification so both paths cost the same.
    """

    def __init__(
        self,
        store: UserStore,
        tokens: TokenService,
        envelopes: KeyEnvelopeService,
        vault: Optional[CredentialVault] = None,
        *,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.envelopes = envelopes
        self.vault = vault
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        # computed up front so an unknown-email login never pays for a hash
        self._dummy_hash = self._pwd_hasher.hash("wayne-timing-equalizer")
        self.logger = logger

    # -- password hashing ----------------------------------------------------

    async def _hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self._pwd_hasher.hash, password)

    def _verify_sync(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            self.logger.warning("password_hash_unverifiable")
            return False

    async def _verify_password(self, stored_hash: str, password: str) -> bool:
        return await asyncio.to_thread(self._verify_sync, stored_hash, password)

    async def _burn_verification(self, password: str) -> None:
        await self._verify_password(self._dummy_hash, password)

    # -- flows ---------------------------------------------------------------

    def _require_credentials(self, email: Optional[str], password: Optional[str]) -> str:
        normalized = normalize_email(email or "")
        if not normalized or not password:
            raise ValidationError("email and password are required")
        return normalized

    async def register(
        self, email: Optional[str], password: Optional[str], *, remember: bool = False
    ) -> AuthResult:
        normalized = self._require_credentials(email, password)
        if len(normalized) > MAX_EMAIL_LENGTH or "@" not in normalized:
            raise ValidationError("invalid email address", detail={"field": "email"})
        _check_password_length(password)
        if self.store.get_user_by_email(normalized):
            raise ConflictError("a user with this email already exists")
        password_hash = await self._hash_password(password)
        try:
            user = self.store.create_user(normalized, password_hash)
        except ConstraintViolation as exc:
            raise ConflictError("a user with this email already exists") from exc
        self.logger.info("user_registered", user_id=user.id)

        await self._provision_best_effort(user.id)
        return AuthResult(user=user, tokens=self.tokens.issue(user, remember=remember))

    async def _provision_best_effort(self, user_id: str) -> None:
        if self.vault is None:
            return
        try:
            await self.vault.ensure_provisioned(user_id)
        except Exception as exc:
            # ensure_provisioned can be retried later
            self.logger.warning(
                "registration_provisioning_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def login(
        self, email: Optional[str], password: Optional[str], *, remember: bool = False
    ) -> AuthResult:
        normalized = self._require_credentials(email, password)
        user = self.store.get_user_by_email(normalized)
        if not user:
            await self._burn_verification(password)
            self.logger.info("login_failed")
            raise AuthError(_LOGIN_FAILED)
        if not await self._verify_password(user.password_hash, password):
            self.logger.info("login_failed", user_id=user.id)
            raise AuthError(_LOGIN_FAILED)
        self.logger.info("login_succeeded", user_id=user.id, remember=remember)
        return AuthResult(user=user, tokens=self.tokens.issue(user, remember=remember))

    def refresh(self, refresh_token: Optional[str]) -> IssuedTokens:
        if not refresh_token:
            raise ValidationError("refresh_token is required")
        return self.tokens.refresh(refresh_token)

    def logout(self, refresh_token: Optional[str]) -> bool:
        if not refresh_token:
            raise ValidationError("refresh_token is required")
        return self.tokens.revoke(refresh_token)

    async def change_password(
        self, user_id: str, old_password: str, new_password: str
    ) -> int:
        """Re-hash the login password and sign out every device.

        Returns the number of refresh tokens revoked. The key envelope is
        untouched.
        """
        if not old_password or not new_password:
            raise ValidationError("old_password and new_password are required")
        _check_password_length(new_password, field="new_password")
        user = self.store.get_user(user_id)
        if not user:
            raise AuthError("user not found")
        if not await self._verify_password(user.password_hash, old_password):
            self.logger.info("password_change_rejected", user_id=user_id)
            raise AuthError("current password is incorrect")
        new_hash = await self._hash_password(new_password)
        self.store.update_password(user_id, new_hash)
        revoked = self.tokens.revoke_all_for_user(user_id)
        self.logger.info("password_changed", user_id=user_id, sessions_revoked=revoked)
        return revoked

    def rotate_master_secret(
        self,
        user_id: str,
        *,
        version: int,
        password_salt: bytes,
        mkek_nonce: bytes,
        mkek_payload: bytes,
    ) -> KeyEnvelope:
        """Overwrite the key envelope after a client-side master secret change.

        The old secret is not checked here; the client proves possession by
        decrypting the previous envelope. Sessions are left alone.
        """
        envelope = self.envelopes.upsert(
            user_id,
            version=version,
            password_salt=password_salt,
            mkek_nonce=mkek_nonce,
            mkek_payload=mkek_payload,
        )
        self.logger.info("master_secret_rotated", user_id=user_id, version=version)
        return envelope

    # -- request authentication ----------------------------------------------

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Verify a bearer header; revocation state is deliberately not consulted."""
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthError("missing bearer token")
        claims = self.tokens.verify_access_token(token)
        return AuthContext(user_id=claims.user_id, email=claims.email)


__all__ = [
    "AuthContext",
    "AuthResult",
    "AuthService",
    "MAX_PASSWORD_LENGTH",
    "MIN_PASSWORD_LENGTH",
    "normalize_email",
]
