from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from wayne.config import Settings
from wayne.logging import get_logger
from wayne.service.errors import AuthError
from wayne.storage.models import RefreshToken, User

logger = get_logger(__name__)

# 64 random bytes, hex encoded
REFRESH_TOKEN_BYTES = 64


class TokenStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshToken: ...

    def get_refresh_token(
        self, token_hash: str, *, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token_hash: str) -> bool: ...

    def delete_user_refresh_tokens(self, user_id: str) -> int: ...

    def delete_expired_refresh_tokens(self, *, now: Optional[datetime] = None) -> int: ...


@dataclass
class AccessClaims:
    user_id: str
    email: str
    jti: str
    expires_at: datetime


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: Optional[str]
    expires_in: int


class TokenService:
    """Access and refresh token lifecycle.

    Access tokens are stateless HS256 JWTs; nothing is recorded server-side and
    revoking refresh tokens does not shorten their life. Refresh tokens are
    opaque random strings. Only ``HMAC-SHA256(refresh key, token)`` is
    persisted, which lets lookups use an indexed equality match while a leaked
    table still cannot be replayed without the server key. Presenting a refresh
    token does not rotate it: it stays usable until it expires or is revoked.
    """

    def __init__(self, store: TokenStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._refresh_key = settings.refresh_token_key.encode()
        self._clock_skew_leeway = timedelta(seconds=60)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_seconds

    # -- access tokens -------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # pin the algorithm; never trust the header's choice
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        # compare bytes; str comparison raises on non-ASCII input
        if not hmac.compare_digest(
            expected_sig.encode("ascii"), sig_b64.encode("utf-8", "surrogateescape")
        ):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def issue_access_token(self, user_id: str, email: str) -> str:
        now = self._now()
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "email": email,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(now.timestamp()) + self.access_token_ttl_seconds,
        }
        return self._encode_jwt(payload)

    def verify_access_token(self, token: str) -> AccessClaims:
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            raise AuthError("invalid or expired token")
        user_id = payload.get("sub")
        email = payload.get("email")
        if not isinstance(user_id, str) or not isinstance(email, str):
            raise AuthError("invalid or expired token")
        return AccessClaims(
            user_id=user_id,
            email=email,
            jti=str(payload.get("jti", "")),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
        )

    # -- refresh tokens ------------------------------------------------------

    def hash_refresh_token(self, refresh_token: str) -> str:
        return hmac.new(
            self._refresh_key, refresh_token.encode(), hashlib.sha256
        ).hexdigest()

    def issue_refresh_token(self, user_id: str) -> str:
        token = secrets.token_hex(REFRESH_TOKEN_BYTES)
        expires_at = self._now() + timedelta(days=self.settings.refresh_token_ttl_days)
        self.store.create_refresh_token(user_id, self.hash_refresh_token(token), expires_at)
        logger.info("refresh_token_issued", user_id=user_id)
        return token

    def issue(self, user: User, *, remember: bool) -> IssuedTokens:
        return IssuedTokens(
            access_token=self.issue_access_token(user.id, user.email),
            refresh_token=self.issue_refresh_token(user.id) if remember else None,
            expires_in=self.access_token_ttl_seconds,
        )

    def refresh(self, refresh_token: str) -> IssuedTokens:
        """Exchange a refresh token for a new access token without rotating it."""
        if not refresh_token:
            raise AuthError("invalid or expired refresh token")
        record = self.store.get_refresh_token(
            self.hash_refresh_token(refresh_token), now=self._now()
        )
        if not record:
            raise AuthError("invalid or expired refresh token")
        user = self.store.get_user(record.user_id)
        if not user:
            raise AuthError("invalid or expired refresh token")
        return IssuedTokens(
            access_token=self.issue_access_token(user.id, user.email),
            refresh_token=None,
            expires_in=self.access_token_ttl_seconds,
        )

    def revoke(self, refresh_token: str) -> bool:
        if not refresh_token:
            return False
        revoked = self.store.delete_refresh_token(self.hash_refresh_token(refresh_token))
        if revoked:
            logger.info("refresh_token_revoked")
        return revoked

    def revoke_all_for_user(self, user_id: str) -> int:
        count = self.store.delete_user_refresh_tokens(user_id)
        logger.info("refresh_tokens_revoked_for_user", user_id=user_id, count=count)
        return count

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_refresh_tokens(now=self._now())
        logger.info("expired_refresh_tokens_removed", count=removed)
        return removed


__all__ = [
    "AccessClaims",
    "IssuedTokens",
    "REFRESH_TOKEN_BYTES",
    "TokenService",
    "TokenStore",
]
