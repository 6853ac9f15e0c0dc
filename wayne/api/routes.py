from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from wayne.api.schemas import (
    AuthTokensResponse,
    ChangePasswordRequest,
    KeyEnvelopeBody,
    KeyEnvelopeCreated,
    KeyEnvelopeRequest,
    KeyEnvelopeResponse,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    MyKeyEnvelopeResponse,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    StorjConfigResponse,
    StorjCreateResponse,
    WaynePasswordChange,
)
from wayne.logging import get_logger
from wayne.service.auth import AuthContext
from wayne.service.errors import RateLimitedError
from wayne.service.runtime import Runtime, check_rate_limit, get_runtime
from wayne.storage.models import KeyEnvelope

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Resolve the bearer token into the caller's identity or fail with 401."""
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int = 60
) -> None:
    allowed, retry_after = await check_rate_limit(runtime, key, limit, window_seconds)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0])
        raise RateLimitedError(
            "too many requests, try again later",
            detail={"retry_after": retry_after},
        )


def _envelope_body(envelope: KeyEnvelope) -> KeyEnvelopeBody:
    return KeyEnvelopeBody.from_bytes(
        version=envelope.version,
        password_salt=envelope.password_salt,
        mkek_nonce=envelope.mkek_nonce,
        mkek_payload=envelope.mkek_payload,
    )


# -- auth ----------------------------------------------------------------------


@router.post(
    "/auth/register", response_model=AuthTokensResponse, status_code=201, tags=["auth"]
)
async def register(body: RegisterRequest, request: Request):
    """Create an account and sign it in.

    A storage bucket is provisioned on a best-effort basis; the account is
    usable even when that step fails.

    Raises:
        409: If the email is already registered
        429: If the rate limit for this address or email is exceeded
    """
    runtime = get_runtime()
    limit = runtime.settings.register_rate_limit_per_minute
    await _enforce_rate_limit(runtime, f"register:ip:{_client_ip(request)}", limit)
    await _enforce_rate_limit(runtime, f"register:email:{body.email}", limit)
    result = await runtime.auth.register(
        body.email, body.password, remember=body.remember_me
    )
    return AuthTokensResponse(
        user_id=result.user.id,
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        expires_in=result.tokens.expires_in,
    )


@router.post("/auth/login", response_model=AuthTokensResponse, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Raises:
        401: If the credentials do not match (same answer for unknown emails)
        429: If the rate limit for this address or email is exceeded
    """
    runtime = get_runtime()
    limit = runtime.settings.login_rate_limit_per_minute
    await _enforce_rate_limit(runtime, f"login:ip:{_client_ip(request)}", limit)
    await _enforce_rate_limit(runtime, f"login:email:{body.email}", limit)
    result = await runtime.auth.login(
        body.email, body.password, remember=body.remember_me
    )
    return AuthTokensResponse(
        user_id=result.user.id,
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        expires_in=result.tokens.expires_in,
    )


@router.post("/auth/refresh", response_model=RefreshResponse, tags=["auth"])
async def refresh(body: RefreshRequest):
    runtime = get_runtime()
    tokens = runtime.auth.refresh(body.refresh_token)
    return RefreshResponse(access_token=tokens.access_token, expires_in=tokens.expires_in)


@router.post("/auth/logout", response_model=MessageResponse, tags=["auth"])
async def logout(body: LogoutRequest):
    """Revoke one refresh token; unknown tokens are not an error."""
    runtime = get_runtime()
    runtime.auth.logout(body.refresh_token)
    return MessageResponse(message="logged out successfully")


@router.post("/auth/change-password", response_model=MessageResponse, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_user)
):
    """Change the login password or replace the key envelope.

    ``password_type="wayne"`` re-hashes the login password and revokes every
    refresh token of the caller. ``password_type="master"`` overwrites the key
    envelope and leaves sessions alone.
    """
    runtime = get_runtime()
    change = body.root
    if isinstance(change, WaynePasswordChange):
        await runtime.auth.change_password(
            principal.user_id, change.old_password, change.new_password
        )
        return MessageResponse(message="password changed successfully")
    runtime.auth.rotate_master_secret(
        principal.user_id,
        version=change.envelope.version,
        password_salt=change.envelope.salt_bytes(),
        mkek_nonce=change.envelope.nonce_bytes(),
        mkek_payload=change.envelope.payload_bytes(),
    )
    return MessageResponse(message="master password changed successfully")


# -- key envelopes -------------------------------------------------------------


@router.post(
    "/key-envelopes",
    response_model=KeyEnvelopeCreated,
    status_code=201,
    tags=["key-envelopes"],
)
async def save_key_envelope(
    body: KeyEnvelopeRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    envelope = runtime.envelopes.upsert(
        principal.user_id,
        version=body.envelope.version,
        password_salt=body.envelope.salt_bytes(),
        mkek_nonce=body.envelope.nonce_bytes(),
        mkek_payload=body.envelope.payload_bytes(),
    )
    return KeyEnvelopeCreated(envelope_id=envelope.id)


# Declared before the id route so "me" is never read as an envelope id.
@router.get(
    "/key-envelopes/me", response_model=MyKeyEnvelopeResponse, tags=["key-envelopes"]
)
async def get_my_key_envelope(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    envelope = runtime.envelopes.get(principal.user_id)
    return MyKeyEnvelopeResponse(envelope=_envelope_body(envelope), envelope_id=envelope.id)


@router.get(
    "/key-envelopes/{envelope_id}",
    response_model=KeyEnvelopeResponse,
    tags=["key-envelopes"],
)
async def get_key_envelope(envelope_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    envelope = runtime.envelopes.get_owned(envelope_id, principal.user_id)
    return KeyEnvelopeResponse(envelope=_envelope_body(envelope))


# -- storj ---------------------------------------------------------------------


@router.post(
    "/storj-config/create",
    response_model=StorjCreateResponse,
    status_code=201,
    tags=["storj"],
)
async def create_storj_config(principal: AuthContext = Depends(get_user)):
    """Provision the caller's bucket and store its credentials encrypted.

    Raises:
        409: If the caller already has a bucket
        500: If the storage provider rejects the request
    """
    runtime = get_runtime()
    bucket = await runtime.vault.create_for_user(principal.user_id)
    return StorjCreateResponse(
        bucket_id=bucket.id,
        bucket_name=bucket.bucket_name,
        endpoint=bucket.endpoint,
        message="Storj bucket created successfully",
    )


@router.get("/storj-config/me", response_model=StorjConfigResponse, tags=["storj"])
async def get_storj_config(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    credential = runtime.vault.get_for_user(principal.user_id)
    logger.info(
        "storj_config_served", user_id=principal.user_id, bucket_id=credential.bucket_id
    )
    return StorjConfigResponse(
        bucket_id=credential.bucket_id,
        bucket_name=credential.bucket_name,
        access_key_id=credential.access_key_id,
        secret_access_key=credential.secret_access_key,
        endpoint=credential.endpoint,
    )
