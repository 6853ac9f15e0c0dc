from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from wayne.api.schemas import (
    AuthTokensResponse,
    KeyEnvelopeBody,
    KeyEnvelopeCreated,
    KeyEnvelopeResponse,
    MessageResponse,
    MyKeyEnvelopeResponse,
    RefreshResponse,
    StorjConfigResponse,
    StorjCreateResponse,
)
from wayne.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_DELAY_SECONDS = 1.0
DEFAULT_MAX_DELAY_SECONDS = 10.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0


class WayneAPIError(Exception):
    """Non-2xx answer from the server, carrying its ``{error, message}`` body."""

    def __init__(self, status_code: int, error: str, message: str):
        super().__init__(f"{status_code} {error}: {message}")
        self.status_code = status_code
        self.error = error
        self.message = message


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, WayneAPIError) and 500 <= exc.status_code < 600


def backoff_delay(
    attempt: int,
    *,
    initial_delay: float = DEFAULT_INITIAL_DELAY_SECONDS,
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    return min(initial_delay * (multiplier ** (attempt - 1)), max_delay)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_delay: float = DEFAULT_INITIAL_DELAY_SECONDS,
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    retryable: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``fn`` and retry transient failures with exponential backoff.

    Non-retryable errors propagate immediately; after ``max_retries`` retries
    the last error propagates.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if not retryable(exc) or attempt >= max_retries:
                raise
            attempt += 1
            delay = backoff_delay(
                attempt,
                initial_delay=initial_delay,
                multiplier=multiplier,
                max_delay=max_delay,
            )
            logger.warning(
                "wayne_request_retry",
                attempt=attempt,
                max_retries=max_retries,
                delay_seconds=delay,
                error_type=type(exc).__name__,
            )
            await sleep(delay)


def _raise_for_error(response: httpx.Response) -> None:
    if response.is_success:
        return
    error = "http_error"
    message = f"HTTP {response.status_code}"
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = str(body.get("error") or error)
        message = str(body.get("message") or message)
    raise WayneAPIError(response.status_code, error, message)


class WayneClient:
    """Async client for the Wayne HTTP API.

    Keeps the access token (and the refresh token when one was issued) from
    the last register or login and sends it as a bearer header. GET calls are
    retried on transport errors and 5xx answers; state-changing calls are sent
    once.
    """

    def __init__(
        self,
        base_url: str,
        *,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.max_retries = max_retries
        self._sleep = sleep
        self._http = httpx.AsyncClient(
            base_url=f"{self.base_url}/api/v1", timeout=timeout, transport=transport
        )

    async def __aenter__(self) -> "WayneClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def _headers(self, *, auth: bool) -> dict[str, str]:
        if not auth:
            return {}
        if not self.access_token:
            raise WayneAPIError(401, "unauthorized", "login required")
        return {"Authorization": f"Bearer {self.access_token}"}

    async def _send(
        self, method: str, path: str, *, json: Any = None, auth: bool = True
    ) -> dict[str, Any]:
        response = await self._http.request(
            method, path, json=json, headers=self._headers(auth=auth)
        )
        _raise_for_error(response)
        return response.json()

    async def _get(self, path: str) -> dict[str, Any]:
        return await with_retry(
            lambda: self._send("GET", path),
            max_retries=self.max_retries,
            sleep=self._sleep,
        )

    def _remember(self, tokens: AuthTokensResponse) -> None:
        self.access_token = tokens.access_token
        if tokens.refresh_token:
            self.refresh_token = tokens.refresh_token

    # -- auth ----------------------------------------------------------------

    async def register(
        self, email: str, password: str, *, remember_me: bool = False
    ) -> AuthTokensResponse:
        body = {"email": email, "password": password, "remember_me": remember_me}
        tokens = AuthTokensResponse.model_validate(
            await self._send("POST", "/auth/register", json=body, auth=False)
        )
        self._remember(tokens)
        return tokens

    async def login(
        self, email: str, password: str, *, remember_me: bool = False
    ) -> AuthTokensResponse:
        body = {"email": email, "password": password, "remember_me": remember_me}
        tokens = AuthTokensResponse.model_validate(
            await self._send("POST", "/auth/login", json=body, auth=False)
        )
        self._remember(tokens)
        return tokens

    async def refresh(self, refresh_token: Optional[str] = None) -> RefreshResponse:
        token = refresh_token or self.refresh_token
        if not token:
            raise WayneAPIError(401, "unauthorized", "no refresh token available")
        try:
            data = await self._send(
                "POST", "/auth/refresh", json={"refresh_token": token}, auth=False
            )
        except WayneAPIError as exc:
            if exc.status_code == 401:
                self.access_token = None
            raise
        result = RefreshResponse.model_validate(data)
        self.access_token = result.access_token
        return result

    async def logout(self) -> MessageResponse:
        """Revoke the stored refresh token and forget both tokens."""
        token = self.refresh_token
        self.access_token = None
        self.refresh_token = None
        if not token:
            return MessageResponse(message="logged out successfully")
        data = await self._send(
            "POST", "/auth/logout", json={"refresh_token": token}, auth=False
        )
        return MessageResponse.model_validate(data)

    async def change_password(self, old_password: str, new_password: str) -> MessageResponse:
        body = {
            "password_type": "wayne",
            "old_password": old_password,
            "new_password": new_password,
        }
        data = await self._send("POST", "/auth/change-password", json=body)
        # every refresh token of the account was revoked server-side
        self.refresh_token = None
        return MessageResponse.model_validate(data)

    async def rotate_master_secret(self, envelope: KeyEnvelopeBody) -> MessageResponse:
        body = {"password_type": "master", "envelope": envelope.model_dump()}
        data = await self._send("POST", "/auth/change-password", json=body)
        return MessageResponse.model_validate(data)

    # -- key envelopes -------------------------------------------------------

    async def save_key_envelope(self, envelope: KeyEnvelopeBody) -> str:
        data = await self._send(
            "POST", "/key-envelopes", json={"envelope": envelope.model_dump()}
        )
        return KeyEnvelopeCreated.model_validate(data).envelope_id

    async def get_key_envelope(self, envelope_id: str) -> KeyEnvelopeBody:
        data = await self._get(f"/key-envelopes/{envelope_id}")
        return KeyEnvelopeResponse.model_validate(data).envelope

    async def get_my_key_envelope(self) -> MyKeyEnvelopeResponse:
        return MyKeyEnvelopeResponse.model_validate(await self._get("/key-envelopes/me"))

    # -- storj ---------------------------------------------------------------

    async def create_storj_config(self) -> StorjCreateResponse:
        return StorjCreateResponse.model_validate(
            await self._send("POST", "/storj-config/create")
        )

    async def get_storj_config(self) -> StorjConfigResponse:
        return StorjConfigResponse.model_validate(await self._get("/storj-config/me"))


__all__ = [
    "WayneAPIError",
    "WayneClient",
    "backoff_delay",
    "is_retryable",
    "with_retry",
]
