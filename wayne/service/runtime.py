from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from wayne.config import ProvisionerBackend, Settings, get_settings, reset_settings_cache
from wayne.logging import get_logger
from wayne.service.auth import AuthService
from wayne.service.cipher import AesGcmSecretCipher
from wayne.service.envelopes import KeyEnvelopeService
from wayne.service.provisioning import (
    BucketProvisioner,
    MemoryProvisioner,
    StorjProvisioner,
)
from wayne.service.tokens import TokenService
from wayne.service.vault import CredentialVault
from wayne.storage.memory import MemoryStore
from wayne.storage.postgres import PostgresStore, create_pool
from wayne.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***unparseable_url***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def build_provisioner(settings: Settings) -> BucketProvisioner:
    if settings.provisioner_backend == ProvisionerBackend.MEMORY:
        return MemoryProvisioner(
            endpoint=settings.storj_endpoint, bucket_prefix=settings.storj_bucket_prefix
        )
    return StorjProvisioner(
        settings.storj_access_key_id,
        settings.storj_secret_access_key,
        endpoint=settings.storj_endpoint,
        region=settings.storj_region,
        bucket_prefix=settings.storj_bucket_prefix,
    )


class Runtime:
    """Process-scoped wiring: one store (and pool), one cache, and the services.

    Components receive the store explicitly; nothing below this class reaches
    for a global connection handle.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        provisioner: Optional[BucketProvisioner] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore()
            else:
                self.store = PostgresStore(create_pool(self.settings.database_url))
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
            if self.cache is None:
                if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                    raise RuntimeError(
                        "Redis is configured but unreachable; start Redis or set "
                        "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for in-process rate limits."
                    ) from redis_error
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error),
                    message="rate limits are in-memory only",
                )

        self.provisioner = provisioner or build_provisioner(self.settings)
        self.cipher = AesGcmSecretCipher.from_material(
            self.settings.credential_encryption_key or ""
        )
        self.tokens = TokenService(self.store, self.settings)
        self.envelopes = KeyEnvelopeService(self.store)
        self.vault = CredentialVault(self.store, self.cipher, self.provisioner)
        self.auth = AuthService(self.store, self.tokens, self.envelopes, self.vault)

        self._local_rate_limits: Dict[str, Tuple[float, datetime, int]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            provisioner=type(self.provisioner).__name__,
        )

    async def close(self) -> None:
        """Drain the connection pool and close Redis on shutdown."""
        if self.cache is not None:
            try:
                await self.cache.close()
            except Exception as exc:
                logger.warning("redis_close_failed", error=str(exc))
        await asyncio.to_thread(self.store.close)
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None and runtime.cache is not None:
            try:
                asyncio.run(runtime.cache.close())
            except RuntimeError as exc:
                logger.warning("runtime_reset_cache_close_skipped", error=str(exc))
        runtime = Runtime(settings)
        return runtime


async def check_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int = 60
) -> Tuple[bool, int]:
    """Token-bucket limit in Redis when available, otherwise per process.

    Returns ``(allowed, retry_after_seconds)``. A non-positive limit disables
    the check.
    """
    if limit <= 0:
        return True, 0
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds)

    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        buckets = runtime._local_rate_limits
        # a bucket idle for a whole window is back at capacity; same as absent
        for stale_key in [
            k
            for k, (_, last, window) in buckets.items()
            if k != key and (now - last).total_seconds() >= window
        ]:
            del buckets[stale_key]
        tokens, last_ts, _ = buckets.get(key, (float(limit), now, window_seconds))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        if tokens >= 1:
            buckets[key] = (tokens - 1, now, window_seconds)
            return True, 0
        buckets[key] = (tokens, now, window_seconds)
        return False, max(1, int((1 - tokens) / refill_rate))
