from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from wayne.logging import configure_from_settings, get_logger

logger = get_logger(__name__)


class ProvisionerBackend(str, Enum):
    """Where per-user object-storage buckets are allocated."""

    STORJ = "storj"
    MEMORY = "memory"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings read from the environment (and an optional .env file)."""

    database_url: str = env_field(
        "postgresql://localhost:5432/wayne", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow ephemeral secrets and runtime resets for the test suite.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("wayne", "JWT_ISSUER")
    jwt_audience: str = env_field("wayne-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access tokens are not revocable; this bounds the exposure window.",
    )
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")
    refresh_token_hmac_key: str | None = env_field(
        None,
        "REFRESH_TOKEN_HMAC_KEY",
        description="Key for refresh token digests; defaults to JWT_SECRET.",
    )
    refresh_token_sweep_interval_seconds: int = env_field(
        0,
        "REFRESH_TOKEN_SWEEP_INTERVAL_SECONDS",
        description="In-process expired refresh token sweep; 0 leaves it to an external scheduler.",
    )
    credential_encryption_key: str | None = env_field(None, "STORJ_ENCRYPTION_KEY")
    provisioner_backend: ProvisionerBackend = env_field(
        ProvisionerBackend.STORJ, "PROVISIONER_BACKEND"
    )
    storj_access_key_id: str | None = env_field(None, "STORJ_MASTER_ACCESS_KEY_ID")
    storj_secret_access_key: str | None = env_field(
        None, "STORJ_MASTER_SECRET_ACCESS_KEY"
    )
    storj_endpoint: str = env_field("https://gateway.storjshare.io", "STORJ_ENDPOINT")
    storj_region: str = env_field("us-east-1", "STORJ_REGION")
    storj_bucket_prefix: str = env_field("aether-user-", "STORJ_BUCKET_PREFIX")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(
        5, "REGISTER_RATE_LIMIT_PER_MINUTE"
    )
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")
    log_dev_mode: bool = env_field(False, "LOG_DEV_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("provisioner_backend")
    @classmethod
    def _validate_provisioner(cls, value: ProvisionerBackend) -> ProvisionerBackend:
        return ProvisionerBackend(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {value!r}")
        return level

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_days")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTLs must be positive")
        return value

    @model_validator(mode="after")
    def _ensure_secrets(self) -> "Settings":
        for field_name, env_name in (
            ("jwt_secret", "JWT_SECRET"),
            ("credential_encryption_key", "STORJ_ENCRYPTION_KEY"),
        ):
            if getattr(self, field_name):
                continue
            if not self.test_mode:
                raise ValueError(f"{env_name} must be set outside TEST_MODE")
            # tokens and stored credentials will not survive a restart
            logger.warning("ephemeral_secret_generated", setting=env_name)
            setattr(self, field_name, secrets.token_urlsafe(48))
        return self

    @property
    def refresh_token_key(self) -> str:
        return self.refresh_token_hmac_key or self.jwt_secret or ""

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        configure_from_settings(_settings_cache)
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
