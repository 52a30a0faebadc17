from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tokenwarden.logging import get_logger

logger = get_logger(__name__)

# Deterministic key for local development and tests only. Rejected in production and service.
DEV_FALLBACK_SIGNING_KEY = "dev-signing-key-change-in-production"


class Environment(str, Enum):
    """Deployment environments; each one mints tokens with its own prefix."""

    PRODUCTION = "production"
    TEST = "test"
    DEVELOPMENT = "development"
    SERVICE = "service"


# Environments whose tokens are honoured by real services; no fallback key here.
_DEPLOYED_ENVIRONMENTS = frozenset({Environment.PRODUCTION, Environment.SERVICE})


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token service."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    token_signing_key: str | None = env_field(None, "TOKEN_SIGNING_KEY")
    default_token_ttl_seconds: int = env_field(
        30 * 24 * 60 * 60,
        "DEFAULT_TOKEN_EXPIRY",
        description="Token lifetime when the caller does not request one",
    )
    revocation_grace_seconds: int = env_field(
        90 * 24 * 60 * 60,
        "REVOCATION_GRACE_SECONDS",
        description="How long revocation markers outlive the revoke call",
    )
    cache_max_ttl_seconds: int = env_field(
        0,
        "CACHE_MAX_TTL_SECONDS",
        description="Upper bound for cached token entries; 0 uses the remaining token lifetime",
    )
    audit_cache_ttl_seconds: int = env_field(90 * 24 * 60 * 60, "AUDIT_CACHE_TTL_SECONDS")
    audit_queue_size: int = env_field(1000, "AUDIT_QUEUE_SIZE")

    # Rate limiting (fixed window, tier chosen from token scope)
    rate_limit_window_seconds: int = env_field(3600, "RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_admin: int = env_field(10000, "RATE_LIMIT_ADMIN")
    rate_limit_service: int = env_field(5000, "RATE_LIMIT_SERVICE")
    rate_limit_extended: int = env_field(1000, "RATE_LIMIT_EXTENDED")
    rate_limit_standard: int = env_field(100, "RATE_LIMIT_STANDARD")
    rate_limit_extended_threshold: int = env_field(3, "RATE_LIMIT_EXTENDED_THRESHOLD")
    rate_limit_fail_open: bool = env_field(
        False,
        "RATE_LIMIT_FAIL_OPEN",
        description="Allow requests when the counter store is unreachable",
    )

    database_url: str = env_field(
        "postgresql://localhost:5432/tokenwarden", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and the runtime reset hook.",
    )

    identity_verifier_url: str = env_field(
        "http://localhost:8100", "IDENTITY_VERIFIER_URL"
    )
    identity_verifier_api_key: str | None = env_field(None, "IDENTITY_VERIFIER_API_KEY")
    identity_verifier_timeout: float = env_field(10.0, "IDENTITY_VERIFIER_TIMEOUT")
    service_session_ttl_seconds: int = env_field(300, "SERVICE_SESSION_TTL_SECONDS")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            value = value.strip().lower()
            # "live" is the historical name for production deployments
            if value == "live":
                value = Environment.PRODUCTION.value
        return Environment(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)

    @field_validator(
        "default_token_ttl_seconds",
        "revocation_grace_seconds",
        "rate_limit_window_seconds",
        "audit_queue_size",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _ensure_signing_key(self) -> "Settings":
        key = self.token_signing_key
        if self.environment in _DEPLOYED_ENVIRONMENTS:
            name = self.environment.value
            if not key:
                raise ValueError(f"TOKEN_SIGNING_KEY is required in {name}")
            if key == DEV_FALLBACK_SIGNING_KEY:
                raise ValueError(
                    f"TOKEN_SIGNING_KEY is set to the development fallback key; refusing to start in {name}"
                )
            return self
        if not key:
            logger.warning(
                "signing_key_fallback",
                environment=self.environment.value,
                message="TOKEN_SIGNING_KEY not set; using the development fallback key",
            )
            self.token_signing_key = DEV_FALLBACK_SIGNING_KEY
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
