from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessionward.logging import get_logger

logger = get_logger(__name__)

# Shortest signing secret accepted for HS256 tokens
MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session kernel."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sessionward", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    state_dir: str | None = env_field(
        None,
        "STATE_DIR",
        description="Directory for the memory store JSON snapshot; unset keeps state in-process only",
    )
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound for any single credential store operation",
    )
    store_pool_min_size: int = env_field(1, "STORE_POOL_MIN_SIZE")
    store_pool_max_size: int = env_field(10, "STORE_POOL_MAX_SIZE")

    # Token issuance
    access_token_secret: str | None = env_field(None, "ACCESS_TOKEN_SECRET")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    jwt_issuer: str = env_field("sessionward", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionward-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        10 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    clock_skew_seconds: int = env_field(
        0,
        "CLOCK_SKEW_SECONDS",
        description="Leeway applied to exp checks when verifying tokens",
    )
    revoke_on_refresh_reuse: bool = env_field(
        False,
        "REVOKE_ON_REFRESH_REUSE",
        description="Clear the stored refresh token when a superseded one is presented",
    )

    # argon2 cost parameters
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST")
    password_memory_cost: int = env_field(65536, "PASSWORD_MEMORY_COST")
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM")

    # Transport
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_samesite: str = env_field("lax", "COOKIE_SAMESITE")
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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        normalized = (value or "lax").lower()
        if normalized not in {"lax", "strict", "none"}:
            raise ValueError("cookie_samesite must be one of lax, strict, none")
        return normalized

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "password_time_cost",
        "password_memory_cost",
        "password_parallelism",
        "store_pool_min_size",
        "store_pool_max_size",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("store_timeout_seconds")
    @classmethod
    def _require_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("store_timeout_seconds must be positive")
        return value

    @field_validator("clock_skew_seconds")
    @classmethod
    def _non_negative_skew(cls, value: int) -> int:
        if value < 0:
            raise ValueError("clock_skew_seconds cannot be negative")
        return value

    @model_validator(mode="after")
    def _validate_secrets(self) -> "Settings":
        # Both secrets are required and must differ
        for name in ("access_token_secret", "refresh_token_secret"):
            value = getattr(self, name)
            if not value:
                raise ValueError(f"{name.upper()} must be set")
            if len(value) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"{name.upper()} must be at least {MIN_SECRET_LENGTH} characters"
                )
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access and refresh token secrets must differ")
        if self.refresh_token_ttl_minutes <= self.access_token_ttl_minutes:
            logger.warning(
                "refresh_ttl_not_longer_than_access_ttl",
                access_ttl_minutes=self.access_token_ttl_minutes,
                refresh_ttl_minutes=self.refresh_token_ttl_minutes,
            )
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
