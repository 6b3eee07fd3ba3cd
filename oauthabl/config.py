from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Upper-case letters and digits without the look-alikes 0/O and 1/I/L
DEFAULT_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session backend."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Keep all keys in process memory instead of Redis (tests, local dev)",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime reset",
    )
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound on a single key-value round trip",
    )
    list_page_size: int = env_field(
        100, "LIST_PAGE_SIZE", description="Keys fetched per page when listing a prefix"
    )
    code_length: int = env_field(8, "CODE_LENGTH")
    code_alphabet: str = env_field(DEFAULT_CODE_ALPHABET, "CODE_ALPHABET")
    code_ttl_seconds: int | None = env_field(
        None,
        "CODE_TTL_SECONDS",
        description="Optional expiry for one-time codes; unset keeps codes until consumed or reissued",
    )
    session_id_bytes: int = env_field(32, "SESSION_ID_BYTES")
    archive_concurrency: int = env_field(
        8,
        "ARCHIVE_CONCURRENCY",
        description="Maximum concurrent deletes when archiving all sessions of a user",
    )
    admin_api_key: str | None = env_field(
        None,
        "ADMIN_API_KEY",
        description="When set, client registry endpoints require a matching X-Admin-Key header",
    )

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

    @field_validator("code_ttl_seconds", mode="before")
    @classmethod
    def _blank_ttl_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("code_ttl_seconds")
    @classmethod
    def _validate_code_ttl(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError("code_ttl_seconds must be positive when set")
        return value

    @field_validator("code_length")
    @classmethod
    def _validate_code_length(cls, value: int) -> int:
        if value < 4:
            raise ValueError("code_length must be at least 4")
        return value

    @field_validator("code_alphabet")
    @classmethod
    def _validate_code_alphabet(cls, value: str) -> str:
        if len(set(value)) < 10:
            raise ValueError("code_alphabet needs at least 10 distinct characters")
        return value

    @field_validator("session_id_bytes")
    @classmethod
    def _validate_session_id_bytes(cls, value: int) -> int:
        if value < 16:
            raise ValueError("session_id_bytes must be at least 16")
        return value

    @field_validator("archive_concurrency", "list_page_size")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("store_timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("store_timeout_seconds must be positive")
        return value


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
