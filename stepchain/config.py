from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the relay, memory manager and stores."""

    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/stepchain", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests.",
    )

    # Conversation memory
    memory_window_size: int = env_field(
        2,
        "MEMORY_WINDOW_SIZE",
        description="Number of most recent step exchanges replayed verbatim.",
    )
    stale_generation_seconds: float = env_field(
        600.0,
        "STALE_GENERATION_SECONDS",
        description="Age after which a generating step counts as abandoned and may be retried.",
    )

    # Provider credentials (fallbacks when no key is stored via the settings API)
    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    google_api_key: str | None = env_field(None, "GOOGLE_API_KEY")
    anthropic_api_key: str | None = env_field(None, "ANTHROPIC_API_KEY")
    credential_cache_ttl_seconds: int = env_field(
        300,
        "CREDENTIAL_CACHE_TTL_SECONDS",
        description="Upper bound on how long resolved provider keys are reused.",
    )
    settings_encryption_key: str | None = env_field(None, "SETTINGS_ENCRYPTION_KEY")

    # Upstream providers
    openai_base_url: str = env_field("https://api.openai.com", "OPENAI_BASE_URL")
    google_base_url: str = env_field(
        "https://generativelanguage.googleapis.com", "GOOGLE_BASE_URL"
    )
    anthropic_base_url: str = env_field("https://api.anthropic.com", "ANTHROPIC_BASE_URL")
    anthropic_version: str = env_field("2023-06-01", "ANTHROPIC_VERSION")
    anthropic_max_tokens: int = env_field(4096, "ANTHROPIC_MAX_TOKENS")
    upstream_timeout_seconds: float | None = env_field(
        None,
        "UPSTREAM_TIMEOUT_SECONDS",
        description="Unset means upstream calls are never timed out.",
    )

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

    @field_validator("memory_window_size")
    @classmethod
    def _validate_window(cls, value: int) -> int:
        if value < 1:
            raise ValueError("memory_window_size must be at least 1")
        return value

    @field_validator("upstream_timeout_seconds", mode="before")
    @classmethod
    def _blank_timeout(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    def provider_key_fallbacks(self) -> dict[str, str | None]:
        """Environment-provided keys, named the way the settings store names them."""
        return {
            "openai_api_key": self.openai_api_key,
            "google_api_key": self.google_api_key,
            "anthropic_api_key": self.anthropic_api_key,
        }


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
